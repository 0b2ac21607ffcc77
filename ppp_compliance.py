"""
PPP — Compliance Checks
=======================
Rule engine evaluating a cropped photo's geometry against a PhotoStandard.

Each rule is a ComplianceCheck keyed by name. The checker:
  1. Resolves every requested name against its registry; any unknown
     name fails the whole request with UnknownCheck (no partial results).
  2. Evaluates every resolved rule independently (no short-circuit).
  3. Passes overall only if every requested rule passes.

Rules never raise: a missing landmark or an out-of-band measurement is a
failed CheckResult carrying the measured value and the expected range.

Built-in rules (measured on the crop region):
  head-height-ratio   (chin_y - crown_y) / crop height
  eye-line-position   (crop bottom - eye line) / crop height
  head-centered       |head center x - crop center x| / crop width
  margins             min(space above crown, below chin) / crop height
  eyes-level          eye-line tilt in degrees
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Union

from ppp_types import (
    CheckResult,
    ComplianceResult,
    ConfigurationError,
    Failure,
    FailureKind,
    LandMarks,
    PhotoStandard,
    Region,
)

_log = logging.getLogger("PppCompliance")

_ROUND = 4


class ComplianceCheck(ABC):
    """Abstract base for all compliance rules."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique rule identifier (e.g. 'head-height-ratio')."""

    @abstractmethod
    def evaluate(self, landmarks: LandMarks, crop: Region, standard: PhotoStandard) -> CheckResult:
        """Measure one quantity and compare it with the standard."""

    # ── Helpers for subclasses ────────────────────────────────

    def _within(self, measured: float, expected: tuple[float, float], label: str) -> CheckResult:
        measured = round(measured, _ROUND)
        lo, hi = expected
        passed = lo <= measured <= hi
        if passed:
            reason = f"{label} {measured:.3f} within [{lo:.3f}, {hi:.3f}]"
        else:
            reason = f"{label} {measured:.3f} outside [{lo:.3f}, {hi:.3f}]"
        return CheckResult(self.name, passed, measured, (lo, hi), reason)

    def _missing(self, expected: tuple[float, float], what: str) -> CheckResult:
        return CheckResult(self.name, False, None, expected, f"cannot measure: {what} not available")


class HeadHeightRatioCheck(ComplianceCheck):
    name = "head-height-ratio"

    def evaluate(self, landmarks, crop, standard):
        expected = standard.head_height_ratio
        if landmarks.crown_point is None or landmarks.chin_point is None:
            return self._missing(expected, "crown/chin")
        head = landmarks.chin_point[1] - landmarks.crown_point[1]
        return self._within(head / crop.height, expected, "Head height ratio")


class EyeLinePositionCheck(ComplianceCheck):
    name = "eye-line-position"

    def evaluate(self, landmarks, crop, standard):
        expected = standard.eye_line_ratio
        eye_y = landmarks.eye_line_y
        if eye_y is None:
            return self._missing(expected, "pupils")
        return self._within((crop.bottom - eye_y) / crop.height, expected, "Eye line from bottom")


class HeadCenteredCheck(ComplianceCheck):
    name = "head-centered"

    def evaluate(self, landmarks, crop, standard):
        expected = (0.0, standard.max_center_offset_ratio)
        if landmarks.crown_point is None or landmarks.chin_point is None:
            return self._missing(expected, "crown/chin")
        head_x = (landmarks.crown_point[0] + landmarks.chin_point[0]) / 2.0
        offset = abs(head_x - crop.center[0]) / crop.width
        return self._within(offset, expected, "Head center offset")


class MarginsCheck(ComplianceCheck):
    name = "margins"

    def evaluate(self, landmarks, crop, standard):
        expected = (standard.min_margin_ratio, 1.0)
        if landmarks.crown_point is None or landmarks.chin_point is None:
            return self._missing(expected, "crown/chin")
        top = (landmarks.crown_point[1] - crop.y) / crop.height
        bottom = (crop.bottom - landmarks.chin_point[1]) / crop.height
        return self._within(min(top, bottom), expected, "Smallest head margin")


class EyesLevelCheck(ComplianceCheck):
    name = "eyes-level"

    def evaluate(self, landmarks, crop, standard):
        expected = (0.0, standard.max_eye_roll_deg)
        if landmarks.eye_left_pupil is None or landmarks.eye_right_pupil is None:
            return self._missing(expected, "pupils")
        (lx, ly), (rx, ry) = landmarks.eye_left_pupil, landmarks.eye_right_pupil
        roll = abs(math.degrees(math.atan2(ry - ly, rx - lx)))
        if roll > 90.0:
            roll = 180.0 - roll
        return self._within(roll, expected, "Eye line tilt (deg)")


DEFAULT_CHECKS: tuple[type, ...] = (
    HeadHeightRatioCheck,
    EyeLinePositionCheck,
    HeadCenteredCheck,
    MarginsCheck,
    EyesLevelCheck,
)


class ComplianceChecker:
    """Registry of named rules plus the evaluation loop."""

    def __init__(self, checks: Optional[Iterable[ComplianceCheck]] = None) -> None:
        self._checks: dict[str, ComplianceCheck] = {}
        for check in (checks if checks is not None else (cls() for cls in DEFAULT_CHECKS)):
            self.register(check)

    @classmethod
    def with_enabled(cls, names: Iterable[str]) -> "ComplianceChecker":
        """Default rules restricted to `names` (all when empty)."""
        names = list(names)
        checks = [c() for c in DEFAULT_CHECKS]
        if names:
            known = {c.name for c in checks}
            unknown = [n for n in names if n not in known]
            if unknown:
                raise ConfigurationError(f"Unknown compliance checks in config: {unknown}")
            checks = [c for c in checks if c.name in names]
        return cls(checks)

    def register(self, check: ComplianceCheck) -> None:
        self._checks[check.name] = check
        _log.debug("Compliance check registered: %s", check.name)

    @property
    def available_checks(self) -> list[str]:
        return list(self._checks)

    def check(
        self,
        check_names: Iterable[str],
        landmarks: LandMarks,
        crop: Region,
        standard: PhotoStandard,
    ) -> Union[ComplianceResult, Failure]:
        """Evaluate the requested rules.

        Returns:
            ComplianceResult with exactly one entry per requested name, or
            Failure(UNKNOWN_CHECK) if any name is not registered,
            Failure(INVALID_INPUT) for an empty crop region.
        """
        names = list(check_names)
        unknown = [n for n in names if n not in self._checks]
        if unknown:
            return Failure(
                FailureKind.UNKNOWN_CHECK, "compliance",
                f"unknown check(s): {', '.join(unknown)}",
            )
        if crop is None or crop.is_empty():
            return Failure(FailureKind.INVALID_INPUT, "compliance", "empty crop region")

        result = ComplianceResult()
        for name in names:
            result.checks.append(self._checks[name].evaluate(landmarks, crop, standard))

        _log.debug(
            "Compliance against %s: %d/%d passed",
            standard.name, sum(c.passed for c in result.checks), len(result.checks),
        )
        return result
