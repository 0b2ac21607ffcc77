"""
PPP -- Compliance Checker Tests
===============================
Rule registry, per-rule measurements and aggregation.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from ppp_compliance import ComplianceCheck, ComplianceChecker, DEFAULT_CHECKS
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

ALL_CHECKS = ["head-height-ratio", "eye-line-position", "head-centered", "margins", "eyes-level"]

CROP = Region(0, 0, 600, 600)
STANDARD = PhotoStandard(
    name="test-standard",
    width=35,
    height=45,
    head_height_ratio=(0.70, 0.80),
    eye_line_ratio=(0.56, 0.69),
)


def _landmarks(crown_y: float = 60.0, chin_y: float = 510.0, head_x: float = 300.0) -> LandMarks:
    return LandMarks(
        eye_left_pupil=(250.0, 240.0),
        eye_right_pupil=(350.0, 240.0),
        crown_point=(head_x, crown_y),
        chin_point=(head_x, chin_y),
    )


class TestComplianceChecker:

    def test_all_pass(self):
        result = ComplianceChecker().check(ALL_CHECKS, _landmarks(), CROP, STANDARD)
        assert isinstance(result, ComplianceResult)
        assert result.passed
        assert result["head-height-ratio"].measured == pytest.approx(0.75)
        assert result["eye-line-position"].measured == pytest.approx(0.6)

    def test_head_height_out_of_band_fails_only_that_rule(self):
        # crown 30, chin 570 on a 600 px crop -> ratio 0.90
        result = ComplianceChecker().check(
            ALL_CHECKS, _landmarks(crown_y=30.0, chin_y=570.0), CROP, STANDARD,
        )
        head = result["head-height-ratio"]
        assert not head.passed
        assert head.measured == pytest.approx(0.90)
        assert head.expected == (0.70, 0.80)
        assert "outside" in head.reason
        assert not result.passed
        assert all(c.passed for c in result.checks if c.name != "head-height-ratio")

    def test_unknown_check_returns_no_partial_results(self):
        result = ComplianceChecker().check(
            ["head-height-ratio", "smile-detected"], _landmarks(), CROP, STANDARD,
        )
        assert isinstance(result, Failure)
        assert result.kind is FailureKind.UNKNOWN_CHECK
        assert "smile-detected" in result.reason

    @pytest.mark.parametrize("names", [
        ["margins"],
        ["eyes-level", "margins"],
        ALL_CHECKS,
    ])
    def test_one_entry_per_requested_name_in_order(self, names):
        result = ComplianceChecker().check(names, _landmarks(), CROP, STANDARD)
        assert len(result) == len(names)
        assert [c.name for c in result.checks] == names

    def test_deterministic(self):
        checker = ComplianceChecker()
        lm = _landmarks(crown_y=45.0, chin_y=520.0, head_x=320.0)
        first = checker.check(ALL_CHECKS, lm, CROP, STANDARD)
        second = checker.check(ALL_CHECKS, lm, CROP, STANDARD)
        assert first == second

    def test_empty_crop_fails(self):
        result = ComplianceChecker().check(ALL_CHECKS, _landmarks(), Region(0, 0, 0, 10), STANDARD)
        assert isinstance(result, Failure)
        assert result.kind is FailureKind.INVALID_INPUT

    def test_no_short_circuit_on_missing_landmarks(self):
        lm = LandMarks(crown_point=(300.0, 60.0), chin_point=(300.0, 510.0))
        result = ComplianceChecker().check(ALL_CHECKS, lm, CROP, STANDARD)
        assert len(result) == 5
        assert not result["eye-line-position"].passed
        assert result["eye-line-position"].measured is None
        assert result["head-height-ratio"].passed

    def test_to_json(self):
        result = ComplianceChecker().check(["margins"], _landmarks(), CROP, STANDARD)
        decoded = json.loads(result.to_json())
        assert decoded["passed"] is True
        assert decoded["checks"][0]["name"] == "margins"


class TestRules:

    def test_off_center_head(self):
        result = ComplianceChecker().check(["head-centered"], _landmarks(head_x=360.0), CROP, STANDARD)
        check = result["head-centered"]
        assert check.measured == pytest.approx(0.1)
        assert not check.passed

    def test_tight_top_margin(self):
        result = ComplianceChecker().check(["margins"], _landmarks(crown_y=5.0), CROP, STANDARD)
        assert not result["margins"].passed

    def test_tilted_eyes(self):
        lm = _landmarks()
        lm.eye_right_pupil = (350.0, 260.0)  # ~11 degrees
        result = ComplianceChecker().check(["eyes-level"], lm, CROP, STANDARD)
        assert result["eyes-level"].measured == pytest.approx(11.3099, abs=1e-3)
        assert not result.passed

    def test_crop_offset_is_respected(self):
        crop = Region(100, 100, 600, 600)
        lm = _landmarks()
        for field in ("eye_left_pupil", "eye_right_pupil", "crown_point", "chin_point"):
            x, y = getattr(lm, field)
            setattr(lm, field, (x + 100, y + 100))
        result = ComplianceChecker().check(ALL_CHECKS, lm, crop, STANDARD)
        assert result.passed


class TestRegistry:

    def test_default_registry(self):
        assert ComplianceChecker().available_checks == ALL_CHECKS
        assert len(DEFAULT_CHECKS) == 5

    def test_with_enabled_subset(self):
        checker = ComplianceChecker.with_enabled(["margins", "eyes-level"])
        assert set(checker.available_checks) == {"margins", "eyes-level"}
        result = checker.check(["head-height-ratio"], _landmarks(), CROP, STANDARD)
        assert isinstance(result, Failure)

    def test_with_enabled_unknown_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            ComplianceChecker.with_enabled(["no-hats"])

    def test_register_custom_rule(self):
        class AlwaysPass(ComplianceCheck):
            name = "always-pass"

            def evaluate(self, landmarks, crop, standard):
                return CheckResult(self.name, True, 1.0, (0.0, 1.0), "ok")

        checker = ComplianceChecker()
        checker.register(AlwaysPass())
        result = checker.check(["always-pass", "margins"], _landmarks(), CROP, STANDARD)
        assert result.passed
