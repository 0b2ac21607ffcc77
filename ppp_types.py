"""
PPP — Shared Value Types
========================
Data model shared by every stage of the landmark / compliance pipeline.

Contains:
  - Region: integer pixel rectangle (detection windows, crop regions)
  - LandMarkType / LandMarks: semantic facial points of one request
  - PhotoStandard / PrintDefinition: immutable geometric photo requirements
  - Pose, CrownChinEstimate, CheckResult, ComplianceResult
  - Failure taxonomy (FailureKind + Failure) and ConfigurationError

Per-request failures are VALUES (Failure), never exceptions.
ConfigurationError is the only fatal class and is raised by configure().
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

import numpy as np

Point = tuple[float, float]


# ═══════════════════════════════════════════════════════════════
# Errors & Failures
# ═══════════════════════════════════════════════════════════════

class ConfigurationError(Exception):
    """Fatal, startup-only error. Keeps the engine unconfigured."""


class FailureKind(Enum):
    NOT_CONFIGURED = "NotConfigured"
    IMAGE_NOT_FOUND = "ImageNotFound"
    DETECTION_FAILED = "DetectionFailed"
    INSUFFICIENT_LANDMARKS = "InsufficientLandmarks"
    UNKNOWN_CHECK = "UnknownCheck"
    INVALID_INPUT = "InvalidInput"


@dataclass(frozen=True)
class Failure:
    """Recoverable, request-scoped failure.

    Attributes:
        kind: Failure category.
        stage: Pipeline stage that failed (e.g. 'face', 'eyes', 'refine').
        reason: Human-readable explanation.
    """
    kind: FailureKind
    stage: str = ""
    reason: str = ""

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        if self.stage:
            return f"{self.kind.value}({self.stage}): {self.reason}"
        return f"{self.kind.value}: {self.reason}"

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "stage": self.stage, "reason": self.reason}


class EngineStage(Enum):
    """Per-request orchestration states."""
    IDLE = "Idle"
    FACE_DETECTED = "FaceDetected"
    LANDMARKS_REFINED = "LandmarksRefined"
    ESTIMATED = "Estimated"
    COMPLIANCE_CHECKED = "ComplianceChecked"
    FAILED = "Failed"


# ═══════════════════════════════════════════════════════════════
# Geometry
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Region:
    """Axis-aligned pixel rectangle: (x, y) top-left, width, height."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_image(cls, image: np.ndarray) -> "Region":
        h, w = image.shape[:2]
        return cls(0, 0, int(w), int(h))

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def center(self) -> Point:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def clip(self, image_shape: tuple) -> "Region":
        """Intersect with the image bounds. May return an empty region."""
        h, w = image_shape[:2]
        x1, y1 = max(0, self.x), max(0, self.y)
        x2, y2 = min(w, self.right), min(h, self.bottom)
        return Region(x1, y1, max(0, x2 - x1), max(0, y2 - y1))

    def expand(self, factor: float) -> "Region":
        """Grow around the center by `factor` (1.0 = unchanged)."""
        cx, cy = self.center
        new_w = int(round(self.width * factor))
        new_h = int(round(self.height * factor))
        return Region(int(round(cx - new_w / 2.0)), int(round(cy - new_h / 2.0)), new_w, new_h)

    def union(self, other: "Region") -> "Region":
        x1, y1 = min(self.x, other.x), min(self.y, other.y)
        x2, y2 = max(self.right, other.right), max(self.bottom, other.bottom)
        return Region(x1, y1, x2 - x1, y2 - y1)

    def split_horizontal(self) -> tuple["Region", "Region"]:
        """Left and right halves."""
        half = self.width // 2
        return (
            Region(self.x, self.y, half, self.height),
            Region(self.x + half, self.y, self.width - half, self.height),
        )

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


# ═══════════════════════════════════════════════════════════════
# Landmarks
# ═══════════════════════════════════════════════════════════════

class LandMarkType(Enum):
    """Semantic landmark identities. 'Left' is image-left (smaller x)."""
    EYE_PUPIL_CENTER_LEFT = "eye_left_pupil"
    EYE_PUPIL_CENTER_RIGHT = "eye_right_pupil"
    MOUTH_CORNER_LEFT = "lip_left_corner"
    MOUTH_CORNER_RIGHT = "lip_right_corner"
    CHIN_LOWEST_POINT = "chin_lowest"
    NOSE_TIP_POINT = "nose_tip"
    EYE_OUTER_CORNER_LEFT = "eye_left_outer_corner"
    EYE_OUTER_CORNER_RIGHT = "eye_right_outer_corner"

    @classmethod
    def parse(cls, name: str) -> "LandMarkType":
        """Resolve by enum name or field name, case-insensitively."""
        key = name.strip()
        for member in cls:
            if key.upper() == member.name or key.lower() == member.value:
                return member
        raise KeyError(name)


@dataclass
class LandMarks:
    """All points found for one face in one request.

    Every point is either None (unset) or a finite pixel coordinate of
    the source image. A failing stage may leave downstream fields unset.
    """
    eye_left_pupil: Optional[Point] = None
    eye_right_pupil: Optional[Point] = None
    lip_left_corner: Optional[Point] = None
    lip_right_corner: Optional[Point] = None
    chin_lowest: Optional[Point] = None
    nose_tip: Optional[Point] = None
    eye_left_outer_corner: Optional[Point] = None
    eye_right_outer_corner: Optional[Point] = None
    crown_point: Optional[Point] = None
    chin_point: Optional[Point] = None

    face_rect: Optional[Region] = None
    left_eye_rect: Optional[Region] = None
    right_eye_rect: Optional[Region] = None
    lips_rect: Optional[Region] = None

    crown_chin_low_confidence: bool = False

    def get(self, landmark_type: LandMarkType) -> Optional[Point]:
        return getattr(self, landmark_type.value)

    def set(self, landmark_type: LandMarkType, point: Optional[Point]) -> None:
        setattr(self, landmark_type.value, point)

    def has(self, *landmark_types: LandMarkType) -> bool:
        return all(self.get(t) is not None for t in landmark_types)

    @property
    def eye_line_y(self) -> Optional[float]:
        if self.eye_left_pupil is None or self.eye_right_pupil is None:
            return None
        return (self.eye_left_pupil[1] + self.eye_right_pupil[1]) / 2.0

    def to_dict(self) -> dict:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════
# Standards
# ═══════════════════════════════════════════════════════════════

_UNITS_PER_INCH = {"inch": 1.0, "mm": 25.4, "cm": 2.54}


def to_pixels(value: float, units: str, resolution: float) -> int:
    """Convert a physical length to pixels at `resolution` dpi."""
    if units == "pixel":
        return int(round(value))
    if units not in _UNITS_PER_INCH:
        raise ValueError(f"Unknown units: {units!r}")
    return int(round(value / _UNITS_PER_INCH[units] * resolution))


@dataclass(frozen=True)
class PhotoStandard:
    """Named geometric requirements of a compliant photo.

    Ratios are fractions of the photo height (width for centering):
      head_height_ratio: allowed crown-to-chin / photo height.
      eye_line_ratio: allowed eye-line distance from the BOTTOM edge.
      max_center_offset_ratio: allowed |head center - photo center| / width.
      min_margin_ratio: minimum space above the crown and below the chin.
      max_eye_roll_deg: allowed tilt of the eye line.
    """
    name: str
    width: float
    height: float
    units: str = "mm"
    resolution: float = 300.0
    head_height_ratio: tuple[float, float] = (0.70, 0.80)
    eye_line_ratio: tuple[float, float] = (0.56, 0.69)
    max_center_offset_ratio: float = 0.05
    min_margin_ratio: float = 0.02
    max_eye_roll_deg: float = 5.0

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def pixel_size(self) -> tuple[int, int]:
        """Target canvas (width, height) in pixels."""
        return (
            to_pixels(self.width, self.units, self.resolution),
            to_pixels(self.height, self.units, self.resolution),
        )


@dataclass(frozen=True)
class PrintDefinition:
    """Physical print sheet. Consumed only by the print maker."""
    width: float
    height: float
    units: str = "inch"
    resolution: float = 300.0

    def pixel_size(self) -> tuple[int, int]:
        return (
            to_pixels(self.width, self.units, self.resolution),
            to_pixels(self.height, self.units, self.resolution),
        )


# ═══════════════════════════════════════════════════════════════
# Estimation results
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CrownChinEstimate:
    crown: Point
    chin: Point
    low_confidence: bool = False


@dataclass
class Pose:
    """Head rotation in degrees plus RMS reprojection error in pixels."""
    yaw: float
    pitch: float
    roll: float
    reprojection_error: float
    reliable: bool = True
    rotation_vector: Optional[np.ndarray] = field(default=None, repr=False)
    translation_vector: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def angles(self) -> tuple[float, float, float]:
        return (self.yaw, self.pitch, self.roll)


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one compliance rule."""
    name: str
    passed: bool
    measured: Optional[float]
    expected: tuple[float, float]
    reason: str


@dataclass
class ComplianceResult:
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    def __getitem__(self, name: str) -> CheckResult:
        for c in self.checks:
            if c.name == name:
                return c
        raise KeyError(name)

    def __len__(self) -> int:
        return len(self.checks)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "checks": [
                {
                    "name": c.name,
                    "passed": c.passed,
                    "measured": c.measured,
                    "expected": list(c.expected),
                    "reason": c.reason,
                }
                for c in self.checks
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
