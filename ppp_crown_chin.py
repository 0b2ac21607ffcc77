"""
PPP — Crown / Chin Estimation
=============================
The point model reports a reliable lowest-chin point but no crown: the
hair/forehead boundary is not a stable landmark. The crown is projected
upward from the eye line by a fixed multiple of the eye-to-chin distance:

    crown_y = eye_y - crown_ratio * (chin_y - eye_y)

crown_x is the midpoint of the outer eye corners when both are known,
else the face box center, else the pupil midpoint.

Degraded path (low_confidence=True):
  - pupils unset -> eye line placed at face.y + eye_line_fraction * face.h
  - chin unset   -> face box bottom edge
  - crown/chin outside the image -> clamped to the image border
Failure only when neither landmarks nor a face box are usable.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from ppp_types import (
    CrownChinEstimate,
    Failure,
    FailureKind,
    LandMarks,
    Region,
)

_log = logging.getLogger("PppCrownChin")

# Crown-to-eye over eye-to-chin. Eyes sit near mid-head in adult
# frontal portraits; recalibrate against an annotated reference set.
DEFAULT_CROWN_RATIO = 1.0

# Eye line inside a frontal face detector box, as a fraction of its height.
DEFAULT_EYE_LINE_FRACTION = 0.4


def _clamp(point: tuple[float, float], image_shape: tuple) -> tuple[float, float]:
    h, w = image_shape[:2]
    return (min(max(point[0], 0.0), w - 1.0), min(max(point[1], 0.0), h - 1.0))


class CrownChinEstimator:
    """Proportional crown projection from the eye line."""

    def __init__(
        self,
        crown_ratio: float = DEFAULT_CROWN_RATIO,
        eye_line_fraction: float = DEFAULT_EYE_LINE_FRACTION,
    ) -> None:
        self.crown_ratio = crown_ratio
        self.eye_line_fraction = eye_line_fraction

    def estimate(
        self,
        landmarks: LandMarks,
        face_region: Optional[Region] = None,
        image_shape: Optional[tuple] = None,
    ) -> Union[CrownChinEstimate, Failure]:
        """Estimate crown and chin points.

        Args:
            landmarks: Translated landmarks of one face.
            face_region: Face detector box; used for the horizontal
                center and as the fallback geometry.
            image_shape: Source image shape; when given, points projected
                outside the image are clamped to its border and the
                estimate is marked low confidence.

        Returns:
            CrownChinEstimate, or Failure(INSUFFICIENT_LANDMARKS).
        """
        face = face_region if face_region is not None and not face_region.is_empty() else None
        low_confidence = False

        # Eye line
        eye_y = landmarks.eye_line_y
        if eye_y is None:
            if face is None:
                return Failure(
                    FailureKind.INSUFFICIENT_LANDMARKS, "crown_chin",
                    "no pupils and no face region",
                )
            eye_y = face.y + self.eye_line_fraction * face.height
            low_confidence = True

        # Chin
        if landmarks.chin_lowest is not None:
            chin = landmarks.chin_lowest
        elif face is not None:
            chin = (self._center_x(landmarks, face), float(face.bottom))
            low_confidence = True
        else:
            return Failure(
                FailureKind.INSUFFICIENT_LANDMARKS, "crown_chin",
                "no chin landmark and no face region",
            )

        eye_to_chin = chin[1] - eye_y
        if eye_to_chin <= 0:
            if face is None:
                return Failure(
                    FailureKind.INSUFFICIENT_LANDMARKS, "crown_chin",
                    f"chin ({chin[1]:.1f}) is not below the eye line ({eye_y:.1f})",
                )
            _log.debug("Chin above eye line; using face box geometry")
            eye_y = face.y + self.eye_line_fraction * face.height
            chin = (chin[0], float(face.bottom))
            eye_to_chin = chin[1] - eye_y
            low_confidence = True

        crown = (
            self._center_x(landmarks, face),
            eye_y - self.crown_ratio * eye_to_chin,
        )
        chin = (float(chin[0]), float(chin[1]))

        if image_shape is not None:
            clamped_crown = _clamp(crown, image_shape)
            clamped_chin = _clamp(chin, image_shape)
            if clamped_crown != crown or clamped_chin != chin:
                _log.debug("Crown/chin clamped to the image border")
                crown, chin = clamped_crown, clamped_chin
                low_confidence = True

        if low_confidence:
            _log.info("Crown/chin estimated from fallback geometry (low confidence)")
        return CrownChinEstimate(crown=crown, chin=chin, low_confidence=low_confidence)

    @staticmethod
    def _center_x(landmarks: LandMarks, face: Optional[Region]) -> float:
        if landmarks.eye_left_outer_corner is not None and landmarks.eye_right_outer_corner is not None:
            return (landmarks.eye_left_outer_corner[0] + landmarks.eye_right_outer_corner[0]) / 2.0
        if face is not None:
            return face.center[0]
        if landmarks.eye_left_pupil is not None and landmarks.eye_right_pupil is not None:
            return (landmarks.eye_left_pupil[0] + landmarks.eye_right_pupil[0]) / 2.0
        # Only the chin is known here.
        return float(landmarks.chin_lowest[0])
