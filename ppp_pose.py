"""
PPP — Head Pose Estimation
==========================
Solves the 2-D/3-D correspondence problem between observed landmarks
and a generic anthropometric face model:

  1. Pick every available landmark that has a model counterpart
     (pupils, nose tip and mouth corners are mandatory).
  2. Seed a frontal guess (identity rotation, depth from the inter-pupil
     distance) and refine with cv2.solvePnP (iterative Levenberg-Marquardt
     over the 2-D reprojection residuals).
  3. Decompose the rotation into yaw / pitch / roll (degrees) and report
     the RMS reprojection error.

Model frame = camera frame for a frontal face: x right, y DOWN,
z AWAY from the camera, nose tip at the origin. Identity rotation
therefore means (0, 0, 0) with no angle wrap-around.
"""

from __future__ import annotations

import logging
import math
from typing import Union

import cv2
import numpy as np

from ppp_types import Failure, FailureKind, LandMarks, LandMarkType, Point, Pose

_log = logging.getLogger("PppPose")

# Generic face model (mm, arbitrary scale). Left = image-left.
_MODEL_POINTS_3D: dict[LandMarkType, tuple[float, float, float]] = {
    LandMarkType.NOSE_TIP_POINT:         (0.0, 0.0, 0.0),
    LandMarkType.EYE_PUPIL_CENTER_LEFT:  (-150.0, -170.0, 125.0),
    LandMarkType.EYE_PUPIL_CENTER_RIGHT: (150.0, -170.0, 125.0),
    LandMarkType.MOUTH_CORNER_LEFT:      (-150.0, 150.0, 125.0),
    LandMarkType.MOUTH_CORNER_RIGHT:     (150.0, 150.0, 125.0),
    LandMarkType.CHIN_LOWEST_POINT:      (0.0, 330.0, 65.0),
    LandMarkType.EYE_OUTER_CORNER_LEFT:  (-225.0, -170.0, 135.0),
    LandMarkType.EYE_OUTER_CORNER_RIGHT: (225.0, -170.0, 135.0),
}

REQUIRED_LANDMARKS = (
    LandMarkType.EYE_PUPIL_CENTER_LEFT,
    LandMarkType.EYE_PUPIL_CENTER_RIGHT,
    LandMarkType.NOSE_TIP_POINT,
    LandMarkType.MOUTH_CORNER_LEFT,
    LandMarkType.MOUTH_CORNER_RIGHT,
)

_MODEL_PUPIL_DISTANCE = (
    _MODEL_POINTS_3D[LandMarkType.EYE_PUPIL_CENTER_RIGHT][0]
    - _MODEL_POINTS_3D[LandMarkType.EYE_PUPIL_CENTER_LEFT][0]
)

DEFAULT_MAX_REPROJECTION_ERROR = 8.0


def _normalize_angle(angle: float) -> float:
    """Fold an Euler angle into [-90, +90]."""
    if angle > 90.0:
        angle -= 180.0
    elif angle < -90.0:
        angle += 180.0
    return angle


def camera_matrix(focal_length: float, focal_center: Point) -> np.ndarray:
    cx, cy = focal_center
    return np.array([
        [focal_length, 0, cx],
        [0, focal_length, cy],
        [0, 0, 1],
    ], dtype=np.float64)


def model_points(landmark_types) -> np.ndarray:
    return np.array([_MODEL_POINTS_3D[t] for t in landmark_types], dtype=np.float64)


class PoseEstimator:
    """Least-squares head pose from landmarks and camera intrinsics."""

    def __init__(self, max_reprojection_error: float = DEFAULT_MAX_REPROJECTION_ERROR) -> None:
        self.max_reprojection_error = max_reprojection_error

    def estimate_pose(
        self,
        landmarks: LandMarks,
        focal_length: float,
        focal_center: Point,
    ) -> Union[Pose, Failure]:
        """Estimate head rotation.

        Args:
            landmarks: Translated landmarks of one face.
            focal_length: Camera focal length in pixels.
            focal_center: Optical center (cx, cy) in pixels.

        Returns:
            Pose, or Failure(INSUFFICIENT_LANDMARKS) when pupils, nose tip
            or mouth corners are missing, Failure(INVALID_INPUT) for a
            non-positive focal length.
        """
        missing = [t.name for t in REQUIRED_LANDMARKS if landmarks.get(t) is None]
        if missing:
            return Failure(
                FailureKind.INSUFFICIENT_LANDMARKS, "pose",
                f"missing {', '.join(missing)}",
            )
        if not focal_length or focal_length <= 0:
            return Failure(FailureKind.INVALID_INPUT, "pose", "focal length must be positive")

        used = [t for t in _MODEL_POINTS_3D if landmarks.get(t) is not None]
        object_points = model_points(used)
        image_points = np.array([landmarks.get(t) for t in used], dtype=np.float64)

        cam = camera_matrix(focal_length, focal_center)
        dist_coeffs = np.zeros((4, 1), dtype=np.float64)
        rvec, tvec = self._initial_guess(landmarks, focal_length, focal_center)

        success, rvec, tvec = cv2.solvePnP(
            object_points,
            image_points,
            cam,
            dist_coeffs,
            rvec,
            tvec,
            useExtrinsicGuess=True,
            flags=cv2.SOLVEPNP_ITERATIVE,
        )
        if not success:
            return Failure(FailureKind.INSUFFICIENT_LANDMARKS, "pose", "solvePnP did not converge")

        projected, _ = cv2.projectPoints(object_points, rvec, tvec, cam, dist_coeffs)
        residuals = projected.reshape(-1, 2) - image_points
        error = float(np.sqrt(np.mean(np.sum(residuals ** 2, axis=1))))

        rotation_mat, _ = cv2.Rodrigues(rvec)
        euler = cv2.RQDecomp3x3(rotation_mat)[0]
        pitch = _normalize_angle(float(euler[0]))
        yaw = _normalize_angle(float(euler[1]))
        roll = _normalize_angle(float(euler[2]))

        reliable = error <= self.max_reprojection_error
        if not reliable:
            _log.info("Pose residual %.2fpx above %.2fpx", error, self.max_reprojection_error)

        return Pose(
            yaw=yaw,
            pitch=pitch,
            roll=roll,
            reprojection_error=error,
            reliable=reliable,
            rotation_vector=rvec.reshape(3),
            translation_vector=tvec.reshape(3),
        )

    @staticmethod
    def _initial_guess(
        landmarks: LandMarks,
        focal_length: float,
        focal_center: Point,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Frontal pose at the depth implied by the inter-pupil distance."""
        (lx, ly), (rx, ry) = landmarks.eye_left_pupil, landmarks.eye_right_pupil
        pupil_px = max(math.hypot(rx - lx, ry - ly), 1.0)
        tz = focal_length * _MODEL_PUPIL_DISTANCE / pupil_px

        nx, ny = landmarks.nose_tip
        cx, cy = focal_center
        tvec = np.array([[(nx - cx) * tz / focal_length],
                         [(ny - cy) * tz / focal_length],
                         [tz]], dtype=np.float64)
        rvec = np.zeros((3, 1), dtype=np.float64)
        return rvec, tvec
