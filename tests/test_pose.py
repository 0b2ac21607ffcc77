"""
PPP -- Head Pose Tests
======================
Synthetic landmarks projected from the face model through a known
camera, then recovered by PoseEstimator.
"""

from __future__ import annotations

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from ppp_pose import PoseEstimator, REQUIRED_LANDMARKS, camera_matrix, model_points
from ppp_types import Failure, FailureKind, LandMarks, LandMarkType, Pose

FOCAL = 800.0
CENTER = (320.0, 240.0)


def _project(yaw_deg: float = 0.0, pitch_deg: float = 0.0, depth: float = 2000.0) -> LandMarks:
    types = list(LandMarkType)
    rvec = cv2.Rodrigues(
        cv2.Rodrigues(np.array([np.radians(pitch_deg), 0.0, 0.0]))[0]
        @ cv2.Rodrigues(np.array([0.0, np.radians(yaw_deg), 0.0]))[0]
    )[0]
    tvec = np.array([0.0, 0.0, depth])
    projected, _ = cv2.projectPoints(
        model_points(types), rvec, tvec, camera_matrix(FOCAL, CENTER), np.zeros(4),
    )
    lm = LandMarks()
    for t, (x, y) in zip(types, projected.reshape(-1, 2)):
        lm.set(t, (float(x), float(y)))
    return lm


class TestPoseEstimator:

    def test_frontal_face_is_zero_rotation(self):
        pose = PoseEstimator().estimate_pose(_project(), FOCAL, CENTER)
        assert isinstance(pose, Pose)
        assert pose.yaw == pytest.approx(0.0, abs=1.0)
        assert pose.pitch == pytest.approx(0.0, abs=1.0)
        assert pose.roll == pytest.approx(0.0, abs=1.0)
        assert pose.reprojection_error < 0.5
        assert pose.reliable

    def test_recovers_yaw(self):
        pose = PoseEstimator().estimate_pose(_project(yaw_deg=20.0), FOCAL, CENTER)
        assert abs(pose.yaw) == pytest.approx(20.0, abs=2.0)
        assert abs(pose.pitch) < 2.0
        assert abs(pose.roll) < 2.0

    def test_recovers_pitch(self):
        pose = PoseEstimator().estimate_pose(_project(pitch_deg=-15.0), FOCAL, CENTER)
        assert abs(pose.pitch) == pytest.approx(15.0, abs=2.0)
        assert abs(pose.yaw) < 2.0

    def test_translation_depth(self):
        pose = PoseEstimator().estimate_pose(_project(depth=1500.0), FOCAL, CENTER)
        assert pose.translation_vector[2] == pytest.approx(1500.0, rel=0.05)

    def test_minimum_landmark_set_is_enough(self):
        full = _project()
        lm = LandMarks()
        for t in REQUIRED_LANDMARKS:
            lm.set(t, full.get(t))
        pose = PoseEstimator().estimate_pose(lm, FOCAL, CENTER)
        assert isinstance(pose, Pose)
        assert pose.roll == pytest.approx(0.0, abs=2.0)

    def test_large_residual_marks_unreliable(self):
        lm = _project()
        x, y = lm.chin_lowest
        lm.chin_lowest = (x + 60.0, y + 40.0)
        pose = PoseEstimator(max_reprojection_error=1.0).estimate_pose(lm, FOCAL, CENTER)
        assert isinstance(pose, Pose)
        assert not pose.reliable
        assert pose.reprojection_error > 1.0

    def test_stateless_between_calls(self):
        estimator = PoseEstimator()
        first = estimator.estimate_pose(_project(yaw_deg=10.0), FOCAL, CENTER)
        estimator.estimate_pose(_project(yaw_deg=-25.0), FOCAL, CENTER)
        again = estimator.estimate_pose(_project(yaw_deg=10.0), FOCAL, CENTER)
        assert again.angles == pytest.approx(first.angles)


class TestInsufficientLandmarks:

    @pytest.mark.parametrize("missing", REQUIRED_LANDMARKS)
    def test_each_required_landmark(self, missing):
        lm = _project()
        lm.set(missing, None)
        result = PoseEstimator().estimate_pose(lm, FOCAL, CENTER)
        assert isinstance(result, Failure)
        assert result.kind is FailureKind.INSUFFICIENT_LANDMARKS
        assert missing.name in result.reason

    def test_non_positive_focal_length(self):
        result = PoseEstimator().estimate_pose(_project(), 0.0, CENTER)
        assert isinstance(result, Failure)
        assert result.kind is FailureKind.INVALID_INPUT
        assert result.stage == "pose"
