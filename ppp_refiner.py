"""
PPP — Landmark Refiner
======================
Wraps a pretrained point-location model:

    refine(image, region) -> (L, 2) float array | Failure

L is fixed by the model (478 for the MediaPipe FaceLandmarker with iris
refinement). Points are returned in FULL-IMAGE pixel coordinates, in the
model's own order; LandmarkIndexMap gives them meaning.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Union

import cv2
import numpy as np

from ppp_types import ConfigurationError, Failure, FailureKind, Region

_log = logging.getLogger("PppRefiner")

_STAGE = "refine"


class LandmarkRefiner(ABC):
    """Abstract base for dense landmark models."""

    @property
    @abstractmethod
    def num_points(self) -> int:
        """Length of every successful refine() result."""

    @abstractmethod
    def refine(self, image: np.ndarray, region: Region) -> Union[np.ndarray, Failure]:
        """Locate the model's points for the face inside `region`."""

    def release(self) -> None:
        """Release model resources."""

    def __enter__(self):
        return self

    def __exit__(self, *args) -> None:
        self.release()

    # ── Shared input validation ───────────────────────────────

    @staticmethod
    def check_input(image: np.ndarray, region: Region) -> Union[Region, Failure]:
        """Return the image-clipped region, or a Failure for bad input."""
        if not isinstance(image, np.ndarray) or image.size == 0 or image.ndim not in (2, 3):
            return Failure(FailureKind.DETECTION_FAILED, _STAGE, "empty or malformed image")
        if region is None or region.is_empty():
            return Failure(FailureKind.DETECTION_FAILED, _STAGE, "zero-area face region")
        clipped = region.clip(image.shape)
        if clipped.is_empty():
            return Failure(FailureKind.DETECTION_FAILED, _STAGE, "face region lies outside the image")
        return clipped


class MediaPipeLandmarkRefiner(LandmarkRefiner):
    """MediaPipe Tasks FaceLandmarker (478-point mesh incl. iris).

    The face box is grown by `region_padding` before cropping because
    the mesh model expects forehead and chin context around the face.
    """

    NUM_POINTS = 478

    def __init__(
        self,
        model_path: str,
        region_padding: float = 1.6,
        min_confidence: float = 0.5,
    ) -> None:
        if not os.path.isfile(model_path):
            raise ConfigurationError(f"MediaPipe model not found: {model_path}")
        if region_padding < 1.0:
            raise ConfigurationError("region_padding must be >= 1.0")

        self._model_path = model_path
        self._region_padding = float(region_padding)
        self._min_confidence = float(min_confidence)
        self._local = threading.local()
        self._created: list = []
        self._created_lock = threading.Lock()

        model_size_mb = os.path.getsize(model_path) / 1024 / 1024
        _log.info("MediaPipe FaceLandmarker: %.1f MB from %s", model_size_mb, model_path)

    @property
    def num_points(self) -> int:
        return self.NUM_POINTS

    def _landmarker(self):
        landmarker = getattr(self._local, "landmarker", None)
        if landmarker is None:
            from mediapipe.tasks import python
            from mediapipe.tasks.python import vision

            base_options = python.BaseOptions(
                model_asset_path=self._model_path,
                delegate=python.BaseOptions.Delegate.CPU,
            )
            options = vision.FaceLandmarkerOptions(
                base_options=base_options,
                running_mode=vision.RunningMode.IMAGE,
                num_faces=1,
                min_face_detection_confidence=self._min_confidence,
                min_face_presence_confidence=self._min_confidence,
            )
            landmarker = vision.FaceLandmarker.create_from_options(options)
            self._local.landmarker = landmarker
            with self._created_lock:
                self._created.append(landmarker)
        return landmarker

    def refine(self, image: np.ndarray, region: Region) -> Union[np.ndarray, Failure]:
        checked = self.check_input(image, region)
        if isinstance(checked, Failure):
            return checked

        crop = checked.expand(self._region_padding).clip(image.shape)
        sub = image[crop.y:crop.bottom, crop.x:crop.right]
        if sub.ndim == 2:
            rgb = cv2.cvtColor(sub, cv2.COLOR_GRAY2RGB)
        elif sub.shape[2] == 4:
            rgb = cv2.cvtColor(sub, cv2.COLOR_BGRA2RGB)
        else:
            rgb = cv2.cvtColor(sub, cv2.COLOR_BGR2RGB)

        import mediapipe as mp
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(rgb))

        try:
            result = self._landmarker().detect(mp_image)
        except (RuntimeError, ValueError) as e:
            _log.warning("FaceLandmarker inference failed: %s", e)
            return Failure(FailureKind.DETECTION_FAILED, _STAGE, f"model error: {e}")

        if not result or not result.face_landmarks:
            return Failure(FailureKind.DETECTION_FAILED, _STAGE, "no face mesh found in region")

        face_lms = result.face_landmarks[0]
        if len(face_lms) < self.NUM_POINTS:
            return Failure(
                FailureKind.DETECTION_FAILED, _STAGE,
                f"model returned {len(face_lms)} points, expected {self.NUM_POINTS}",
            )

        # Normalized crop coordinates -> full-image pixels
        points = np.array(
            [[lm.x * crop.width + crop.x, lm.y * crop.height + crop.y]
             for lm in face_lms[:self.NUM_POINTS]],
            dtype=np.float64,
        )
        return points

    def release(self) -> None:
        with self._created_lock:
            for landmarker in self._created:
                landmarker.close()
            self._created.clear()
        self._local = threading.local()
        _log.info("MediaPipeLandmarkRefiner released")


def create_refiner(params: dict, resolve) -> LandmarkRefiner:
    """Build the refiner from the `refiner` config section."""
    backend = params.get("backend", "mediapipe")
    if backend != "mediapipe":
        raise ConfigurationError(f"Unknown refiner backend: {backend!r}")
    return MediaPipeLandmarkRefiner(
        model_path=resolve(params.get("model_path", "models/face_landmarker.task")),
        region_padding=float(params.get("region_padding", 1.6)),
        min_confidence=float(params.get("min_confidence", 0.5)),
    )
