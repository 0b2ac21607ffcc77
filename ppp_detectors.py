"""
PPP — Region Detectors (Face / Eyes / Lips)
===========================================
Pluggable capability with a single operation:

    detect(image, search_region=None) -> Region | None

None means "not found" and is NOT an error: the engine turns it into a
request-scoped DetectionFailed result.

Backends:
  - 'cascade':  OpenCV Haar cascades (bundled with opencv-python).
                Eyes/lips variants search a vertical band of the face box
                only, which cuts false positives on hair, nostrils, etc.
  - 'dnn_ssd':  OpenCV DNN face detector (Caffe SSD res10), more robust
                to off-axis faces but needs separate model files.

OpenCV classifiers are not safe to share across threads, so each thread
lazily loads its own copy; calls never share mutable state.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import cv2
import numpy as np

from ppp_types import ConfigurationError, Region

_log = logging.getLogger("PppDetectors")


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def _is_valid_image(image) -> bool:
    return isinstance(image, np.ndarray) and image.ndim in (2, 3) and image.size > 0


class Detector(ABC):
    """Abstract base for all region detectors."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in failure stages and logs ('face', 'eyes', ...)."""

    @abstractmethod
    def detect(self, image: np.ndarray, search_region: Optional[Region] = None) -> Optional[Region]:
        """Find the best region, restricted to `search_region` if given."""

    def detect_pair(
        self,
        image: np.ndarray,
        search_region: Optional[Region] = None,
    ) -> Optional[tuple[Region, Region]]:
        """Left and right halves of the detected region (image-left first).

        Paired detectors (eyes) override this with one hit per side.
        """
        found = self.detect(image, search_region)
        if found is None:
            return None
        return found.split_horizontal()

    def release(self) -> None:
        """Optional cleanup logic on shutdown."""


# ═══════════════════════════════════════════════════════════════
# Haar cascade backend
# ═══════════════════════════════════════════════════════════════

def resolve_cascade_path(model: str, resolve: Optional[Callable[[str], str]] = None) -> str:
    """Find a cascade file: as given, via `resolve`, then in cv2.data."""
    candidates = [model]
    if resolve is not None:
        candidates.append(resolve(model))
    haar_dir = getattr(getattr(cv2, "data", None), "haarcascades", "")
    if haar_dir:
        candidates.append(os.path.join(haar_dir, os.path.basename(model)))
    for path in candidates:
        if os.path.isfile(path):
            return path
    raise ConfigurationError(f"Cascade model not found: {model}")


class CascadeDetector(Detector):
    """Largest-candidate Haar cascade detector.

    Args:
        name: Detector identifier.
        model_path: Cascade XML path.
        scale_factor: Pyramid step for detectMultiScale.
        min_neighbors: Candidate rectangles required to accept a hit.
        min_size_ratio: Minimum object size as a fraction of the
            search window's shorter side.
        roi: (top, bottom) fractions of the search window to scan.
    """

    def __init__(
        self,
        name: str,
        model_path: str,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size_ratio: float = 0.1,
        roi: tuple[float, float] = (0.0, 1.0),
    ) -> None:
        top, bottom = float(roi[0]), float(roi[1])
        if not 0.0 <= top < bottom <= 1.0:
            raise ConfigurationError(f"{name}: roi must satisfy 0 <= top < bottom <= 1, got {roi}")
        if scale_factor <= 1.0:
            raise ConfigurationError(f"{name}: scale_factor must be > 1.0")

        self._name = name
        self._model_path = model_path
        self._scale_factor = float(scale_factor)
        self._min_neighbors = int(min_neighbors)
        self._min_size_ratio = float(min_size_ratio)
        self._roi = (top, bottom)
        self._local = threading.local()

        # Load once up front so a bad file fails configure(), not a request.
        self._classifier()
        _log.info("%s cascade loaded from %s", name, model_path)

    @property
    def name(self) -> str:
        return self._name

    def _classifier(self) -> cv2.CascadeClassifier:
        classifier = getattr(self._local, "classifier", None)
        if classifier is None:
            classifier = cv2.CascadeClassifier(self._model_path)
            if classifier.empty():
                raise ConfigurationError(f"{self._name}: cannot load cascade {self._model_path}")
            self._local.classifier = classifier
        return classifier

    def _search_window(self, image: np.ndarray, search_region: Optional[Region]) -> Region:
        window = search_region if search_region is not None else Region.from_image(image)
        top, bottom = self._roi
        y1 = window.y + int(round(window.height * top))
        y2 = window.y + int(round(window.height * bottom))
        return Region(window.x, y1, window.width, y2 - y1).clip(image.shape)

    def candidates(self, image: np.ndarray, search_region: Optional[Region] = None) -> list[Region]:
        """All raw cascade hits inside the search window, image coordinates."""
        if not _is_valid_image(image):
            return []
        window = self._search_window(image, search_region)
        if window.is_empty():
            return []

        gray = _to_gray(image)[window.y:window.bottom, window.x:window.right]
        gray = cv2.equalizeHist(gray)
        min_side = max(1, int(min(window.width, window.height) * self._min_size_ratio))

        hits = self._classifier().detectMultiScale(
            gray,
            scaleFactor=self._scale_factor,
            minNeighbors=self._min_neighbors,
            minSize=(min_side, min_side),
        )
        return [
            Region(int(x) + window.x, int(y) + window.y, int(w), int(h))
            for (x, y, w, h) in hits
        ]

    def detect(self, image: np.ndarray, search_region: Optional[Region] = None) -> Optional[Region]:
        found = self.candidates(image, search_region)
        if not found:
            return None
        return max(found, key=lambda r: r.area)


class EyesDetector(CascadeDetector):
    """Finds both eyes; the region returned spans the pair.

    One candidate must lie on each side of the search window's vertical
    center line; a single eye is reported as not found.
    """

    def detect_pair(
        self,
        image: np.ndarray,
        search_region: Optional[Region] = None,
    ) -> Optional[tuple[Region, Region]]:
        found = self.candidates(image, search_region)
        if len(found) < 2:
            return None
        window = search_region if search_region is not None else Region.from_image(image)
        center_x = window.center[0]

        left = [r for r in found if r.center[0] < center_x]
        right = [r for r in found if r.center[0] >= center_x]
        if not left or not right:
            return None
        return (max(left, key=lambda r: r.area), max(right, key=lambda r: r.area))

    def detect(self, image: np.ndarray, search_region: Optional[Region] = None) -> Optional[Region]:
        pair = self.detect_pair(image, search_region)
        if pair is None:
            return None
        return pair[0].union(pair[1])


# ═══════════════════════════════════════════════════════════════
# OpenCV DNN SSD backend
# ═══════════════════════════════════════════════════════════════

class DnnFaceDetector(Detector):
    """OpenCV DNN SSD face detector (res10_300x300_ssd_iter_140000)."""

    def __init__(self, proto_path: str, model_path: str, confidence_threshold: float = 0.5) -> None:
        if not os.path.isfile(proto_path) or not os.path.isfile(model_path):
            raise ConfigurationError(
                f"DNN SSD model files not found: {proto_path}, {model_path}"
            )
        self._proto_path = proto_path
        self._model_path = model_path
        self._confidence_threshold = float(confidence_threshold)
        self._local = threading.local()
        self._net()
        _log.info("OpenCV DNN SSD face detector loaded")

    @property
    def name(self) -> str:
        return "face"

    def _net(self):
        net = getattr(self._local, "net", None)
        if net is None:
            try:
                net = cv2.dnn.readNetFromCaffe(self._proto_path, self._model_path)
            except cv2.error as e:
                raise ConfigurationError(f"Cannot load DNN SSD model: {e}") from e
            self._local.net = net
        return net

    def detect(self, image: np.ndarray, search_region: Optional[Region] = None) -> Optional[Region]:
        if not _is_valid_image(image) or image.ndim != 3:
            return None
        window = (search_region or Region.from_image(image)).clip(image.shape)
        if window.is_empty():
            return None

        sub = image[window.y:window.bottom, window.x:window.right, :3]
        h, w = sub.shape[:2]
        blob = cv2.dnn.blobFromImage(sub, 1.0, (300, 300), (104.0, 177.0, 123.0))
        net = self._net()
        net.setInput(blob)
        raw = net.forward()

        best: Optional[Region] = None
        best_conf = self._confidence_threshold
        for i in range(raw.shape[2]):
            conf = float(raw[0, 0, i, 2])
            if conf < best_conf:
                continue
            x1 = max(0, int(raw[0, 0, i, 3] * w))
            y1 = max(0, int(raw[0, 0, i, 4] * h))
            x2 = min(w, int(raw[0, 0, i, 5] * w))
            y2 = min(h, int(raw[0, 0, i, 6] * h))
            if x2 <= x1 or y2 <= y1:
                continue
            best = Region(x1 + window.x, y1 + window.y, x2 - x1, y2 - y1)
            best_conf = conf
        return best


# ═══════════════════════════════════════════════════════════════
# Factory
# ═══════════════════════════════════════════════════════════════

_DEFAULT_CASCADES = {
    "face": "haarcascade_frontalface_default.xml",
    "eyes": "haarcascade_eye.xml",
    "lips": "haarcascade_smile.xml",
}


def create_detector(
    kind: str,
    params: Optional[dict] = None,
    resolve: Optional[Callable[[str], str]] = None,
) -> Detector:
    """Build the detector for `kind` ('face' | 'eyes' | 'lips') from config."""
    if kind not in _DEFAULT_CASCADES:
        raise ConfigurationError(f"Unknown detector kind: {kind!r}")
    params = dict(params or {})
    backend = params.get("backend", "cascade")

    if backend == "dnn_ssd":
        if kind != "face":
            raise ConfigurationError("dnn_ssd backend only detects faces")
        proto = params.get("prototxt", "models/deploy.prototxt")
        caffemodel = params.get("caffemodel", "models/res10_300x300_ssd_iter_140000.caffemodel")
        if resolve is not None:
            proto, caffemodel = resolve(proto), resolve(caffemodel)
        return DnnFaceDetector(proto, caffemodel, params.get("confidence_threshold", 0.5))

    if backend != "cascade":
        raise ConfigurationError(f"Unknown detector backend: {backend!r}")

    path = resolve_cascade_path(params.get("model", _DEFAULT_CASCADES[kind]), resolve)
    cls = EyesDetector if kind == "eyes" else CascadeDetector
    try:
        return cls(
            name=kind,
            model_path=path,
            scale_factor=float(params.get("scale_factor", 1.1)),
            min_neighbors=int(params.get("min_neighbors", 5)),
            min_size_ratio=float(params.get("min_size_ratio", 0.1)),
            roi=tuple(params.get("roi", (0.0, 1.0))),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid {kind} detector settings: {e}") from e
