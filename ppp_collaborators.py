"""
PPP — External Collaborator Contracts
=====================================
Interfaces the core consumes or feeds but does not own:

  - IImageStore:      decoded 3-channel BGR images addressed by an opaque
                      key. InMemoryImageStore is the default.
  - IPhotoPrintMaker: rasterizes the crop and tiles it on a print sheet.
                      The core only hands over crown/chin + standard.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import cv2
import numpy as np

from ppp_types import PhotoStandard, Point, PrintDefinition

_log = logging.getLogger("PppImageStore")


class IImageStore(ABC):
    """Keyed storage of decoded images."""

    @abstractmethod
    def set_image(self, image: np.ndarray) -> str:
        """Store an image and return its key."""

    @abstractmethod
    def get_image(self, key: str) -> Optional[np.ndarray]:
        """Return the image for `key`, or None if unknown."""

    def contains(self, key: str) -> bool:
        return self.get_image(key) is not None


class InMemoryImageStore(IImageStore):
    """Dictionary-backed store. Grayscale / BGRA inputs become BGR."""

    def __init__(self) -> None:
        self._images: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _normalize(image: np.ndarray) -> np.ndarray:
        if not isinstance(image, np.ndarray) or image.size == 0:
            raise ValueError("Image must be a non-empty numpy array")
        if image.ndim == 2:
            return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        if image.ndim == 3 and image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        if image.ndim == 3 and image.shape[2] == 3:
            return image
        raise ValueError(f"Unsupported image shape: {image.shape}")

    def set_image(self, image: np.ndarray) -> str:
        key = uuid.uuid4().hex
        normalized = self._normalize(image)
        with self._lock:
            self._images[key] = normalized
        return key

    def load_file(self, path: str) -> Optional[str]:
        """Decode an image file; None if it cannot be read."""
        image = cv2.imread(path, cv2.IMREAD_COLOR)
        if image is None:
            _log.warning("Cannot decode image %s", path)
            return None
        return self.set_image(image)

    def get_image(self, key: str) -> Optional[np.ndarray]:
        with self._lock:
            return self._images.get(key)

    def remove(self, key: str) -> None:
        with self._lock:
            self._images.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._images)


class IPhotoPrintMaker(ABC):
    """Crop and tiling layout; implemented outside the core."""

    @abstractmethod
    def crop_picture(
        self,
        original_image: np.ndarray,
        crown_point: Point,
        chin_point: Point,
        standard: PhotoStandard,
    ) -> np.ndarray:
        """Produce the standard-sized cropped photo."""

    @abstractmethod
    def tile_cropped_photo(
        self,
        print_definition: PrintDefinition,
        standard: PhotoStandard,
        cropped_image: np.ndarray,
    ) -> np.ndarray:
        """Lay copies of the cropped photo out on a print sheet."""
