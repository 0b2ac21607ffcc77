"""
PPP — Landmark Index Map & Translation
======================================
Translates a refinement model's raw point vector (order defined by the
model) into the semantic LandMarks fields.

Each LandMarkType maps to one or more raw indices:
  - one index  -> the point is copied
  - several    -> their arithmetic centroid is used
                  (e.g. an eye corner approximated by two contour points)

Different point models number their output differently; this map is the
only place that numbering is known. Everything downstream works on
LandMarks.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping, Optional

import numpy as np

from ppp_types import ConfigurationError, LandMarks, LandMarkType

_log = logging.getLogger("PppLandmarks")


# ═══════════════════════════════════════════════════════════════
# MediaPipe 478-mesh default mapping
# ═══════════════════════════════════════════════════════════════
#
# FaceLandmarker returns 468 mesh points + 10 iris points. For a
# non-mirrored photo the subject's right eye is on the image LEFT.
#   468 / 473   iris centers (image-left / image-right)
#   33, 130     outer canthus contour, image-left eye
#   263, 359    outer canthus contour, image-right eye
#   61 / 291    mouth corners
#   1           pronasale (nose tip)
#   152         menton (lowest chin point)

MEDIAPIPE_478_INDEX_MAP: dict[LandMarkType, tuple[int, ...]] = {
    LandMarkType.EYE_PUPIL_CENTER_LEFT: (468,),
    LandMarkType.EYE_PUPIL_CENTER_RIGHT: (473,),
    LandMarkType.MOUTH_CORNER_LEFT: (61,),
    LandMarkType.MOUTH_CORNER_RIGHT: (291,),
    LandMarkType.CHIN_LOWEST_POINT: (152,),
    LandMarkType.NOSE_TIP_POINT: (1,),
    LandMarkType.EYE_OUTER_CORNER_LEFT: (33, 130),
    LandMarkType.EYE_OUTER_CORNER_RIGHT: (263, 359),
}


class LandmarkIndexMap:
    """Immutable LandMarkType -> raw point indices mapping."""

    def __init__(self, mapping: Mapping[LandMarkType, tuple[int, ...]]):
        checked: dict[LandMarkType, tuple[int, ...]] = {}
        for landmark_type, indices in mapping.items():
            if not isinstance(landmark_type, LandMarkType):
                raise ConfigurationError(f"Not a landmark type: {landmark_type!r}")
            indices = tuple(indices)
            if not indices:
                raise ConfigurationError(f"{landmark_type.name} maps to no indices")
            for idx in indices:
                if isinstance(idx, bool) or not isinstance(idx, (int, np.integer)):
                    raise ConfigurationError(f"{landmark_type.name}: index {idx!r} is not an integer")
                if idx < 0:
                    raise ConfigurationError(f"{landmark_type.name}: negative index {idx}")
            checked[landmark_type] = tuple(int(i) for i in indices)
        self._mapping = MappingProxyType(checked)

    @classmethod
    def from_config(cls, raw: Mapping) -> "LandmarkIndexMap":
        """Build from a config mapping: {name: int | [int, ...]}."""
        if not isinstance(raw, Mapping):
            raise ConfigurationError("landmark_index_map must be a mapping")
        mapping: dict[LandMarkType, tuple[int, ...]] = {}
        for name, value in raw.items():
            try:
                landmark_type = LandMarkType.parse(str(name))
            except KeyError as e:
                raise ConfigurationError(f"Unknown landmark type in index map: {name!r}") from e
            if isinstance(value, (list, tuple)):
                mapping[landmark_type] = tuple(value)
            else:
                mapping[landmark_type] = (value,)
        return cls(mapping)

    @classmethod
    def mediapipe_default(cls) -> "LandmarkIndexMap":
        return cls(MEDIAPIPE_478_INDEX_MAP)

    # ── Mapping protocol ──────────────────────────────────────

    def __getitem__(self, landmark_type: LandMarkType) -> tuple[int, ...]:
        return self._mapping[landmark_type]

    def __contains__(self, landmark_type: object) -> bool:
        return landmark_type in self._mapping

    def __iter__(self):
        return iter(self._mapping)

    def __len__(self) -> int:
        return len(self._mapping)

    def items(self):
        return self._mapping.items()

    @property
    def max_index(self) -> int:
        return max((max(v) for v in self._mapping.values()), default=-1)

    # ── Validation & translation ──────────────────────────────

    def validate(self, num_points: int) -> None:
        """Check every index fits a model producing `num_points` points.

        Raises:
            ConfigurationError: if any index is out of range.
        """
        for landmark_type, indices in self._mapping.items():
            bad = [i for i in indices if i >= num_points]
            if bad:
                raise ConfigurationError(
                    f"{landmark_type.name} uses indices {bad} but the refiner "
                    f"reports only {num_points} points"
                )

    def translate(
        self,
        raw_points: np.ndarray,
        image_shape: tuple,
        landmarks: Optional[LandMarks] = None,
    ) -> LandMarks:
        """Fill LandMarks from a raw (L, 2) point vector.

        Points that come out non-finite or outside the image are left
        unset. Indices beyond the vector length are a configuration error.

        Args:
            raw_points: (L, 2+) array of pixel coordinates.
            image_shape: Source image shape (h, w, ...).
            landmarks: Existing record to fill (regions kept), or None.

        Returns:
            The filled LandMarks.
        """
        points = np.asarray(raw_points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] < 2:
            raise ConfigurationError(f"Raw points must be (L, 2), got shape {points.shape}")
        self.validate(points.shape[0])

        h, w = image_shape[:2]
        result = landmarks if landmarks is not None else LandMarks()

        for landmark_type, indices in self._mapping.items():
            xy = points[list(indices), :2].mean(axis=0)
            x, y = float(xy[0]), float(xy[1])
            if np.isfinite(x) and np.isfinite(y) and 0 <= x < w and 0 <= y < h:
                result.set(landmark_type, (x, y))
            else:
                _log.debug("%s outside image (%.1f, %.1f); left unset", landmark_type.name, x, y)
                result.set(landmark_type, None)

        return result
