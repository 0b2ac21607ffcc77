"""
PPP — Configuration & Logging Setup
===================================
Loads config.yaml and validates it into an immutable EngineConfig.

Every problem found here raises ConfigurationError, the only fatal
error class of the engine. The resulting EngineConfig is read-only and
shared by all requests without locking.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import yaml

from ppp_landmarks import LandmarkIndexMap
from ppp_types import ConfigurationError, PhotoStandard

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_CONFIG_PATH = os.path.join(_SCRIPT_DIR, "config.yaml")


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured console logger for PPP modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


_log = setup_logger("PppConfig")


# ===================================================================
# Loading
# ===================================================================

def load_config(path: Optional[str] = None) -> dict:
    """Load a YAML configuration file into a plain dict."""
    target = path or DEFAULT_CONFIG_PATH
    try:
        with open(target, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config {target}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {target}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {target} must be a mapping, got {type(data).__name__}")
    return data


def _range(value: Any, what: str) -> tuple[float, float]:
    try:
        lo, hi = (float(v) for v in value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{what} must be a [min, max] pair, got {value!r}") from e
    if lo > hi:
        raise ConfigurationError(f"{what} has min > max: {value!r}")
    return (lo, hi)


def parse_photo_standard(name: str, data: dict) -> PhotoStandard:
    """Build a PhotoStandard from its config mapping."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"Photo standard {name!r} must be a mapping")
    try:
        width = float(data["width"])
        height = float(data["height"])
    except KeyError as e:
        raise ConfigurationError(f"Photo standard {name!r} is missing {e.args[0]!r}") from e
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Photo standard {name!r} has non-numeric size") from e
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Photo standard {name!r} must have a positive size")

    units = data.get("units", "mm")
    if units not in ("mm", "cm", "inch", "pixel"):
        raise ConfigurationError(f"Photo standard {name!r} has unknown units {units!r}")

    kwargs: dict[str, Any] = {}
    for key in ("head_height_ratio", "eye_line_ratio"):
        if key in data:
            kwargs[key] = _range(data[key], f"{name}.{key}")
    for key in ("resolution", "max_center_offset_ratio", "min_margin_ratio", "max_eye_roll_deg"):
        if key in data:
            try:
                kwargs[key] = float(data[key])
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{name}.{key} must be a number") from e

    return PhotoStandard(name=name, width=width, height=height, units=units, **kwargs)


# ===================================================================
# EngineConfig
# ===================================================================

@dataclass(frozen=True)
class EngineConfig:
    """Validated, immutable engine configuration."""
    landmark_index_map: LandmarkIndexMap
    detectors: dict = field(default_factory=dict)
    refiner: dict = field(default_factory=dict)
    crown_ratio: float = 1.0
    eye_line_fraction: float = 0.4
    max_reprojection_error: float = 8.0
    require_lips: bool = False
    compliance_checks: tuple[str, ...] = ()
    photo_standards: dict = field(default_factory=dict)
    audit_dir: Optional[str] = None
    base_dir: str = _SCRIPT_DIR

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[str] = None) -> "EngineConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")

        if "landmark_index_map" not in data:
            raise ConfigurationError("Configuration has no 'landmark_index_map'")
        index_map = LandmarkIndexMap.from_config(data["landmark_index_map"])

        detectors = data.get("detectors") or {}
        refiner = data.get("refiner") or {}
        if not isinstance(detectors, dict) or not isinstance(refiner, dict):
            raise ConfigurationError("'detectors' and 'refiner' must be mappings")

        crown_chin = data.get("crown_chin") or {}
        pose = data.get("pose") or {}
        try:
            crown_ratio = float(crown_chin.get("crown_ratio", 1.0))
            eye_line_fraction = float(crown_chin.get("eye_line_fraction", 0.4))
            max_error = float(pose.get("max_reprojection_error", 8.0))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Numeric setting is not a number: {e}") from e
        if crown_ratio <= 0:
            raise ConfigurationError("crown_chin.crown_ratio must be positive")
        if not 0.0 < eye_line_fraction < 1.0:
            raise ConfigurationError("crown_chin.eye_line_fraction must be in (0, 1)")

        standards_raw = data.get("photo_standards") or {}
        if not isinstance(standards_raw, dict):
            raise ConfigurationError("'photo_standards' must be a mapping")
        standards = {
            name: parse_photo_standard(name, entry)
            for name, entry in standards_raw.items()
        }

        checks = data.get("compliance_checks") or []
        if not isinstance(checks, (list, tuple)) or not all(isinstance(c, str) for c in checks):
            raise ConfigurationError("'compliance_checks' must be a list of names")

        log_cfg = data.get("logging") or {}

        return cls(
            landmark_index_map=index_map,
            detectors=dict(detectors),
            refiner=dict(refiner),
            crown_ratio=crown_ratio,
            eye_line_fraction=eye_line_fraction,
            max_reprojection_error=max_error,
            require_lips=bool(data.get("require_lips", False)),
            compliance_checks=tuple(checks),
            photo_standards=standards,
            audit_dir=log_cfg.get("audit_dir"),
            base_dir=base_dir or _SCRIPT_DIR,
        )

    @classmethod
    def load(cls, source: Union["EngineConfig", dict, str, None] = None) -> "EngineConfig":
        """Accept an EngineConfig, a raw dict, or a YAML path."""
        if isinstance(source, EngineConfig):
            return source
        if isinstance(source, dict):
            return cls.from_dict(source)
        path = source or DEFAULT_CONFIG_PATH
        _log.info("Loading configuration from %s", path)
        return cls.from_dict(load_config(path), base_dir=os.path.dirname(os.path.abspath(path)))

    def resolve_path(self, path: str) -> str:
        """Resolve a model path relative to the config directory."""
        if os.path.isabs(path):
            return path
        return os.path.join(self.base_dir, path)
