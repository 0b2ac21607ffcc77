"""
PPP — PppEngine (Orchestrator)
==============================
Sequences the pipeline per request; owns no geometry itself.

    image -> face Detector -> eyes / lips Detectors (inside face box)
          -> LandmarkRefiner -> LandmarkIndexMap translation
          -> CrownChinEstimator            (detect_landmarks)
          -> PoseEstimator                 (estimate_pose)
          -> ComplianceChecker             (check_compliance)

Per-request states:
    Idle -> FaceDetected -> LandmarksRefined -> Estimated -> ComplianceChecked
Any failing stage ends the request in Failed(stage, reason). Nothing is
retried internally; the caller resubmits if it wants to.

Lifecycle:
  configure() builds every component into one immutable snapshot and
  publishes it with a single reference assignment. Requests read the
  snapshot once, so they never lock and never see a half-built config.
  Requests before a successful configure() return NotConfigured without
  touching any model.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Iterable, Optional, Union

import numpy as np

from ppp_collaborators import IImageStore, InMemoryImageStore, IPhotoPrintMaker
from ppp_compliance import ComplianceChecker
from ppp_config import EngineConfig, setup_logger
from ppp_crown_chin import CrownChinEstimator
from ppp_detectors import Detector, create_detector
from ppp_logger import PppAuditLogger, get_logger
from ppp_pose import PoseEstimator
from ppp_refiner import LandmarkRefiner, create_refiner
from ppp_types import (
    ComplianceResult,
    ConfigurationError,
    EngineStage,
    Failure,
    FailureKind,
    LandMarks,
    PhotoStandard,
    Point,
    Pose,
    PrintDefinition,
    Region,
)

_log = setup_logger("PppEngine")


@dataclass(frozen=True)
class _EngineState:
    """Everything configure() produces. Read-only after publication."""
    config: EngineConfig
    face_detector: Detector
    eyes_detector: Detector
    lips_detector: Detector
    refiner: LandmarkRefiner
    crown_chin: CrownChinEstimator
    pose: PoseEstimator
    compliance: ComplianceChecker
    audit: Optional[PppAuditLogger] = None


class _RequestTrail:
    """Stage trail of one request; written to the audit log at the end."""

    def __init__(self, operation: str, audit: Optional[PppAuditLogger]):
        self.operation = operation
        self.audit = audit
        self.stages: list[EngineStage] = [EngineStage.IDLE]
        self._start = time.perf_counter()

    def advance(self, stage: EngineStage) -> None:
        self.stages.append(stage)

    def fail(self, failure: Failure) -> Failure:
        self.stages.append(EngineStage.FAILED)
        _log.info("%s failed: %s", self.operation, failure)
        self._write({"failure": failure.to_dict()}, "request_failed")
        return failure

    def done(self, event: str, outcome: dict) -> None:
        self._write(outcome, event)

    def _write(self, outcome: dict, event: str) -> None:
        if self.audit is None:
            return
        outcome = {**outcome, "elapsed_ms": round((time.perf_counter() - self._start) * 1000, 2)}
        self.audit.log_request(self.operation, [s.value for s in self.stages], outcome, event=event)


class PppEngine:
    """Landmark detection, crown/chin + pose estimation and compliance.

    Every collaborator can be injected (tests, alternative models); those
    left as None are built from the configuration in configure().
    """

    def __init__(
        self,
        face_detector: Optional[Detector] = None,
        eyes_detector: Optional[Detector] = None,
        lips_detector: Optional[Detector] = None,
        refiner: Optional[LandmarkRefiner] = None,
        crown_chin_estimator: Optional[CrownChinEstimator] = None,
        pose_estimator: Optional[PoseEstimator] = None,
        compliance_checker: Optional[ComplianceChecker] = None,
        image_store: Optional[IImageStore] = None,
        print_maker: Optional[IPhotoPrintMaker] = None,
    ) -> None:
        self._face_detector = face_detector
        self._eyes_detector = eyes_detector
        self._lips_detector = lips_detector
        self._refiner = refiner
        self._crown_chin_estimator = crown_chin_estimator
        self._pose_estimator = pose_estimator
        self._compliance_checker = compliance_checker
        self._image_store = image_store if image_store is not None else InMemoryImageStore()
        self._print_maker = print_maker
        self._state: Optional[_EngineState] = None

    # ── Lifecycle ─────────────────────────────────────────────

    def is_configured(self) -> bool:
        return self._state is not None

    def configure(self, config: Union[EngineConfig, dict, str, None] = None) -> bool:
        """Load models, index map and standards.

        Must complete before any request and must not run concurrently
        with requests. A failed reconfiguration keeps the previous
        snapshot.

        Args:
            config: EngineConfig, raw config dict, or YAML path
                (None = bundled config.yaml).

        Returns:
            True on success.

        Raises:
            ConfigurationError: on any invalid setting or missing model.
        """
        try:
            state = self._build_state(EngineConfig.load(config))
        except ConfigurationError as e:
            _log.error("Configuration failed: %s", e)
            raise

        self._state = state
        _log.info(
            "PppEngine configured: %d landmark types, refiner=%d points, standards=%s",
            len(state.config.landmark_index_map), state.refiner.num_points,
            sorted(state.config.photo_standards),
        )
        if state.audit is not None:
            state.audit.log({
                "event": "engine_configured",
                "standards": sorted(state.config.photo_standards),
                "checks": state.compliance.available_checks,
            }, level="SYSTEM")
        return True

    def _build_state(self, cfg: EngineConfig) -> _EngineState:
        detectors = cfg.detectors
        face = self._face_detector or create_detector("face", detectors.get("face"), cfg.resolve_path)
        eyes = self._eyes_detector or create_detector("eyes", detectors.get("eyes"), cfg.resolve_path)
        lips = self._lips_detector or create_detector("lips", detectors.get("lips"), cfg.resolve_path)
        refiner = self._refiner or create_refiner(cfg.refiner, cfg.resolve_path)

        # Index map vs. model numbering is checked once, here.
        cfg.landmark_index_map.validate(refiner.num_points)

        crown_chin = self._crown_chin_estimator or CrownChinEstimator(
            crown_ratio=cfg.crown_ratio,
            eye_line_fraction=cfg.eye_line_fraction,
        )
        pose = self._pose_estimator or PoseEstimator(cfg.max_reprojection_error)
        compliance = self._compliance_checker or ComplianceChecker.with_enabled(cfg.compliance_checks)

        audit = None
        if cfg.audit_dir:
            try:
                audit = get_logger(cfg.resolve_path(cfg.audit_dir))
            except OSError as e:
                raise ConfigurationError(f"Cannot open audit log in {cfg.audit_dir}: {e}") from e

        return _EngineState(
            config=cfg,
            face_detector=face,
            eyes_detector=eyes,
            lips_detector=lips,
            refiner=refiner,
            crown_chin=crown_chin,
            pose=pose,
            compliance=compliance,
            audit=audit,
        )

    def release(self) -> None:
        """Release model resources and return to the unconfigured state."""
        state, self._state = self._state, None
        if state is None:
            return
        for component in (state.face_detector, state.eyes_detector, state.lips_detector, state.refiner):
            component.release()
        if state.audit is not None:
            state.audit.close()
        _log.info("PppEngine released")

    def __enter__(self) -> "PppEngine":
        return self

    def __exit__(self, *args) -> None:
        self.release()

    # ── Images & standards ────────────────────────────────────

    @property
    def image_store(self) -> IImageStore:
        return self._image_store

    def set_input_image(self, image: np.ndarray) -> str:
        """Store an image and return its key."""
        return self._image_store.set_image(image)

    def photo_standard(self, name: str) -> Optional[PhotoStandard]:
        state = self._state
        if state is None:
            return None
        return state.config.photo_standards.get(name)

    # ── Requests ──────────────────────────────────────────────

    @staticmethod
    def _not_configured(operation: str) -> Failure:
        return Failure(FailureKind.NOT_CONFIGURED, operation, "configure() has not completed")

    def detect_landmarks(self, image_key: str) -> Union[LandMarks, Failure]:
        """Full landmark pipeline for the stored image `image_key`."""
        state = self._state
        if state is None:
            return self._not_configured("detect_landmarks")

        trail = _RequestTrail("detect_landmarks", state.audit)
        image = self._image_store.get_image(image_key)
        if image is None:
            return trail.fail(Failure(FailureKind.IMAGE_NOT_FOUND, "image", f"no image for key {image_key!r}"))

        result = self._detect(state, image, trail)
        if isinstance(result, Failure):
            return result
        trail.done("landmarks_detected", {
            "face_rect": result.face_rect.as_tuple(),
            "crown": result.crown_point,
            "chin": result.chin_point,
            "low_confidence": result.crown_chin_low_confidence,
        })
        return result

    def estimate_pose(
        self,
        landmarks: LandMarks,
        focal_length: float,
        focal_center: Point,
    ) -> Union[Pose, Failure]:
        """Head rotation for landmarks from detect_landmarks()."""
        state = self._state
        if state is None:
            return self._not_configured("estimate_pose")
        return state.pose.estimate_pose(landmarks, focal_length, focal_center)

    def check_compliance(
        self,
        image_key: str,
        photo_standard: Union[PhotoStandard, str],
        crown_point: Optional[Point],
        chin_point: Optional[Point],
        check_names: Iterable[str],
    ) -> Union[ComplianceResult, Failure]:
        """Check a cropped photo against a standard.

        The stored image IS the crop: the crop region is the whole image.
        Landmarks are detected on it; the supplied crown/chin points (when
        given) replace the estimated ones.
        """
        state = self._state
        if state is None:
            return self._not_configured("check_compliance")

        trail = _RequestTrail("check_compliance", state.audit)
        check_names = list(check_names)

        unknown = [n for n in check_names if n not in state.compliance.available_checks]
        if unknown:
            return trail.fail(Failure(
                FailureKind.UNKNOWN_CHECK, "compliance", f"unknown check(s): {', '.join(unknown)}",
            ))

        if isinstance(photo_standard, str):
            standard = state.config.photo_standards.get(photo_standard)
            if standard is None:
                return trail.fail(Failure(
                    FailureKind.UNKNOWN_CHECK, "standard", f"unknown photo standard {photo_standard!r}",
                ))
        else:
            standard = photo_standard

        image = self._image_store.get_image(image_key)
        if image is None:
            return trail.fail(Failure(FailureKind.IMAGE_NOT_FOUND, "image", f"no image for key {image_key!r}"))

        landmarks = self._detect(state, image, trail)
        if isinstance(landmarks, Failure):
            return landmarks
        if crown_point is not None:
            landmarks.crown_point = (float(crown_point[0]), float(crown_point[1]))
        if chin_point is not None:
            landmarks.chin_point = (float(chin_point[0]), float(chin_point[1]))

        result = state.compliance.check(check_names, landmarks, Region.from_image(image), standard)
        if isinstance(result, Failure):
            return trail.fail(result)

        trail.advance(EngineStage.COMPLIANCE_CHECKED)
        trail.done("compliance_checked", {"standard": standard.name, **result.to_dict()})
        return result

    def create_tiled_print(
        self,
        image_key: str,
        photo_standard: PhotoStandard,
        print_definition: PrintDefinition,
        crown_point: Optional[Point] = None,
        chin_point: Optional[Point] = None,
    ) -> Union[np.ndarray, Failure]:
        """Hand crop + tiling to the print maker.

        Missing crown/chin points are estimated with detect_landmarks().
        """
        state = self._state
        if state is None:
            return self._not_configured("create_tiled_print")
        if self._print_maker is None:
            return Failure(FailureKind.NOT_CONFIGURED, "print", "no photo print maker installed")

        image = self._image_store.get_image(image_key)
        if image is None:
            return Failure(FailureKind.IMAGE_NOT_FOUND, "image", f"no image for key {image_key!r}")

        if crown_point is None or chin_point is None:
            landmarks = self.detect_landmarks(image_key)
            if isinstance(landmarks, Failure):
                return landmarks
            crown_point = crown_point or landmarks.crown_point
            chin_point = chin_point or landmarks.chin_point

        cropped = self._print_maker.crop_picture(image, crown_point, chin_point, photo_standard)
        return self._print_maker.tile_cropped_photo(print_definition, photo_standard, cropped)

    # ── Pipeline ──────────────────────────────────────────────

    @staticmethod
    def _model_error(state: _EngineState, stage: str, error: Exception) -> Failure:
        message = f"{stage} model raised: {error}"
        if state.audit is not None:
            state.audit.error(message, error)
        else:
            _log.warning(message)
        return Failure(FailureKind.DETECTION_FAILED, stage, f"model error: {error}")

    def _run_detector(
        self,
        state: _EngineState,
        detector: Detector,
        image: np.ndarray,
        search_region: Optional[Region],
    ) -> Union[Region, None, Failure]:
        try:
            return detector.detect(image, search_region)
        except Exception as e:  # model backends raise arbitrary types
            return self._model_error(state, detector.name, e)

    def _detect(
        self,
        state: _EngineState,
        image: np.ndarray,
        trail: _RequestTrail,
    ) -> Union[LandMarks, Failure]:
        # Face
        face = self._run_detector(state, state.face_detector, image, None)
        if isinstance(face, Failure):
            return trail.fail(face)
        if face is None:
            return trail.fail(Failure(FailureKind.DETECTION_FAILED, "face", "no face found"))
        landmarks = LandMarks(face_rect=face)
        trail.advance(EngineStage.FACE_DETECTED)

        # Eyes (inside the face box)
        try:
            pair = state.eyes_detector.detect_pair(image, face)
        except Exception as e:  # model backends raise arbitrary types
            return trail.fail(self._model_error(state, "eyes", e))
        if pair is None:
            return trail.fail(Failure(FailureKind.DETECTION_FAILED, "eyes", "eyes not found in face region"))
        landmarks.left_eye_rect, landmarks.right_eye_rect = pair

        # Lips (inside the face box)
        lips = self._run_detector(state, state.lips_detector, image, face)
        if isinstance(lips, Failure):
            return trail.fail(lips)
        if lips is None and state.config.require_lips:
            return trail.fail(Failure(FailureKind.DETECTION_FAILED, "lips", "lips not found in face region"))
        landmarks.lips_rect = lips

        # Dense points
        try:
            raw = state.refiner.refine(image, face)
        except Exception as e:  # model backends raise arbitrary types
            return trail.fail(self._model_error(state, "refine", e))
        if isinstance(raw, Failure):
            return trail.fail(raw)
        if len(raw) != state.refiner.num_points:
            return trail.fail(Failure(
                FailureKind.DETECTION_FAILED, "refine",
                f"refiner returned {len(raw)} points, expected {state.refiner.num_points}",
            ))
        state.config.landmark_index_map.translate(raw, image.shape, landmarks)
        trail.advance(EngineStage.LANDMARKS_REFINED)

        # Crown / chin
        estimate = state.crown_chin.estimate(landmarks, face, image.shape)
        if isinstance(estimate, Failure):
            return trail.fail(estimate)
        landmarks.crown_point = estimate.crown
        landmarks.chin_point = estimate.chin
        landmarks.crown_chin_low_confidence = estimate.low_confidence
        if estimate.low_confidence and state.audit is not None:
            state.audit.warn("crown/chin estimated with low confidence", {
                "crown": estimate.crown,
                "chin": estimate.chin,
            })
        trail.advance(EngineStage.ESTIMATED)

        return landmarks
