"""Live enrollment capture: per-frame quality gate and the accepted-sample session."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional, Sequence

import cv2
import numpy as np

from staffclock.detectors.face_insight import EmbeddingRuntime
from staffclock.io_utils import encode_jpeg
from staffclock.quality.occlusion import OcclusionResult, occlusion_check, occlusion_hint
from staffclock.quality.signals import estimate_brightness, face_sharpness
from staffclock.recognition.matcher import euclidean_distance
from staffclock.types import BBox, FaceDetection, as_embedding

LOGGER = logging.getLogger("staffclock.enrollment.capture")

ENROLL_CAPTURE_TARGET = 20
ENROLL_AUTO_CAPTURE_INTERVAL_SEC = 0.6
ENROLL_MIN_DETECTION_SCORE = 0.55
ENROLL_MIN_DESCRIPTOR_DIFF_PERCENT = 15.0
ENROLL_SAME_PERSON_MAX_DISTANCE = 0.58
# Raw Laplacian variance (non-normalised) for the face crop under good light.
ENROLL_BLUR_THRESHOLD_BASE = 2200.0
ENROLL_BLUR_STREAK_ALERT_COUNT = 3
ENROLL_CAPTURE_PROMPTS = (
    "Face Forward",
    "Turn Left",
    "Turn Right",
    "Look Up",
    "Look Down",
)


@dataclass
class CaptureConfig:
    target: int = ENROLL_CAPTURE_TARGET
    interval_sec: float = ENROLL_AUTO_CAPTURE_INTERVAL_SEC
    min_detection_score: float = ENROLL_MIN_DETECTION_SCORE
    min_diff_percent: float = ENROLL_MIN_DESCRIPTOR_DIFF_PERCENT
    same_person_max_distance: float = ENROLL_SAME_PERSON_MAX_DISTANCE
    blur_threshold_base: float = ENROLL_BLUR_THRESHOLD_BASE
    blur_window: int = 3
    blur_streak_alert: int = ENROLL_BLUR_STREAK_ALERT_COUNT
    photo_max_width: int = 480
    photo_quality: int = 75


class CaptureFlowState(str, Enum):
    SCANNING = "SCANNING"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    BLURRY = "BLURRY"
    TOO_SIMILAR = "TOO_SIMILAR"
    CAPTURED = "CAPTURED"
    COMPLETED = "COMPLETED"


class SignalLevel(str, Enum):
    GOOD = "GOOD"
    WARN = "WARN"
    CRITICAL = "CRITICAL"


@dataclass
class CaptureDiagnostics:
    brightness: Optional[float]
    light_level: SignalLevel
    light_message: str
    face_confidence: Optional[float]
    distance_level: SignalLevel
    distance_message: str


def classify_light(brightness: Optional[float]):
    if brightness is None:
        return SignalLevel.WARN, "Light: unavailable. Keep face in front of stable light source."
    if brightness < 45:
        return SignalLevel.CRITICAL, "Light: too dark. Move to brighter area or face window/light."
    if brightness < 70:
        return SignalLevel.WARN, "Light: low. Add light to reduce failed captures."
    return SignalLevel.GOOD, "Light: good."


def classify_distance(face_confidence: Optional[float]):
    if face_confidence is None:
        return SignalLevel.CRITICAL, "Distance: face not found. Move closer and center your face."
    if face_confidence < 0.45:
        return SignalLevel.CRITICAL, "Distance: likely too far. Move closer to camera."
    if face_confidence < 0.62:
        return SignalLevel.WARN, "Distance: slightly far. Move a bit closer for stable capture."
    return SignalLevel.GOOD, "Distance: good."


def build_capture_diagnostics(
    brightness: Optional[float],
    face_confidence: Optional[float],
) -> CaptureDiagnostics:
    light_level, light_message = classify_light(brightness)
    distance_level, distance_message = classify_distance(face_confidence)
    return CaptureDiagnostics(
        brightness=brightness,
        light_level=light_level,
        light_message=light_message,
        face_confidence=face_confidence,
        distance_level=distance_level,
        distance_message=distance_message,
    )


def resolve_blur_threshold(light_level: SignalLevel, base: float = ENROLL_BLUR_THRESHOLD_BASE) -> float:
    """Relax the blur bar in poor light, where sensor noise suppression softens detail."""
    if light_level == SignalLevel.CRITICAL:
        return base * 0.6
    if light_level == SignalLevel.WARN:
        return base * 0.8
    return base


def descriptor_difference_percent(distance: float) -> float:
    return float(min(100.0, max(0.0, distance * 100.0)))


def capture_enrollment_photo(frame: np.ndarray, max_width: int = 480, quality: int = 75) -> bytes:
    """Downscaled JPEG snapshot of the frame kept alongside each accepted descriptor."""
    height, width = frame.shape[:2]
    scale = max_width / float(width) if width > max_width else 1.0
    if scale < 1.0:
        target = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
        frame = cv2.resize(frame, target, interpolation=cv2.INTER_AREA)
    return encode_jpeg(frame, quality)


@dataclass
class CaptureSample:
    embedding: np.ndarray
    photo: bytes


class EnrollmentCaptureSession:
    """Ordered accepted samples for one enrollment; the first embedding is the identity anchor."""

    def __init__(self, target: int = ENROLL_CAPTURE_TARGET) -> None:
        if target < 1:
            raise ValueError("target must be >= 1")
        self.target = target
        self._samples: List[CaptureSample] = []

    @classmethod
    def from_samples(
        cls,
        descriptors: Sequence[Sequence[float]],
        photos: Sequence[bytes],
        target: int = ENROLL_CAPTURE_TARGET,
    ) -> "EnrollmentCaptureSession":
        session = cls(target=target)
        session.replace(descriptors, photos)
        return session

    @property
    def samples(self) -> List[CaptureSample]:
        return list(self._samples)

    @property
    def descriptors(self) -> List[np.ndarray]:
        return [s.embedding for s in self._samples]

    @property
    def photos(self) -> List[bytes]:
        return [s.photo for s in self._samples]

    @property
    def anchor(self) -> Optional[np.ndarray]:
        return self._samples[0].embedding if self._samples else None

    @property
    def is_complete(self) -> bool:
        return len(self._samples) >= self.target

    @property
    def progress_percent(self) -> int:
        return int(round(len(self._samples) / self.target * 100))

    @property
    def current_prompt(self) -> str:
        return ENROLL_CAPTURE_PROMPTS[len(self._samples) % len(ENROLL_CAPTURE_PROMPTS)]

    def __len__(self) -> int:
        return len(self._samples)

    def add(self, embedding: np.ndarray, photo: bytes) -> None:
        if self.is_complete:
            raise ValueError("Capture session already holds the target sample count")
        self._samples.append(CaptureSample(embedding=as_embedding(embedding), photo=photo))

    def replace(self, descriptors: Sequence[Sequence[float]], photos: Sequence[bytes]) -> None:
        """Reseed the session, e.g. with samples kept by a review pass."""
        count = min(len(descriptors), len(photos), self.target)
        self._samples = [
            CaptureSample(embedding=as_embedding(descriptors[i]), photo=photos[i]) for i in range(count)
        ]

    def reset(self) -> None:
        self._samples = []


@dataclass
class CaptureTransition:
    """Outcome of one gate tick."""

    state: CaptureFlowState
    accepted: bool
    hint: str
    reason: Optional[str] = None
    count: int = 0
    diagnostics: Optional[CaptureDiagnostics] = None
    sharpness: Optional[float] = None
    min_diff_percent: Optional[float] = None
    anchor_distance: Optional[float] = None
    bbox: Optional[BBox] = None


OcclusionFn = Callable[[Optional[np.ndarray], BBox, np.ndarray, float], OcclusionResult]
SharpnessFn = Callable[[np.ndarray, BBox], Optional[float]]
BrightnessFn = Callable[[np.ndarray], Optional[float]]


class CaptureQualityGate:
    """Per-frame acceptance policy for live enrollment.

    Each ``tick`` runs the checks in a fixed order with early exit: face
    present, detection confidence, occlusion, adaptive blur, identity anchor,
    diversity, accept. Quality failures never raise; they are reported as a
    ``CaptureTransition`` and mirrored on ``state``/``hint``.
    """

    def __init__(
        self,
        runtime: EmbeddingRuntime,
        session: Optional[EnrollmentCaptureSession] = None,
        config: Optional[CaptureConfig] = None,
        occlusion_fn: OcclusionFn = occlusion_check,
        sharpness_fn: SharpnessFn = face_sharpness,
        brightness_fn: BrightnessFn = estimate_brightness,
    ) -> None:
        self.runtime = runtime
        self.config = config or CaptureConfig()
        self.session = session if session is not None else EnrollmentCaptureSession(target=self.config.target)
        self.occlusion_fn = occlusion_fn
        self.sharpness_fn = sharpness_fn
        self.brightness_fn = brightness_fn
        self.state = CaptureFlowState.COMPLETED if self.session.is_complete else CaptureFlowState.SCANNING
        self.hint = "Auto capture is running. Keep changing head angle."
        self.diagnostics = build_capture_diagnostics(None, None)
        self.last_min_diff_percent: Optional[float] = None
        self.blur_streak = 0
        self._sharpness_window: Deque[float] = deque(maxlen=max(1, self.config.blur_window))

    def reset(self) -> None:
        self.session.reset()
        self.state = CaptureFlowState.SCANNING
        self.hint = "Capture reset. Auto capture resumed."
        self.diagnostics = build_capture_diagnostics(None, None)
        self.last_min_diff_percent = None
        self.blur_streak = 0
        self._sharpness_window.clear()

    def _finish(self, transition: CaptureTransition) -> CaptureTransition:
        self.state = transition.state
        self.hint = transition.hint
        if transition.diagnostics is not None:
            self.diagnostics = transition.diagnostics
        transition.count = len(self.session)
        if not transition.accepted:
            LOGGER.debug(
                "Capture rejected reason=%s state=%s count=%d",
                transition.reason,
                transition.state.value,
                transition.count,
            )
        return transition

    def _reject(self, state: CaptureFlowState, reason: str, hint: str, **extra) -> CaptureTransition:
        return self._finish(CaptureTransition(state=state, accepted=False, hint=hint, reason=reason, **extra))

    def tick(self, frame: Optional[np.ndarray]) -> CaptureTransition:
        if self.session.is_complete:
            return self._finish(
                CaptureTransition(
                    state=CaptureFlowState.COMPLETED,
                    accepted=False,
                    hint="Capture complete. Continue to quality review.",
                    reason="complete",
                )
            )
        if frame is None or frame.size == 0:
            return self._reject(
                CaptureFlowState.LOW_CONFIDENCE,
                "camera_not_ready",
                "Camera frame unavailable. Check camera access.",
            )

        brightness = self.brightness_fn(frame)
        try:
            detection = self.runtime.detect(frame)
        except Exception as exc:
            LOGGER.warning("Face detection failed during capture: %s", exc)
            return self._reject(
                CaptureFlowState.LOW_CONFIDENCE,
                "detect_failed",
                f"Face detection failed: {exc}",
                diagnostics=build_capture_diagnostics(brightness, None),
            )

        # 1. face present
        if detection is None:
            return self._reject(
                CaptureFlowState.LOW_CONFIDENCE,
                "no_face",
                "No face detected. Keep face centered and retry.",
                diagnostics=build_capture_diagnostics(brightness, None),
            )
        diagnostics = build_capture_diagnostics(brightness, detection.score)

        # 2. detection confidence
        if detection.score < self.config.min_detection_score:
            return self._reject(
                CaptureFlowState.LOW_CONFIDENCE,
                "low_confidence",
                "Face confidence is low. Increase lighting and keep still.",
                diagnostics=diagnostics,
                bbox=detection.bbox,
            )

        # 3. occlusion
        occlusion = self.occlusion_fn(frame, detection.bbox, detection.landmarks, detection.score)
        if occlusion.blocked:
            return self._reject(
                CaptureFlowState.LOW_CONFIDENCE,
                "occluded",
                occlusion_hint(occlusion.reason),
                diagnostics=diagnostics,
                bbox=detection.bbox,
            )

        # 4. adaptive blur with rolling average
        transition = self._check_blur(frame, detection, diagnostics)
        if transition is not None:
            return transition
        sharpness_avg = float(np.mean(self._sharpness_window)) if self._sharpness_window else None

        embedding = as_embedding(detection.embedding)
        # 5. identity anchor
        anchor_distance: Optional[float] = None
        anchor = self.session.anchor
        if anchor is not None:
            anchor_distance = euclidean_distance(anchor, embedding)
            if anchor_distance > self.config.same_person_max_distance:
                return self._reject(
                    CaptureFlowState.LOW_CONFIDENCE,
                    "mixed_identity",
                    "A different face was detected. Only the enrolling person should be in frame.",
                    diagnostics=diagnostics,
                    sharpness=sharpness_avg,
                    anchor_distance=anchor_distance,
                    bbox=detection.bbox,
                )

        # 6. diversity
        min_diff_percent: Optional[float] = None
        if len(self.session):
            min_distance = min(euclidean_distance(saved, embedding) for saved in self.session.descriptors)
            min_diff_percent = descriptor_difference_percent(min_distance)
            self.last_min_diff_percent = min_diff_percent
            if min_diff_percent < self.config.min_diff_percent:
                return self._reject(
                    CaptureFlowState.TOO_SIMILAR,
                    "too_similar",
                    f"Too similar ({min_diff_percent:.2f}%). Need >= {self.config.min_diff_percent:g}%. "
                    f"Change angle and retry: {self.session.current_prompt}.",
                    diagnostics=diagnostics,
                    sharpness=sharpness_avg,
                    min_diff_percent=min_diff_percent,
                    anchor_distance=anchor_distance,
                    bbox=detection.bbox,
                )

        # 7. accept
        try:
            photo = capture_enrollment_photo(frame, self.config.photo_max_width, self.config.photo_quality)
        except (ValueError, cv2.error) as exc:
            LOGGER.warning("Enrollment photo encoding failed: %s", exc)
            return self._reject(
                CaptureFlowState.LOW_CONFIDENCE,
                "photo_failed",
                "Failed to store the captured photo. Hold still and retry.",
                diagnostics=diagnostics,
            )
        self.session.add(embedding, photo)
        if self.session.is_complete:
            state = CaptureFlowState.COMPLETED
            hint = "Capture complete. Continue to quality review."
            LOGGER.info("Enrollment capture completed with %d samples", len(self.session))
        else:
            state = CaptureFlowState.CAPTURED
            hint = (
                f"Captured {len(self.session)}/{self.session.target}. "
                f"Switch pose and continue: {self.session.current_prompt}."
            )
        return self._finish(
            CaptureTransition(
                state=state,
                accepted=True,
                hint=hint,
                diagnostics=diagnostics,
                sharpness=sharpness_avg,
                min_diff_percent=min_diff_percent,
                anchor_distance=anchor_distance,
                bbox=detection.bbox,
            )
        )

    def _check_blur(
        self,
        frame: np.ndarray,
        detection: FaceDetection,
        diagnostics: CaptureDiagnostics,
    ) -> Optional[CaptureTransition]:
        score = self.sharpness_fn(frame, detection.bbox)
        if score is None:
            return None
        self._sharpness_window.append(float(score))
        average = float(np.mean(self._sharpness_window))
        threshold = resolve_blur_threshold(diagnostics.light_level, self.config.blur_threshold_base)
        if average >= threshold:
            self.blur_streak = 0
            return None
        self.blur_streak += 1
        hint = f"Image blurry ({average:.0f} < {threshold:.0f}). Hold still."
        if self.blur_streak >= self.config.blur_streak_alert:
            hint += " Clean the lens and brace the device; " + diagnostics.light_message
        return self._reject(
            CaptureFlowState.BLURRY,
            "blurry",
            hint,
            diagnostics=diagnostics,
            sharpness=average,
            bbox=detection.bbox,
        )
