"""Second-pass review of a completed capture session before the profile is persisted.

The review works from the stored JPEG photos rather than live frames: each
photo is decoded, re-detected and re-scored. Blur is judged against a
batch-adaptive threshold so one dim session does not reject everything.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from staffclock.detectors.face_insight import EmbeddingRuntime
from staffclock.enrollment.capture import (
    ENROLL_BLUR_THRESHOLD_BASE,
    ENROLL_CAPTURE_TARGET,
    ENROLL_SAME_PERSON_MAX_DISTANCE,
    EnrollmentCaptureSession,
    build_capture_diagnostics,
    resolve_blur_threshold,
)
from staffclock.enrollment.capture import BrightnessFn, OcclusionFn, SharpnessFn
from staffclock.io_utils import decode_image
from staffclock.quality.occlusion import occlusion_check
from staffclock.quality.signals import estimate_brightness, face_sharpness
from staffclock.recognition.matcher import euclidean_distance
from staffclock.types import as_embedding

LOGGER = logging.getLogger("staffclock.enrollment.review")

REVIEW_REASONS = ("decode_failed", "no_face", "occluded", "blurry", "mixed_identity")


@dataclass
class ReviewConfig:
    target: int = ENROLL_CAPTURE_TARGET
    blur_threshold_base: float = ENROLL_BLUR_THRESHOLD_BASE
    same_person_max_distance: float = ENROLL_SAME_PERSON_MAX_DISTANCE
    peak_decay: float = 0.995
    peak_ratio: float = 0.72
    p75_ratio: float = 0.64
    p30_ratio: float = 0.55
    absolute_floor: float = 220.0
    cold_start_ceiling: float = 1200.0
    warmup_min_sharpness: float = 180.0
    warmup_history: int = 8


@dataclass
class ReviewResult:
    descriptors: List[np.ndarray]
    photos: List[bytes]
    reviewed_count: int
    removed_count: int
    removed_reasons: Dict[str, int] = field(default_factory=dict)
    primary_reason: Optional[str] = None

    @property
    def kept_count(self) -> int:
        return len(self.descriptors)


def _percentile(sorted_values: Sequence[float], q: float) -> float:
    if not sorted_values:
        return 0.0
    return sorted_values[int(math.floor((len(sorted_values) - 1) * q))]


def _primary_reason(counters: Dict[str, int]) -> Optional[str]:
    primary = None
    best = 0
    for reason, count in counters.items():
        if count > best:
            primary, best = reason, count
    return primary


class _AdaptiveBlurTracker:
    """Running peak and percentiles of sharpness across one review batch."""

    def __init__(self, config: ReviewConfig) -> None:
        self.config = config
        self.history: List[float] = []
        self.peak = 0.0

    def threshold(self, score: float, static_threshold: float) -> float:
        cfg = self.config
        self.history.append(score)
        self.peak = max(self.peak * cfg.peak_decay, score)
        ordered = sorted(self.history)
        p30 = _percentile(ordered, 0.3)
        p75 = _percentile(ordered, 0.75)
        dynamic_base = max(self.peak * cfg.peak_ratio, p75 * cfg.p75_ratio)
        adaptive_floor = max(cfg.absolute_floor, p30 * cfg.p30_ratio)
        if self.peak > 0:
            return min(static_threshold, max(adaptive_floor, dynamic_base))
        return min(static_threshold, cfg.cold_start_ceiling)


def review_enrollment_quality(
    runtime: EmbeddingRuntime,
    descriptors: Sequence[Sequence[float]],
    photos: Sequence[bytes],
    config: Optional[ReviewConfig] = None,
    occlusion_fn: OcclusionFn = occlusion_check,
    sharpness_fn: SharpnessFn = face_sharpness,
    brightness_fn: BrightnessFn = estimate_brightness,
) -> ReviewResult:
    """Re-validate captured samples; samples are judged in capture order."""
    cfg = config or ReviewConfig()
    reviewed_count = min(len(descriptors), len(photos))
    kept_descriptors: List[np.ndarray] = []
    kept_photos: List[bytes] = []
    removed: Dict[str, int] = {}
    blur = _AdaptiveBlurTracker(cfg)

    def drop(reason: str, index: int) -> None:
        removed[reason] = removed.get(reason, 0) + 1
        LOGGER.debug("Review dropped sample %d reason=%s", index, reason)

    for index in range(reviewed_count):
        descriptor = as_embedding(descriptors[index])
        photo = photos[index]
        image = decode_image(photo)
        if image is None:
            drop("decode_failed", index)
            continue
        detection = runtime.detect(image)
        if detection is None:
            drop("no_face", index)
            continue
        occlusion = occlusion_fn(image, detection.bbox, detection.landmarks, detection.score)
        if occlusion.blocked:
            drop("occluded", index)
            continue

        diagnostics = build_capture_diagnostics(brightness_fn(image), detection.score)
        static_threshold = resolve_blur_threshold(diagnostics.light_level, cfg.blur_threshold_base)
        score = sharpness_fn(image, detection.bbox)
        if score is not None:
            threshold = blur.threshold(float(score), static_threshold)
            warmup_bypass = (
                not kept_descriptors
                and len(blur.history) < cfg.warmup_history
                and score >= cfg.warmup_min_sharpness
            )
            if not warmup_bypass and score < threshold:
                drop("blurry", index)
                continue

        if kept_descriptors:
            anchor_distance = euclidean_distance(kept_descriptors[0], descriptor)
            if anchor_distance > cfg.same_person_max_distance:
                drop("mixed_identity", index)
                continue
        kept_descriptors.append(descriptor)
        kept_photos.append(photo)

    kept_descriptors = kept_descriptors[: cfg.target]
    kept_photos = kept_photos[: cfg.target]
    result = ReviewResult(
        descriptors=kept_descriptors,
        photos=kept_photos,
        reviewed_count=reviewed_count,
        removed_count=reviewed_count - len(kept_descriptors),
        removed_reasons=removed,
        primary_reason=_primary_reason(removed),
    )
    LOGGER.info(
        "Review kept %d/%d samples removed=%s",
        result.kept_count,
        reviewed_count,
        removed,
    )
    return result


def review_reason_hint(reason: Optional[str]) -> str:
    hints = {
        "decode_failed": "photo could not be decoded",
        "no_face": "no valid face detected",
        "occluded": "facial features covered",
        "blurry": "image blurry",
        "mixed_identity": "another person in frame",
    }
    return hints.get(reason or "", "quality below requirement")


@dataclass
class QualityGateOutcome:
    completed: bool
    needs_recapture: bool
    hint: str
    review: Optional[ReviewResult] = None
    error: Optional[str] = None


def run_enrollment_quality_gate(
    runtime: EmbeddingRuntime,
    session: EnrollmentCaptureSession,
    config: Optional[ReviewConfig] = None,
    **review_kwargs,
) -> QualityGateOutcome:
    """Review a full session; reseed it with the kept samples when the set comes up short."""
    cfg = config or ReviewConfig(target=session.target)
    if not session.is_complete:
        return QualityGateOutcome(
            completed=False,
            needs_recapture=False,
            hint=f"Capture {session.target} samples before quality review ({len(session)} so far).",
        )
    try:
        review = review_enrollment_quality(
            runtime,
            session.descriptors,
            session.photos,
            config=cfg,
            **review_kwargs,
        )
    except Exception as exc:
        LOGGER.exception("Enrollment quality review failed")
        return QualityGateOutcome(
            completed=False,
            needs_recapture=False,
            hint=f"Quality review failed: {exc}",
            error=str(exc),
        )

    if review.kept_count < cfg.target:
        session.replace(review.descriptors, review.photos)
        hint = (
            f"Review removed {review.removed_count} frames "
            f"(main reason: {review_reason_hint(review.primary_reason)}). "
            f"Capture more to reach {cfg.target}."
        )
        LOGGER.info("Enrollment needs recapture: kept=%d target=%d", review.kept_count, cfg.target)
        return QualityGateOutcome(completed=False, needs_recapture=True, hint=hint, review=review)
    return QualityGateOutcome(
        completed=True,
        needs_recapture=False,
        hint="Quality review passed.",
        review=review,
    )
