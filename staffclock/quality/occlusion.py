"""Face occlusion heuristics combining landmark geometry with image texture and skin signals.

Single signals are noisy under lighting variance, so an occlusion verdict is
reached either by a strong single-family failure (eye geometry, mouth
geometry, eye texture/skin, lower-face skin collapse) or by two independent
checks failing together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from staffclock.quality.signals import Region, clamp_region, luminance_std, skin_ratio
from staffclock.types import (
    BBox,
    JAW_CHIN,
    LANDMARK_COUNT,
    LEFT_EYE,
    MOUTH_BOTTOM,
    MOUTH_LEFT_CORNER,
    MOUTH_OUTER,
    MOUTH_RIGHT_CORNER,
    MOUTH_TOP,
    NOSE_BRIDGE_TOP,
    NOSE_TIP,
    RIGHT_EYE,
    bbox_height,
    bbox_width,
    landmarks_array,
)

LOGGER = logging.getLogger("staffclock.quality.occlusion")

# Lower-face (mask / hand) skin checks
MIN_REFERENCE_SKIN_RATIO = 0.12
MAX_LOWER_FACE_SKIN_RATIO = 0.07
MAX_LOWER_TO_UPPER_SKIN_RATIO = 0.5
MIN_FACE_PX_FOR_SKIN = 40

# Eye-region texture / skin checks
MIN_EYE_LUMA_STDDEV = 16.0
MIN_EYE_STDDEV_SYMMETRY = 0.72
MAX_SINGLE_EYE_SKIN_RATIO = 0.58
MIN_EYE_SKIN_RATIO_DELTA = 0.18

# Landmark geometry, normalised by face box size
MIN_EYE_AREA_RATIO = 0.001
MIN_NOSE_HEIGHT_RATIO = 0.1
MIN_INTER_EYE_RATIO = 0.22
MIN_EYE_AREA_SYMMETRY_RATIO = 0.55
MIN_EYE_WIDTH_SYMMETRY_RATIO = 0.62
MIN_MOUTH_AREA_RATIO = 0.007
MIN_MOUTH_WIDTH_RATIO = 0.24
MIN_MOUTH_HEIGHT_RATIO = 0.02
MIN_NOSE_TO_MOUTH_RATIO = 0.2
MIN_MOUTH_CENTER_Y_RATIO = 0.58
MIN_EYE_TO_MOUTH_RATIO = 0.22
MIN_MOUTH_TO_CHIN_RATIO = 0.09
MIN_LANDMARK_CONFIDENCE_PROXY = 0.74
STRICT_MOUTH_AREA_RATIO = 0.0085
STRICT_NOSE_TO_MOUTH_RATIO = 0.22


@dataclass
class OcclusionResult:
    blocked: bool
    reason: Optional[str] = None
    checks: List[str] = field(default_factory=list)


def polygon_area(points: np.ndarray) -> float:
    """Shoelace area of a closed landmark contour."""
    if len(points) < 3:
        return 0.0
    xs = points[:, 0].astype(np.float64)
    ys = points[:, 1].astype(np.float64)
    return float(abs(np.dot(xs, np.roll(ys, -1)) - np.dot(np.roll(xs, -1), ys)) * 0.5)


def _distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


def _expanded_region(points: np.ndarray, expand_x: float, expand_y: float, frame_w: int, frame_h: int) -> Region:
    min_x, min_y = points.min(axis=0)
    max_x, max_y = points.max(axis=0)
    width = max(1.0, float(max_x - min_x))
    height = max(1.0, float(max_y - min_y))
    x = min_x - width * expand_x
    y = min_y - height * expand_y
    return clamp_region(x, y, width * (1 + 2 * expand_x), height * (1 + 2 * expand_y), frame_w, frame_h)


def evaluate_eye_occlusion(frame: np.ndarray, landmarks: Sequence) -> OcclusionResult:
    """Detect a covered eye from luminance texture collapse or one-sided skin dominance."""
    points = landmarks_array(landmarks)
    if frame is None or frame.ndim != 3 or len(points) < LANDMARK_COUNT:
        return OcclusionResult(blocked=False)
    frame_h, frame_w = frame.shape[:2]
    left_region = _expanded_region(points[LEFT_EYE], 0.45, 0.7, frame_w, frame_h)
    right_region = _expanded_region(points[RIGHT_EYE], 0.45, 0.7, frame_w, frame_h)
    left_std = luminance_std(frame, left_region)
    right_std = luminance_std(frame, right_region)
    left_skin = skin_ratio(frame, left_region)
    right_skin = skin_ratio(frame, right_region)
    if left_std is None or right_std is None or left_skin is None or right_skin is None:
        return OcclusionResult(blocked=False)

    min_std = min(left_std, right_std)
    symmetry = min_std / max(0.001, max(left_std, right_std))
    max_skin = max(left_skin, right_skin)
    skin_delta = abs(left_skin - right_skin)
    blocked_by_texture = min_std < MIN_EYE_LUMA_STDDEV and symmetry < MIN_EYE_STDDEV_SYMMETRY
    blocked_by_skin = max_skin > MAX_SINGLE_EYE_SKIN_RATIO and skin_delta > MIN_EYE_SKIN_RATIO_DELTA
    if not (blocked_by_texture or blocked_by_skin):
        return OcclusionResult(blocked=False)
    reason = (
        f"eye_occlusion(std:{min_std:.1f},sym:{symmetry:.2f},"
        f"skin:{max_skin:.2f},delta:{skin_delta:.2f})"
    )
    return OcclusionResult(blocked=True, reason=reason, checks=[reason])


def evaluate_lower_face_occlusion(frame: np.ndarray, box: BBox) -> Optional[str]:
    """Return a mask reason when the nose/mouth band loses skin relative to the cheek band."""
    if frame is None or frame.ndim != 3:
        return None
    frame_h, frame_w = frame.shape[:2]
    face_x = int(np.clip(round(box[0]), 0, frame_w - 1))
    face_y = int(np.clip(round(box[1]), 0, frame_h - 1))
    face_w = int(np.clip(round(bbox_width(box)), 1, frame_w - face_x))
    face_h = int(np.clip(round(bbox_height(box)), 1, frame_h - face_y))
    if face_w < MIN_FACE_PX_FOR_SKIN or face_h < MIN_FACE_PX_FOR_SKIN:
        return None

    sample_x = face_x + int(round(face_w * 0.2))
    sample_w = max(8, int(round(face_w * 0.6)))
    upper = clamp_region(sample_x, face_y + round(face_h * 0.24), sample_w, max(8, round(face_h * 0.2)), frame_w, frame_h)
    lower = clamp_region(sample_x, face_y + round(face_h * 0.56), sample_w, max(8, round(face_h * 0.32)), frame_w, frame_h)
    upper_skin = skin_ratio(frame, upper)
    lower_skin = skin_ratio(frame, lower)
    if upper_skin is None or lower_skin is None:
        return None
    if upper_skin < MIN_REFERENCE_SKIN_RATIO:
        return None
    lower_to_upper = lower_skin / max(0.001, upper_skin)
    if lower_skin < MAX_LOWER_FACE_SKIN_RATIO and lower_to_upper < MAX_LOWER_TO_UPPER_SKIN_RATIO:
        return f"mask(upper:{upper_skin:.2f},lower:{lower_skin:.2f})"
    return None


def _geometry_checks(box: BBox, points: np.ndarray, score: float) -> List[str]:
    face_w = max(1.0, bbox_width(box))
    face_h = max(1.0, bbox_height(box))
    face_area = max(1.0, face_w * face_h)

    left_eye = points[LEFT_EYE]
    right_eye = points[RIGHT_EYE]
    mouth = points[MOUTH_OUTER]
    left_eye_area = polygon_area(left_eye) / face_area
    right_eye_area = polygon_area(right_eye) / face_area
    left_eye_width = _distance(points[36], points[39]) / face_w
    right_eye_width = _distance(points[42], points[45]) / face_w
    mouth_area = polygon_area(mouth) / face_area
    mouth_width = _distance(points[MOUTH_LEFT_CORNER], points[MOUTH_RIGHT_CORNER]) / face_w
    mouth_height = _distance(points[MOUTH_TOP], points[MOUTH_BOTTOM]) / face_h
    nose_to_mouth = _distance(points[NOSE_TIP], points[MOUTH_BOTTOM]) / face_h
    nose_height = _distance(points[NOSE_BRIDGE_TOP], points[NOSE_TIP]) / face_h

    left_center = left_eye.mean(axis=0)
    right_center = right_eye.mean(axis=0)
    mouth_center = mouth.mean(axis=0)
    eye_center = (left_center + right_center) / 2.0
    inter_eye = _distance(left_center, right_center) / face_w
    mouth_center_y = (float(mouth_center[1]) - box[1]) / face_h
    eye_to_mouth = _distance(eye_center, mouth_center) / face_h
    mouth_to_chin = _distance(mouth_center, points[JAW_CHIN]) / face_h

    # Detector score stands in for per-landmark confidence.
    low_confidence = score < MIN_LANDMARK_CONFIDENCE_PROXY
    mouth_area_min = STRICT_MOUTH_AREA_RATIO if low_confidence else MIN_MOUTH_AREA_RATIO
    nose_to_mouth_min = STRICT_NOSE_TO_MOUTH_RATIO if low_confidence else MIN_NOSE_TO_MOUTH_RATIO

    eye_area_symmetry = min(left_eye_area, right_eye_area) / max(0.0001, left_eye_area, right_eye_area)
    eye_width_symmetry = min(left_eye_width, right_eye_width) / max(0.0001, left_eye_width, right_eye_width)

    failed: List[str] = []
    if (
        left_eye_area < MIN_EYE_AREA_RATIO
        or right_eye_area < MIN_EYE_AREA_RATIO
        or eye_area_symmetry < MIN_EYE_AREA_SYMMETRY_RATIO
        or eye_width_symmetry < MIN_EYE_WIDTH_SYMMETRY_RATIO
    ):
        failed.append("eyes")
    if (
        mouth_area < mouth_area_min
        or mouth_width < MIN_MOUTH_WIDTH_RATIO
        or mouth_height < MIN_MOUTH_HEIGHT_RATIO
        or nose_to_mouth < nose_to_mouth_min
        or mouth_center_y < MIN_MOUTH_CENTER_Y_RATIO
        or eye_to_mouth < MIN_EYE_TO_MOUTH_RATIO
        or mouth_to_chin < MIN_MOUTH_TO_CHIN_RATIO
    ):
        failed.append("mouth")
    if nose_height < MIN_NOSE_HEIGHT_RATIO:
        failed.append("nose")
    if inter_eye < MIN_INTER_EYE_RATIO:
        failed.append("alignment")
    return failed


def occlusion_check(
    frame: Optional[np.ndarray],
    box: BBox,
    landmarks: Sequence,
    score: float = 1.0,
) -> OcclusionResult:
    """Combined visibility verdict for one detected face.

    ``frame`` may be None, in which case only landmark geometry is evaluated.
    """
    points = landmarks_array(landmarks)
    if len(points) < LANDMARK_COUNT:
        return OcclusionResult(blocked=True, reason="insufficient_landmarks", checks=["insufficient_landmarks"])

    failed = _geometry_checks(box, points, score)
    geometry_failures = list(failed)
    if frame is not None:
        eye_result = evaluate_eye_occlusion(frame, points)
        if eye_result.blocked and eye_result.reason:
            failed.append(eye_result.reason)
        mask_reason = evaluate_lower_face_occlusion(frame, box)
        if mask_reason:
            failed.append(mask_reason)

    blocked = (
        "eyes" in geometry_failures
        or "mouth" in geometry_failures
        or any(check.startswith("eye_occlusion(") for check in failed)
        or any(check.startswith("mask(") for check in failed)
        or len(failed) >= 2
    )
    if blocked:
        LOGGER.debug("Face occluded: %s", failed)
    return OcclusionResult(blocked=blocked, reason=",".join(failed) if blocked else None, checks=failed)


def occlusion_hint(reason: Optional[str]) -> str:
    """User-facing hint for an occlusion reason string."""
    if not reason:
        return "Keep your whole face visible."
    if reason == "insufficient_landmarks":
        return "Face landmarks unclear. Face the camera directly."
    if "mask(" in reason or "mouth" in reason:
        return "Lower face covered. Remove mask or hand from nose and mouth."
    if "eye_occlusion(" in reason or "eyes" in reason:
        return "Eyes covered. Remove glasses, hair or hands from your eyes."
    if "alignment" in reason or "nose" in reason:
        return "Face turned too far. Look straight at the camera."
    return "Keep your whole face visible."
