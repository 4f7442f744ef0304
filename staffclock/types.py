"""Common dataclasses, enums and type aliases used across the staffclock package."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]
Point = Tuple[float, float]

# Landmark indices of the 68-point iBUG scheme used by the occlusion checks.
LANDMARK_COUNT = 68
JAW_CHIN = 8
NOSE_BRIDGE_TOP = 27
NOSE_TIP = 33
LEFT_EYE = slice(36, 42)
RIGHT_EYE = slice(42, 48)
MOUTH_OUTER = slice(48, 60)
MOUTH_LEFT_CORNER = 48
MOUTH_TOP = 51
MOUTH_RIGHT_CORNER = 54
MOUTH_BOTTOM = 57


class AttendanceAction(str, Enum):
    IN = "IN"
    OUT = "OUT"


class GeoStatus(str, Enum):
    IN_RANGE = "IN_RANGE"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    LOCATION_UNAVAILABLE = "LOCATION_UNAVAILABLE"


class SyncState(str, Enum):
    LOCAL_ONLY = "LOCAL_ONLY"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class ReasonCode(str, Enum):
    """Closed taxonomy of verification outcomes."""

    SUCCESS_RECORDED = "SUCCESS_RECORDED"
    DUPLICATE_IGNORED = "DUPLICATE_IGNORED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    MODEL_LOAD_FAILED = "MODEL_LOAD_FAILED"
    CAMERA_UNAVAILABLE = "CAMERA_UNAVAILABLE"
    EVIDENCE_CAPTURE_FAILED = "EVIDENCE_CAPTURE_FAILED"
    PERSIST_FAILED = "PERSIST_FAILED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"


@dataclass
class FaceDetection:
    """Single face returned by the embedding runtime for one frame. Never persisted."""

    bbox: BBox
    landmarks: np.ndarray  # (68, 2) float32, iBUG ordering
    score: float
    embedding: np.ndarray  # 1D float32

    @property
    def width(self) -> float:
        return bbox_width(self.bbox)

    @property
    def height(self) -> float:
        return bbox_height(self.bbox)


def bbox_width(box: BBox) -> float:
    return max(0.0, box[2] - box[0])


def bbox_height(box: BBox) -> float:
    return max(0.0, box[3] - box[1])


def bbox_area(box: BBox) -> float:
    """Compute area of a bounding box."""
    return bbox_width(box) * bbox_height(box)


def as_embedding(values: Iterable[float]) -> np.ndarray:
    """Coerce a descriptor into a 1D float32 vector."""
    return np.asarray(values, dtype=np.float32).reshape(-1)


def finite_descriptors(descriptors: Sequence[Iterable[float]]) -> list:
    """Drop non-finite values and empty descriptors; return plain float lists."""
    cleaned = []
    for descriptor in descriptors:
        values = [float(v) for v in np.asarray(descriptor, dtype=np.float64).reshape(-1) if np.isfinite(v)]
        if values:
            cleaned.append(values)
    return cleaned


def l2_normalize(vec: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """L2-normalize the input vector."""
    norm = np.linalg.norm(vec)
    if norm < eps:
        return vec
    return vec / norm


def landmarks_array(landmarks: Optional[Sequence[Point]]) -> np.ndarray:
    """Return landmarks as an (N, 2) float array (empty when missing)."""
    if landmarks is None:
        return np.zeros((0, 2), dtype=np.float32)
    points = np.asarray(landmarks, dtype=np.float32)
    if points.ndim != 2 or points.shape[1] < 2:
        return np.zeros((0, 2), dtype=np.float32)
    return points[:, :2]
