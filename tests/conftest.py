from __future__ import annotations

from typing import Iterable, List, Optional

import numpy as np
import pytest

from staffclock.quality.occlusion import occlusion_check
from staffclock.types import FaceDetection

EMBEDDING_DIM = 64
FACE_BOX = (40.0, 40.0, 200.0, 200.0)


def _face_points() -> List[tuple]:
    """Frontal 68-point layout in unit face coordinates (iBUG ordering)."""
    jaw = [(0.02 + 0.06 * i, 0.45 + 0.55 * np.sin(np.pi * i / 16.0)) for i in range(17)]
    jaw[8] = (0.5, 1.0)
    brows = [(0.18 + 0.05 * i, 0.3) for i in range(5)] + [(0.58 + 0.05 * i, 0.3) for i in range(5)]
    nose = [(0.5, 0.38), (0.5, 0.45), (0.5, 0.51), (0.5, 0.56)]
    nostrils = [(0.44, 0.58), (0.47, 0.59), (0.5, 0.6), (0.53, 0.59), (0.56, 0.58)]
    left_eye = [(0.2, 0.38), (0.25, 0.34), (0.35, 0.34), (0.4, 0.38), (0.35, 0.42), (0.25, 0.42)]
    right_eye = [(0.6, 0.38), (0.65, 0.34), (0.75, 0.34), (0.8, 0.38), (0.75, 0.42), (0.65, 0.42)]
    mouth_outer = [
        (0.35, 0.78),
        (0.4, 0.74),
        (0.45, 0.73),
        (0.5, 0.73),
        (0.55, 0.73),
        (0.6, 0.74),
        (0.65, 0.78),
        (0.6, 0.82),
        (0.55, 0.83),
        (0.5, 0.84),
        (0.45, 0.83),
        (0.4, 0.82),
    ]
    mouth_inner = [(0.4, 0.78), (0.45, 0.77), (0.5, 0.77), (0.55, 0.77), (0.6, 0.78), (0.55, 0.79), (0.5, 0.8), (0.45, 0.79)]
    return jaw + brows + nose + nostrils + left_eye + right_eye + mouth_outer + mouth_inner


def make_landmarks(box=FACE_BOX) -> np.ndarray:
    x1, y1, x2, y2 = box
    unit = np.asarray(_face_points(), dtype=np.float32)
    points = np.empty_like(unit)
    points[:, 0] = x1 + unit[:, 0] * (x2 - x1)
    points[:, 1] = y1 + unit[:, 1] * (y2 - y1)
    return points


def unit_vector(index: int, dim: int = EMBEDDING_DIM) -> np.ndarray:
    vec = np.zeros(dim, dtype=np.float32)
    vec[index] = 1.0
    return vec


def jittered_embeddings(count: int, jitter: float = 0.2) -> List[np.ndarray]:
    """Same identity (axis 0) plus an orthogonal per-sample offset."""
    return [unit_vector(0) + jitter * unit_vector(i + 1) for i in range(count)]


def make_detection(embedding, score: float = 0.9, box=FACE_BOX) -> FaceDetection:
    return FaceDetection(
        bbox=box,
        landmarks=make_landmarks(box),
        score=score,
        embedding=np.asarray(embedding, dtype=np.float32),
    )


def uniform_frame(value: int = 120, size=(240, 240)) -> np.ndarray:
    return np.full((size[0], size[1], 3), value, dtype=np.uint8)


def geometry_only_occlusion(frame, box, landmarks, score=1.0):
    return occlusion_check(None, box, landmarks, score)


class SequenceRuntime:
    """Returns the queued detections one per call, then None."""

    def __init__(self, detections: Iterable[Optional[FaceDetection]]) -> None:
        self._queue = list(detections)
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        if not self._queue:
            return None
        return self._queue.pop(0)


class StaticRuntime:
    def __init__(self, detection: Optional[FaceDetection]) -> None:
        self.detection = detection
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        return self.detection


class RaisingRuntime:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def detect(self, frame):
        raise self.exc


@pytest.fixture
def landmarks():
    return make_landmarks()


@pytest.fixture
def noise_frame():
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(240, 240, 3), dtype=np.uint8)
