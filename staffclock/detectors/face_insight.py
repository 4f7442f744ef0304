"""InsightFace-backed embedding runtime: detection, 68-point landmarks and recognition."""

from __future__ import annotations

import logging
import os
import platform
from typing import Optional, Protocol, Sequence, Tuple

import numpy as np

from staffclock.errors import ModelLoadError
from staffclock.types import FaceDetection, LANDMARK_COUNT, bbox_area, l2_normalize

LOGGER = logging.getLogger("staffclock.detectors.face")


class EmbeddingRuntime(Protocol):
    """Boundary contract: one frame in, at most one face out."""

    def detect(self, frame: np.ndarray) -> Optional[FaceDetection]: ...


def _default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers based on platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


class InsightFaceRuntime:
    """Wrapper around InsightFace FaceAnalysis returning the largest face per frame.

    Landmarks come from the ``landmark_3d_68`` model, which follows the
    68-point iBUG ordering expected by the occlusion checks. Embeddings are
    the L2-normalised recognition features.
    """

    def __init__(
        self,
        model_name: str = "buffalo_l",
        providers: Optional[Sequence[str]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.3,
    ) -> None:
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("MKL_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise ModelLoadError(
                "insightface is required for InsightFaceRuntime. "
                "Install it via `pip install staffclock[runtime]`."
            ) from exc

        provider_list = tuple(providers) if providers is not None else _default_providers()
        self.providers = provider_list
        self.det_size = det_size
        self.det_thresh = det_thresh
        try:
            self.app = FaceAnalysis(
                name=model_name,
                allowed_modules=["detection", "landmark_3d_68", "recognition"],
                providers=list(provider_list),
            )
            self.app.prepare(ctx_id=0, det_thresh=det_thresh, det_size=det_size)
        except Exception as exc:  # pragma: no cover - depends on model files
            raise ModelLoadError(f"Failed to load face model {model_name}: {exc}") from exc
        LOGGER.info(
            "Loaded InsightFace runtime model=%s det_size=%s det_thresh=%.2f providers=%s",
            model_name,
            det_size,
            det_thresh,
            provider_list,
        )

    def detect(self, frame: np.ndarray) -> Optional[FaceDetection]:
        """Run detection on a BGR frame and return the largest face, if any."""
        if frame is None or frame.size == 0:
            return None
        faces = self.app.get(frame)
        if not faces:
            return None
        face = max(faces, key=lambda f: bbox_area(tuple(float(v) for v in f.bbox)))
        landmarks = getattr(face, "landmark_3d_68", None)
        embedding = getattr(face, "embedding", None)
        if landmarks is None or embedding is None:
            LOGGER.debug("Face without landmarks/embedding skipped")
            return None
        points = np.asarray(landmarks, dtype=np.float32)[:, :2]
        if points.shape[0] != LANDMARK_COUNT:
            LOGGER.debug("Unexpected landmark count %s", points.shape[0])
            return None
        return FaceDetection(
            bbox=tuple(float(v) for v in face.bbox),  # type: ignore[arg-type]
            landmarks=points,
            score=float(face.det_score),
            embedding=l2_normalize(np.asarray(embedding, dtype=np.float32).reshape(-1)),
        )
