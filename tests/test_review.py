import numpy as np
import pytest

from conftest import geometry_only_occlusion, jittered_embeddings, make_detection, unit_vector
from staffclock.enrollment.capture import EnrollmentCaptureSession
from staffclock.enrollment.review import (
    ReviewConfig,
    review_enrollment_quality,
    review_reason_hint,
    run_enrollment_quality_gate,
)
from staffclock.io_utils import encode_jpeg


def _photo(key: int) -> bytes:
    return encode_jpeg(np.full((96, 96, 3), key * 10, dtype=np.uint8), quality=95)


class KeyedRuntime:
    """Identifies each decoded photo by its flat gray level."""

    def __init__(self, embeddings, missing=()):
        self.embeddings = embeddings
        self.missing = set(missing)

    def detect(self, frame):
        key = int(round(frame.mean() / 10.0))
        if key in self.missing or key not in self.embeddings:
            return None
        return make_detection(self.embeddings[key])


def _batch(count=20, jitter=0.2):
    keys = list(range(2, 2 + count))
    embeddings = dict(zip(keys, jittered_embeddings(count, jitter)))
    descriptors = [embeddings[k] for k in keys]
    photos = [_photo(k) for k in keys]
    return keys, embeddings, descriptors, photos


def _review(runtime, descriptors, photos, sharpness=lambda f, b: 3000.0, **config):
    return review_enrollment_quality(
        runtime,
        descriptors,
        photos,
        config=ReviewConfig(**config),
        occlusion_fn=geometry_only_occlusion,
        sharpness_fn=sharpness,
    )


def test_clean_batch_keeps_everything():
    _, embeddings, descriptors, photos = _batch()
    result = _review(KeyedRuntime(embeddings), descriptors, photos)
    assert result.reviewed_count == 20
    assert result.removed_count == 0
    assert result.kept_count == 20
    assert result.primary_reason is None


def test_five_missing_faces_require_recapture():
    keys, embeddings, descriptors, photos = _batch()
    runtime = KeyedRuntime(embeddings, missing=keys[::4])
    result = _review(runtime, descriptors, photos)
    assert result.reviewed_count == 20
    assert result.removed_count >= 5
    assert result.removed_reasons["no_face"] == 5
    assert result.primary_reason == "no_face"
    assert len(result.descriptors) < 20


def test_undecodable_photo_is_dropped():
    _, embeddings, descriptors, photos = _batch(3)
    photos[1] = b"not an image"
    result = _review(KeyedRuntime(embeddings), descriptors, photos, target=3)
    assert result.removed_reasons == {"decode_failed": 1}
    assert result.kept_count == 2


def test_mixed_identity_against_first_kept():
    keys, embeddings, descriptors, photos = _batch(4)
    descriptors[2] = unit_vector(30)
    result = _review(KeyedRuntime(embeddings), descriptors, photos, target=4)
    assert result.removed_reasons == {"mixed_identity": 1}


def test_blurry_sample_dropped_by_batch_threshold():
    keys, embeddings, descriptors, photos = _batch(4)
    scores = iter([3000.0, 3000.0, 400.0, 3000.0])
    result = _review(KeyedRuntime(embeddings), descriptors, photos, sharpness=lambda f, b: next(scores), target=4)
    assert result.removed_reasons == {"blurry": 1}
    assert result.kept_count == 3


def test_warmup_bypass_admits_first_soft_sample():
    _, embeddings, descriptors, photos = _batch(2)
    scores = iter([200.0, 150.0])
    result = _review(KeyedRuntime(embeddings), descriptors, photos, sharpness=lambda f, b: next(scores), target=2)
    assert result.kept_count == 1
    assert result.removed_reasons == {"blurry": 1}


def test_kept_set_trimmed_to_target():
    _, embeddings, descriptors, photos = _batch(6)
    result = _review(KeyedRuntime(embeddings), descriptors, photos, target=4)
    assert result.kept_count == 4
    assert result.removed_count == 2


def test_reason_hints():
    assert review_reason_hint("no_face") == "no valid face detected"
    assert review_reason_hint(None) == "quality below requirement"


def test_gate_refuses_incomplete_session():
    session = EnrollmentCaptureSession(target=20)
    outcome = run_enrollment_quality_gate(KeyedRuntime({}), session)
    assert not outcome.completed
    assert not outcome.needs_recapture
    assert outcome.review is None


def test_gate_reseeds_session_on_short_set():
    keys, embeddings, descriptors, photos = _batch()
    session = EnrollmentCaptureSession.from_samples(descriptors, photos, target=20)
    runtime = KeyedRuntime(embeddings, missing=keys[:5])
    outcome = run_enrollment_quality_gate(
        runtime,
        session,
        occlusion_fn=geometry_only_occlusion,
        sharpness_fn=lambda f, b: 3000.0,
    )
    assert outcome.needs_recapture
    assert not outcome.completed
    assert len(session) == 15
    assert "Capture more to reach 20" in outcome.hint


def test_gate_completes_clean_session():
    _, embeddings, descriptors, photos = _batch()
    session = EnrollmentCaptureSession.from_samples(descriptors, photos, target=20)
    outcome = run_enrollment_quality_gate(
        KeyedRuntime(embeddings),
        session,
        occlusion_fn=geometry_only_occlusion,
        sharpness_fn=lambda f, b: 3000.0,
    )
    assert outcome.completed
    assert outcome.review.kept_count == 20


def test_gate_reports_errors_as_hint():
    _, embeddings, descriptors, photos = _batch(2)
    session = EnrollmentCaptureSession.from_samples(descriptors, photos, target=2)

    class Broken:
        def detect(self, frame):
            raise RuntimeError("runtime offline")

    outcome = run_enrollment_quality_gate(Broken(), session)
    assert not outcome.completed
    assert outcome.error == "runtime offline"
    assert len(session) == 2
