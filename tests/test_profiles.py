import numpy as np
import pytest

from conftest import jittered_embeddings
from staffclock.enrollment.draft import (
    EnrollmentDraft,
    clear_enrollment_draft,
    read_enrollment_draft,
    save_enrollment_draft,
)
from staffclock.enrollment.capture import EnrollmentCaptureSession
from staffclock.enrollment.profiles import (
    ConsentRecord,
    EnrollStatus,
    LivenessRecord,
    load_enrollment_profile,
    load_enrollment_summary,
    save_enrollment_profile,
    set_enrollment_status,
)
from staffclock.enrollment.review import ReviewResult
from staffclock.errors import ConflictError
from staffclock.storage.docstore import MemoryDocumentStore

CONSENT = ConsentRecord(accepted_at="2026-03-01T08:00:00.000Z")
LIVENESS = LivenessRecord(passed_at="2026-03-01T08:05:00.000Z", confidence=0.93)


def _review(count=4):
    descriptors = jittered_embeddings(count)
    return ReviewResult(
        descriptors=descriptors,
        photos=[b"photo-%d" % i for i in range(count)],
        reviewed_count=count,
        removed_count=0,
    )


def test_save_and_load_profile():
    store = MemoryDocumentStore()
    saved = save_enrollment_profile(store, "S001", _review(), CONSENT, LIVENESS, name="Ana", target=4)
    assert saved.rev.startswith("1-")
    doc = store.get("user::S001")
    assert doc["type"] == "USER_PROFILE"
    assert doc["enrollStatus"] == "ACTIVE"
    assert sorted(doc["_attachments"]) == ["enroll_01.jpg", "enroll_02.jpg", "enroll_03.jpg", "enroll_04.jpg"]
    assert doc["liveness"]["mode"] == "PASSIVE_SCORE"

    loaded = load_enrollment_profile(store, "S001")
    assert loaded.is_active
    assert loaded.name == "Ana"
    assert loaded.photos[0] == b"photo-0"
    np.testing.assert_allclose(loaded.descriptors[1], jittered_embeddings(4)[1])
    assert loaded.to_face_profile().profile_id == "S001"


def test_short_review_is_rejected():
    with pytest.raises(ValueError):
        save_enrollment_profile(MemoryDocumentStore(), "S001", _review(3), CONSENT, LIVENESS, target=4)


def test_non_finite_values_are_stripped():
    review = _review(1)
    review.descriptors = [np.array([0.5, float("nan"), 0.25], dtype=np.float32)]
    saved = save_enrollment_profile(MemoryDocumentStore(), "S001", review, CONSENT, LIVENESS, target=1)
    assert saved.descriptors == [[0.5, 0.25]]


def test_all_empty_descriptors_rejected():
    review = _review(1)
    review.descriptors = [np.array([float("nan")], dtype=np.float32)]
    with pytest.raises(ValueError):
        save_enrollment_profile(MemoryDocumentStore(), "S001", review, CONSENT, LIVENESS, target=1)


def test_overwrite_follows_revision_and_stale_base_conflicts():
    store = MemoryDocumentStore()
    first = save_enrollment_profile(store, "S001", _review(), CONSENT, LIVENESS, target=4)
    second = save_enrollment_profile(store, "S001", _review(), CONSENT, LIVENESS, target=4)
    assert second.rev.startswith("2-")
    with pytest.raises(ConflictError):
        save_enrollment_profile(store, "S001", _review(), CONSENT, LIVENESS, target=4, base_rev=first.rev)


def test_summary_and_status_transitions():
    store = MemoryDocumentStore()
    pending = load_enrollment_summary(store, "S001")
    assert pending.status == EnrollStatus.PENDING_CONSENT
    assert pending.descriptor_count == 0

    save_enrollment_profile(store, "S001", _review(), CONSENT, LIVENESS, target=4)
    summary = load_enrollment_summary(store, "S001")
    assert summary.status == EnrollStatus.ACTIVE
    assert summary.descriptor_count == 4
    assert summary.consent_accepted_at == CONSENT.accepted_at

    profile = set_enrollment_status(store, "S001", EnrollStatus.RESET_REQUIRED)
    assert not profile.is_active
    assert load_enrollment_profile(store, "S001").enroll_status == EnrollStatus.RESET_REQUIRED
    with pytest.raises(ValueError):
        set_enrollment_status(store, "S999", EnrollStatus.LOCKED)


def test_draft_round_trip(tmp_path):
    path = tmp_path / "drafts" / "enroll.json"
    session = EnrollmentCaptureSession.from_samples(jittered_embeddings(3), [b"a", b"b", b"c"], target=20)
    save_enrollment_draft(path, EnrollmentDraft.from_session(session, "2026-03-01T08:00:00.000Z"))

    draft = read_enrollment_draft(path)
    assert draft.consent_accepted_at == "2026-03-01T08:00:00.000Z"
    assert draft.photos == [b"a", b"b", b"c"]
    restored = draft.to_session(target=20)
    assert len(restored) == 3
    np.testing.assert_allclose(restored.anchor, jittered_embeddings(1)[0])

    clear_enrollment_draft(path)
    assert not path.exists()
    assert read_enrollment_draft(path) == EnrollmentDraft()


def test_malformed_draft_reads_empty(tmp_path):
    path = tmp_path / "enroll.json"
    path.write_text("{not json", encoding="utf-8")
    assert read_enrollment_draft(path) == EnrollmentDraft()
    path.write_text('{"descriptors": "x", "photos": [1, "!!"], "consentAcceptedAt": " "}', encoding="utf-8")
    assert read_enrollment_draft(path) == EnrollmentDraft()


def test_empty_descriptor_drops_its_photo_and_counts_against_target():
    review = _review(3)
    review.descriptors[1] = np.array([float("nan")] * 4, dtype=np.float32)
    with pytest.raises(ValueError):
        save_enrollment_profile(MemoryDocumentStore(), "S001", review, CONSENT, LIVENESS, target=3)

    saved = save_enrollment_profile(MemoryDocumentStore(), "S001", review, CONSENT, LIVENESS, target=2)
    assert len(saved.descriptors) == 2
    assert saved.photos == [b"photo-0", b"photo-2"]
