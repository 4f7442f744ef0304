"""Durable enrollment profiles keyed by staff id (``user::<staffId>``)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from staffclock.enrollment.capture import ENROLL_CAPTURE_TARGET
from staffclock.enrollment.review import ReviewResult
from staffclock.io_utils import from_base64, to_base64
from staffclock.recognition.matcher import FaceProfile
from staffclock.storage.docstore import DocumentStore, get_or_none
from staffclock.types import finite_descriptors

LOGGER = logging.getLogger("staffclock.enrollment.profiles")

ENROLLMENT_CONSENT_VERSION = "2026-02-12"
ENROLLMENT_DESCRIPTOR_VERSION = "insightface-buffalo_l-v1"
PROFILE_DOC_TYPE = "USER_PROFILE"


class EnrollStatus(str, Enum):
    PENDING_CONSENT = "PENDING_CONSENT"
    ACTIVE = "ACTIVE"
    RESET_REQUIRED = "RESET_REQUIRED"
    LOCKED = "LOCKED"


@dataclass
class ConsentRecord:
    accepted_at: str
    version: str = ENROLLMENT_CONSENT_VERSION


@dataclass
class LivenessRecord:
    passed_at: str
    confidence: float
    mode: str = "PASSIVE_SCORE"


@dataclass
class EnrollmentProfile:
    staff_id: str
    descriptors: List[List[float]]
    enroll_status: EnrollStatus = EnrollStatus.ACTIVE
    name: Optional[str] = None
    consent: Optional[ConsentRecord] = None
    liveness: Optional[LivenessRecord] = None
    descriptor_version: str = ENROLLMENT_DESCRIPTOR_VERSION
    photos: List[bytes] = field(default_factory=list)
    rev: Optional[str] = None

    @property
    def doc_id(self) -> str:
        return profile_doc_id(self.staff_id)

    @property
    def is_active(self) -> bool:
        return self.enroll_status == EnrollStatus.ACTIVE and bool(self.descriptors)

    def to_face_profile(self, use_mean: bool = False) -> FaceProfile:
        return FaceProfile.from_descriptors(self.staff_id, self.descriptors, name=self.name, use_mean=use_mean)

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "_id": self.doc_id,
            "type": PROFILE_DOC_TYPE,
            "staffId": self.staff_id,
            "name": self.name,
            "enrollStatus": self.enroll_status.value,
            "descriptorVersion": self.descriptor_version,
            "faceDescriptors": self.descriptors,
        }
        if self.rev:
            doc["_rev"] = self.rev
        if self.consent is not None:
            doc["consent"] = {"version": self.consent.version, "acceptedAt": self.consent.accepted_at}
        if self.liveness is not None:
            doc["liveness"] = {
                "mode": self.liveness.mode,
                "passedAt": self.liveness.passed_at,
                "confidence": self.liveness.confidence,
            }
        photos = [photo for photo in self.photos if photo]
        if photos:
            doc["_attachments"] = {
                f"enroll_{index:02d}.jpg": {"content_type": "image/jpeg", "data": to_base64(photo)}
                for index, photo in enumerate(photos, start=1)
            }
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "EnrollmentProfile":
        consent_raw = doc.get("consent")
        liveness_raw = doc.get("liveness")
        photos: List[bytes] = []
        for key in sorted(doc.get("_attachments") or {}):
            data = from_base64((doc["_attachments"][key] or {}).get("data", ""))
            if data:
                photos.append(data)
        try:
            status = EnrollStatus(doc.get("enrollStatus", EnrollStatus.PENDING_CONSENT.value))
        except ValueError:
            LOGGER.warning("Unknown enroll status %r on %s", doc.get("enrollStatus"), doc.get("_id"))
            status = EnrollStatus.PENDING_CONSENT
        return cls(
            staff_id=str(doc["staffId"]),
            descriptors=finite_descriptors(doc.get("faceDescriptors") or []),
            enroll_status=status,
            name=doc.get("name"),
            consent=ConsentRecord(
                accepted_at=consent_raw.get("acceptedAt", ""),
                version=consent_raw.get("version", ENROLLMENT_CONSENT_VERSION),
            )
            if consent_raw
            else None,
            liveness=LivenessRecord(
                passed_at=liveness_raw.get("passedAt", ""),
                confidence=float(liveness_raw.get("confidence", 0.0)),
                mode=liveness_raw.get("mode", "PASSIVE_SCORE"),
            )
            if liveness_raw
            else None,
            descriptor_version=doc.get("descriptorVersion", ENROLLMENT_DESCRIPTOR_VERSION),
            photos=photos,
            rev=doc.get("_rev"),
        )


@dataclass
class EnrollmentSummary:
    staff_id: str
    status: EnrollStatus
    descriptor_count: int
    consent_accepted_at: Optional[str]
    name: Optional[str] = None


def profile_doc_id(staff_id: str) -> str:
    return f"user::{staff_id}"


def load_enrollment_profile(store: DocumentStore, staff_id: str) -> Optional[EnrollmentProfile]:
    doc = get_or_none(store, profile_doc_id(staff_id))
    if doc is None:
        return None
    return EnrollmentProfile.from_doc(doc)


def load_enrollment_summary(store: DocumentStore, staff_id: str) -> EnrollmentSummary:
    profile = load_enrollment_profile(store, staff_id)
    if profile is None:
        return EnrollmentSummary(
            staff_id=staff_id,
            status=EnrollStatus.PENDING_CONSENT,
            descriptor_count=0,
            consent_accepted_at=None,
        )
    return EnrollmentSummary(
        staff_id=staff_id,
        status=profile.enroll_status,
        descriptor_count=len(profile.descriptors),
        consent_accepted_at=profile.consent.accepted_at if profile.consent else None,
        name=profile.name,
    )


def save_enrollment_profile(
    store: DocumentStore,
    staff_id: str,
    review: ReviewResult,
    consent: ConsentRecord,
    liveness: LivenessRecord,
    name: Optional[str] = None,
    target: int = ENROLL_CAPTURE_TARGET,
    base_rev: Optional[str] = None,
) -> EnrollmentProfile:
    """Create or overwrite the ACTIVE profile from a passing review.

    The write is revision-checked against ``base_rev`` (or the currently
    stored revision when omitted); a ``ConflictError`` is propagated to the
    caller.
    """
    descriptors: List[List[float]] = []
    photos: List[bytes] = []
    for index, descriptor in enumerate(review.descriptors):
        cleaned = finite_descriptors([descriptor])
        if not cleaned:
            continue
        descriptors.append(cleaned[0])
        if index < len(review.photos):
            photos.append(review.photos[index])
    if not descriptors:
        raise ValueError("At least one valid descriptor is required for enrollment")
    if len(descriptors) < target:
        raise ValueError(f"Review kept {len(descriptors)} valid samples; {target} are required for enrollment")
    if base_rev is None:
        existing = get_or_none(store, profile_doc_id(staff_id))
        base_rev = existing.get("_rev") if existing else None

    profile = EnrollmentProfile(
        staff_id=staff_id,
        descriptors=descriptors,
        enroll_status=EnrollStatus.ACTIVE,
        name=name,
        consent=consent,
        liveness=liveness,
        photos=photos,
        rev=base_rev,
    )
    profile.rev = store.put(profile.to_doc())
    LOGGER.info("Saved enrollment for %s descriptors=%d rev=%s", staff_id, len(descriptors), profile.rev)
    return profile


def set_enrollment_status(store: DocumentStore, staff_id: str, status: EnrollStatus) -> EnrollmentProfile:
    """Move an existing profile to ``status`` (e.g. RESET_REQUIRED after an admin reset)."""
    profile = load_enrollment_profile(store, staff_id)
    if profile is None:
        raise ValueError(f"No enrollment profile for {staff_id}")
    previous = profile.enroll_status
    profile.enroll_status = status
    profile.rev = store.put(profile.to_doc())
    LOGGER.info("Enrollment status for %s: %s -> %s", staff_id, previous.value, status.value)
    return profile
