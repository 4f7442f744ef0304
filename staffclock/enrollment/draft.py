"""On-disk draft of an unfinished capture session so enrollment can resume after a restart."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from staffclock.enrollment.capture import EnrollmentCaptureSession
from staffclock.io_utils import dump_json, ensure_dir, from_base64, load_json, to_base64
from staffclock.types import finite_descriptors

LOGGER = logging.getLogger("staffclock.enrollment.draft")


@dataclass
class EnrollmentDraft:
    consent_accepted_at: Optional[str] = None
    descriptors: List[List[float]] = field(default_factory=list)
    photos: List[bytes] = field(default_factory=list)

    @classmethod
    def from_session(
        cls,
        session: EnrollmentCaptureSession,
        consent_accepted_at: Optional[str] = None,
    ) -> "EnrollmentDraft":
        return cls(
            consent_accepted_at=consent_accepted_at,
            descriptors=finite_descriptors(session.descriptors),
            photos=session.photos,
        )

    def to_session(self, target: int) -> EnrollmentCaptureSession:
        return EnrollmentCaptureSession.from_samples(self.descriptors, self.photos, target=target)


def _normalize(payload: Any) -> EnrollmentDraft:
    if not isinstance(payload, dict):
        return EnrollmentDraft()
    consent = payload.get("consentAcceptedAt")
    descriptors_raw = payload.get("descriptors")
    photos_raw = payload.get("photos")
    descriptors = []
    if isinstance(descriptors_raw, list):
        try:
            descriptors = finite_descriptors([d for d in descriptors_raw if isinstance(d, list)])
        except (TypeError, ValueError):
            descriptors = []
    photos: List[bytes] = []
    if isinstance(photos_raw, list):
        for entry in photos_raw:
            if isinstance(entry, str) and entry.strip():
                data = from_base64(entry.strip())
                if data:
                    photos.append(data)
    return EnrollmentDraft(
        consent_accepted_at=consent if isinstance(consent, str) and consent.strip() else None,
        descriptors=descriptors,
        photos=photos,
    )


def read_enrollment_draft(path: Path) -> EnrollmentDraft:
    """Load a draft; missing or malformed files read as an empty draft."""
    path = Path(path)
    if not path.exists():
        return EnrollmentDraft()
    try:
        payload = load_json(path)
    except (OSError, ValueError) as exc:
        LOGGER.warning("Ignoring unreadable enrollment draft %s: %s", path, exc)
        return EnrollmentDraft()
    return _normalize(payload)


def save_enrollment_draft(path: Path, draft: EnrollmentDraft) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    dump_json(
        path,
        {
            "consentAcceptedAt": draft.consent_accepted_at,
            "descriptors": finite_descriptors(draft.descriptors),
            "photos": [to_base64(photo) for photo in draft.photos if photo],
        },
    )
    LOGGER.debug("Saved enrollment draft %s samples=%d", path, len(draft.descriptors))


def clear_enrollment_draft(path: Path) -> None:
    path = Path(path)
    if path.exists():
        path.unlink()
