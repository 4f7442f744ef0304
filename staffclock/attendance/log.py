"""Attendance event documents (``log::<eventId>``) and their idempotent persistence."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from staffclock.clock import parse_iso
from staffclock.errors import ConflictError
from staffclock.io_utils import from_base64, to_base64
from staffclock.storage.docstore import DocumentStore, get_or_none
from staffclock.types import AttendanceAction, GeoStatus, SyncState

LOGGER = logging.getLogger("staffclock.attendance.log")

EVENT_DOC_TYPE = "ATTENDANCE_LOG"
DEVICE_DOC_ID = "device::local"
EVIDENCE_ATTACHMENT = "evidence.jpg"


class SaveStatus(str, Enum):
    CREATED = "CREATED"
    DUPLICATE = "DUPLICATE"


@dataclass
class AttendanceEvent:
    event_id: str
    staff_id: str
    device_id: str
    action: AttendanceAction
    client_ts: str
    sync_state: SyncState = SyncState.LOCAL_ONLY
    verify_score: float = 0.0
    geo_status: GeoStatus = GeoStatus.LOCATION_UNAVAILABLE
    distance_m: Optional[float] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy_m: Optional[float] = None
    evidence: Optional[bytes] = None
    server_ts: Optional[str] = None

    @property
    def doc_id(self) -> str:
        return event_doc_id(self.event_id)

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "_id": self.doc_id,
            "type": EVENT_DOC_TYPE,
            "eventId": self.event_id,
            "staffId": self.staff_id,
            "deviceId": self.device_id,
            "action": self.action.value,
            "clientTs": self.client_ts,
            "serverTs": self.server_ts,
            "syncState": self.sync_state.value,
            "verify": {"score": self.verify_score, "result": "PASS"},
            "geoPolicyResult": {"status": self.geo_status.value, "distanceM": self.distance_m},
            "gps": {"lat": self.lat, "lng": self.lng, "accuracyM": self.accuracy_m},
        }
        if self.evidence:
            doc["_attachments"] = {
                EVIDENCE_ATTACHMENT: {"content_type": "image/jpeg", "data": to_base64(self.evidence)}
            }
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "AttendanceEvent":
        geo = doc.get("geoPolicyResult") or {}
        gps = doc.get("gps") or {}
        attachment = (doc.get("_attachments") or {}).get(EVIDENCE_ATTACHMENT) or {}
        return cls(
            event_id=doc["eventId"],
            staff_id=doc.get("staffId", ""),
            device_id=doc.get("deviceId", ""),
            action=AttendanceAction(doc["action"]),
            client_ts=doc["clientTs"],
            sync_state=SyncState(doc.get("syncState", SyncState.LOCAL_ONLY.value)),
            verify_score=float((doc.get("verify") or {}).get("score", 0.0)),
            geo_status=GeoStatus(geo.get("status", GeoStatus.LOCATION_UNAVAILABLE.value)),
            distance_m=geo.get("distanceM"),
            lat=gps.get("lat"),
            lng=gps.get("lng"),
            accuracy_m=gps.get("accuracyM"),
            evidence=from_base64(attachment["data"]) if attachment.get("data") else None,
            server_ts=doc.get("serverTs"),
        )


def event_doc_id(event_id: str) -> str:
    return f"log::{event_id}"


def _is_event_doc(doc: Dict[str, Any]) -> bool:
    return (
        doc.get("type") == EVENT_DOC_TYPE
        and isinstance(doc.get("eventId"), str)
        and doc.get("action") in (AttendanceAction.IN.value, AttendanceAction.OUT.value)
        and isinstance(doc.get("clientTs"), str)
        and isinstance((doc.get("geoPolicyResult") or {}).get("status"), str)
    )


def save_attendance_event(store: DocumentStore, event: AttendanceEvent) -> SaveStatus:
    """Insert the event once; a conflict on its id means it was already written."""
    try:
        store.put(event.to_doc())
    except ConflictError:
        LOGGER.info("Attendance event %s already stored; treating as duplicate", event.event_id)
        return SaveStatus.DUPLICATE
    LOGGER.info(
        "Recorded %s for %s event=%s geo=%s",
        event.action.value,
        event.staff_id,
        event.event_id,
        event.geo_status.value,
    )
    return SaveStatus.CREATED


def load_recent_events(store: DocumentStore, limit: int = 30) -> List[AttendanceEvent]:
    """Attendance events ordered newest first by client timestamp."""
    events = [AttendanceEvent.from_doc(doc) for doc in store.all_docs() if _is_event_doc(doc)]

    def sort_key(event: AttendanceEvent) -> float:
        parsed = parse_iso(event.client_ts)
        return parsed.timestamp() if parsed else 0.0

    events.sort(key=sort_key, reverse=True)
    return events[:limit]


def get_or_create_device_id(store: DocumentStore) -> str:
    doc = get_or_none(store, DEVICE_DOC_ID)
    if doc and doc.get("deviceId"):
        return doc["deviceId"]
    device_id = f"dev_{uuid.uuid4().hex[:12]}"
    store.put({"_id": DEVICE_DOC_ID, "type": "DEVICE", "deviceId": device_id})
    LOGGER.info("Registered device id %s", device_id)
    return device_id
