"""Runtime policy: match threshold, cooldown, evidence budget and office geofence."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from staffclock.io_utils import load_yaml
from staffclock.storage.docstore import DocumentStore, get_or_none

LOGGER = logging.getLogger("staffclock.config")

DEFAULT_ORG_ID = "org_01"
DEFAULT_MATCH_THRESHOLD = 0.6
DEFAULT_COOLDOWN_SEC = 300
EVIDENCE_MIN_WIDTH = 240
EVIDENCE_QUALITY_RANGE = (0.4, 0.95)


@dataclass
class EvidencePolicy:
    max_width: int = 640
    jpeg_quality: float = 0.8
    min_jpeg_quality: float = 0.5
    max_bytes: int = 200 * 1024


@dataclass
class GeofencePolicy:
    lat: float = 1.3521
    lng: float = 103.8198
    radius_m: float = 120.0


@dataclass
class PolicyConfig:
    org_id: str = DEFAULT_ORG_ID
    match_threshold: float = DEFAULT_MATCH_THRESHOLD
    cooldown_sec: int = DEFAULT_COOLDOWN_SEC
    office_name: str = "HQ"
    evidence: EvidencePolicy = field(default_factory=EvidencePolicy)
    geofence: GeofencePolicy = field(default_factory=GeofencePolicy)

    @property
    def doc_id(self) -> str:
        return policy_doc_id(self.org_id)

    def to_doc(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["_id"] = self.doc_id
        payload["type"] = "POLICY_CONFIG"
        return payload


def policy_doc_id(org_id: str = DEFAULT_ORG_ID) -> str:
    return f"policy::{org_id}"


def _clamp_quality(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    low, high = EVIDENCE_QUALITY_RANGE
    return min(high, max(low, number))


def clamp_evidence_policy(policy: EvidencePolicy) -> EvidencePolicy:
    """Replace out-of-range evidence settings with safe values."""
    defaults = EvidencePolicy()
    max_width = policy.max_width if isinstance(policy.max_width, int) and policy.max_width >= EVIDENCE_MIN_WIDTH else defaults.max_width
    max_bytes = policy.max_bytes if isinstance(policy.max_bytes, int) and policy.max_bytes > 0 else defaults.max_bytes
    return EvidencePolicy(
        max_width=max_width,
        jpeg_quality=_clamp_quality(policy.jpeg_quality, defaults.jpeg_quality),
        min_jpeg_quality=_clamp_quality(policy.min_jpeg_quality, defaults.min_jpeg_quality),
        max_bytes=max_bytes,
    )


def policy_from_dict(data: Dict[str, Any]) -> PolicyConfig:
    """Build a PolicyConfig from a YAML/doc mapping, ignoring unknown keys."""
    defaults = PolicyConfig()
    evidence_raw = data.get("evidence") or {}
    geofence_raw = data.get("geofence") or {}
    evidence = EvidencePolicy(
        max_width=int(evidence_raw.get("max_width", defaults.evidence.max_width)),
        jpeg_quality=evidence_raw.get("jpeg_quality", defaults.evidence.jpeg_quality),
        min_jpeg_quality=evidence_raw.get("min_jpeg_quality", defaults.evidence.min_jpeg_quality),
        max_bytes=int(evidence_raw.get("max_bytes", defaults.evidence.max_bytes)),
    )
    geofence = GeofencePolicy(
        lat=float(geofence_raw.get("lat", defaults.geofence.lat)),
        lng=float(geofence_raw.get("lng", defaults.geofence.lng)),
        radius_m=float(geofence_raw.get("radius_m", defaults.geofence.radius_m)),
    )
    return PolicyConfig(
        org_id=str(data.get("org_id", defaults.org_id)),
        match_threshold=float(data.get("match_threshold", defaults.match_threshold)),
        cooldown_sec=int(data.get("cooldown_sec", defaults.cooldown_sec)),
        office_name=str(data.get("office_name", defaults.office_name)),
        evidence=clamp_evidence_policy(evidence),
        geofence=geofence,
    )


def load_policy_yaml(path: Path) -> PolicyConfig:
    policy = policy_from_dict(load_yaml(path))
    LOGGER.info(
        "Loaded policy %s threshold=%.3f cooldown=%ss",
        path,
        policy.match_threshold,
        policy.cooldown_sec,
    )
    return policy


def load_policy_config(store: DocumentStore, org_id: str = DEFAULT_ORG_ID) -> PolicyConfig:
    """Read the stored policy; fall back to defaults when none has been saved."""
    doc = get_or_none(store, policy_doc_id(org_id))
    if doc is None:
        return PolicyConfig(org_id=org_id)
    return policy_from_dict(doc)


def save_policy_config(
    store: DocumentStore,
    policy: PolicyConfig,
    base_rev: Optional[str] = None,
) -> str:
    """Revision-checked policy write; a stale ``base_rev`` raises ConflictError."""
    doc = policy.to_doc()
    if base_rev is None:
        existing = get_or_none(store, policy.doc_id)
        base_rev = existing.get("_rev") if existing else None
    if base_rev:
        doc["_rev"] = base_rev
    rev = store.put(doc)
    LOGGER.info("Saved policy %s rev=%s", policy.doc_id, rev)
    return rev
