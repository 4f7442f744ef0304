"""One verification attempt: face gate, cooldown, geofence, evidence and idempotent write.

An attempt either ends in a terminal ``VerificationResult`` or, for
recoverable face-gate outcomes (no face, mismatch), asks the caller to keep
scanning with the next frame. The per-action submission lock is released on
every path.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np

from staffclock.attendance.evidence import EvidenceMeta, capture_evidence
from staffclock.attendance.geofence import GeolocationProvider, capture_geolocation
from staffclock.attendance.guard import SubmissionLock, check_action_cooldown, verify_submission_lock
from staffclock.attendance.log import AttendanceEvent, SaveStatus, get_or_create_device_id, save_attendance_event
from staffclock.clock import SystemClock, to_iso
from staffclock.config import PolicyConfig
from staffclock.detectors.face_insight import EmbeddingRuntime
from staffclock.enrollment.profiles import load_enrollment_profile
from staffclock.errors import (
    CameraUnavailableError,
    EvidenceCaptureError,
    ModelLoadError,
    StoreError,
)
from staffclock.recognition.matcher import MatchResult, match_face
from staffclock.storage.docstore import DocumentStore
from staffclock.types import AttendanceAction, FaceDetection, GeoStatus, ReasonCode, SyncState

LOGGER = logging.getLogger("staffclock.attendance.verify")


class FaceState(str, Enum):
    SCANNING = "SCANNING"
    MATCHED = "MATCHED"
    MISMATCH = "MISMATCH"


@dataclass
class VerificationResult:
    success: bool
    action: AttendanceAction
    client_ts: str
    geo_status: GeoStatus
    sync_state: SyncState
    reason_code: ReasonCode
    message: str
    remaining_sec: Optional[int] = None
    event_id: Optional[str] = None
    match_distance: Optional[float] = None
    face_mismatch: bool = False


def is_retryable(result: VerificationResult) -> bool:
    """No face and face mismatch are recoverable by scanning the next frame."""
    if result.reason_code == ReasonCode.NO_FACE_DETECTED:
        return True
    return result.reason_code == ReasonCode.VERIFICATION_FAILED and result.face_mismatch


def _failure(
    action: AttendanceAction,
    client_ts: str,
    reason: ReasonCode,
    message: str,
    **extra,
) -> VerificationResult:
    return VerificationResult(
        success=False,
        action=action,
        client_ts=client_ts,
        geo_status=extra.pop("geo_status", GeoStatus.LOCATION_UNAVAILABLE),
        sync_state=SyncState.FAILED,
        reason_code=reason,
        message=message,
        **extra,
    )


@dataclass
class FaceGateResult:
    ok: bool
    result: Optional[VerificationResult] = None
    detection: Optional[FaceDetection] = None
    match: Optional[MatchResult] = None
    staff_id: Optional[str] = None


def verify_against_active_enrollment(
    runtime: EmbeddingRuntime,
    store: DocumentStore,
    staff_id: str,
    action: AttendanceAction,
    frame: np.ndarray,
    threshold: float,
    client_ts: str,
) -> FaceGateResult:
    """Match the frame's face against the staff member's ACTIVE enrollment."""
    profile = load_enrollment_profile(store, staff_id)
    if profile is None or not profile.is_active:
        return FaceGateResult(
            ok=False,
            result=_failure(
                action,
                client_ts,
                ReasonCode.VERIFICATION_FAILED,
                "No active enrollment profile. Please complete face registration first.",
            ),
        )
    detection = runtime.detect(frame)
    if detection is None:
        return FaceGateResult(
            ok=False,
            result=_failure(
                action,
                client_ts,
                ReasonCode.NO_FACE_DETECTED,
                "No face detected. Please align face and retry.",
            ),
        )
    match = match_face([profile.to_face_profile()], detection.embedding, threshold)
    if not match.matched:
        return FaceGateResult(
            ok=False,
            detection=detection,
            match=match,
            result=_failure(
                action,
                client_ts,
                ReasonCode.VERIFICATION_FAILED,
                f"Face mismatch. Distance {match.distance:.3f} exceeds threshold {match.threshold:.3f}.",
                match_distance=match.distance,
                face_mismatch=True,
            ),
        )
    return FaceGateResult(ok=True, detection=detection, match=match, staff_id=profile.staff_id)


@dataclass
class VerificationAttempt:
    face_state: FaceState
    result: Optional[VerificationResult] = None
    retryable: bool = False
    message: str = ""

    @property
    def terminal(self) -> bool:
        return self.result is not None


def _action_label(action: AttendanceAction) -> str:
    return "Time In" if action == AttendanceAction.IN else "Time Out"


class VerificationPipeline:
    def __init__(
        self,
        runtime: EmbeddingRuntime,
        store: DocumentStore,
        staff_id: str,
        geolocation: Optional[GeolocationProvider] = None,
        clock=None,
        policy: Optional[PolicyConfig] = None,
        lock: Optional[SubmissionLock] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        device_id: Optional[str] = None,
        office_name: Optional[str] = None,
    ) -> None:
        self.runtime = runtime
        self.store = store
        self.staff_id = staff_id
        self.geolocation = geolocation
        self.clock = clock or SystemClock()
        self.policy = policy or PolicyConfig()
        self.lock = lock or verify_submission_lock
        self.id_factory = id_factory
        self.device_id = device_id
        self.office_name = office_name or self.policy.office_name

    def _now_iso(self) -> str:
        return to_iso(self.clock.now())

    def attempt(self, action: AttendanceAction, frame: Optional[np.ndarray]) -> VerificationAttempt:
        key = action.value
        if not self.lock.acquire(key):
            LOGGER.debug("Verification for %s already in flight; skipping", key)
            return VerificationAttempt(face_state=FaceState.SCANNING, retryable=True, message="busy")
        try:
            return self._run(action, frame)
        except ModelLoadError as exc:
            return self._fatal(action, ReasonCode.MODEL_LOAD_FAILED, str(exc))
        except CameraUnavailableError as exc:
            return self._fatal(action, ReasonCode.CAMERA_UNAVAILABLE, str(exc))
        except EvidenceCaptureError as exc:
            return self._fatal(action, ReasonCode.EVIDENCE_CAPTURE_FAILED, str(exc))
        except StoreError as exc:
            return self._fatal(action, ReasonCode.PERSIST_FAILED, str(exc))
        except Exception as exc:
            LOGGER.exception("Verification attempt for %s failed", key)
            return self._fatal(action, ReasonCode.VERIFICATION_FAILED, str(exc) or "Verification failed.")
        finally:
            self.lock.release(key)

    def _fatal(self, action: AttendanceAction, reason: ReasonCode, message: str) -> VerificationAttempt:
        LOGGER.warning("Verification %s failed: %s (%s)", action.value, reason.value, message)
        return VerificationAttempt(
            face_state=FaceState.SCANNING,
            result=_failure(action, self._now_iso(), reason, message),
        )

    def _run(self, action: AttendanceAction, frame: Optional[np.ndarray]) -> VerificationAttempt:
        if frame is None or frame.size == 0:
            raise CameraUnavailableError("Camera frame unavailable. Check permission and retry.")

        gate = verify_against_active_enrollment(
            self.runtime,
            self.store,
            self.staff_id,
            action,
            frame,
            self.policy.match_threshold,
            self._now_iso(),
        )
        if not gate.ok:
            assert gate.result is not None
            if is_retryable(gate.result):
                state = FaceState.MISMATCH if gate.result.face_mismatch else FaceState.SCANNING
                return VerificationAttempt(face_state=state, retryable=True, message=gate.result.message)
            return VerificationAttempt(face_state=FaceState.SCANNING, result=gate.result)
        assert gate.match is not None and gate.detection is not None

        cooldown = check_action_cooldown(
            self.store,
            action,
            self.clock,
            self.policy.cooldown_sec,
            staff_id=gate.staff_id,
        )
        if not cooldown.allowed:
            return VerificationAttempt(
                face_state=FaceState.MATCHED,
                result=_failure(
                    action,
                    self._now_iso(),
                    ReasonCode.COOLDOWN_ACTIVE,
                    f"Cooldown active. Please wait {cooldown.remaining_sec}s.",
                    geo_status=cooldown.last_event.geo_status if cooldown.last_event else GeoStatus.LOCATION_UNAVAILABLE,
                    remaining_sec=cooldown.remaining_sec,
                    match_distance=gate.match.distance,
                ),
            )

        geo = capture_geolocation(self.geolocation, self.policy.geofence)
        event_id = self.id_factory()
        client_ts = self._now_iso()
        device_id = self.device_id or get_or_create_device_id(self.store)
        evidence = capture_evidence(
            frame,
            EvidenceMeta(
                client_ts=client_ts,
                office_name=self.office_name,
                device_id=device_id,
                lat=geo.lat,
                lng=geo.lng,
                accuracy_m=geo.accuracy_m,
            ),
            self.policy.evidence,
        )
        event = AttendanceEvent(
            event_id=event_id,
            staff_id=gate.staff_id or self.staff_id,
            device_id=device_id,
            action=action,
            client_ts=client_ts,
            sync_state=SyncState.LOCAL_ONLY,
            verify_score=gate.detection.score,
            geo_status=geo.status,
            distance_m=geo.distance_m,
            lat=geo.lat,
            lng=geo.lng,
            accuracy_m=geo.accuracy_m,
            evidence=evidence.data,
        )
        status = save_attendance_event(self.store, event)
        if status == SaveStatus.DUPLICATE:
            reason = ReasonCode.DUPLICATE_IGNORED
            message = f"{_action_label(action)} duplicate request ignored."
        else:
            reason = ReasonCode.SUCCESS_RECORDED
            message = (
                f"{_action_label(action)} recorded locally with evidence "
                f"({int(round(evidence.bytes / 1024))}KB)."
            )
        return VerificationAttempt(
            face_state=FaceState.MATCHED,
            result=VerificationResult(
                success=True,
                action=action,
                client_ts=client_ts,
                geo_status=geo.status,
                sync_state=SyncState.LOCAL_ONLY,
                reason_code=reason,
                message=message,
                event_id=event_id,
                match_distance=gate.match.distance,
            ),
        )
