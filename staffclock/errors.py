"""Exception hierarchy shared by the capture, review and verification layers."""

from __future__ import annotations


class StaffClockError(Exception):
    """Base class for staffclock failures."""


class ModelLoadError(StaffClockError):
    """The embedding runtime could not be loaded or initialised."""


class CameraUnavailableError(StaffClockError):
    """No usable frame could be obtained from the camera."""


class EvidenceCaptureError(StaffClockError):
    """Evidence image could not be rendered or encoded."""


class StoreError(StaffClockError):
    """Document store read/write failure."""


class ConflictError(StoreError):
    """A write was rejected because its revision is stale or the id already exists."""

    def __init__(self, doc_id: str, message: str = "") -> None:
        super().__init__(message or f"Document update conflict: {doc_id}")
        self.doc_id = doc_id


class NotFoundError(StoreError):
    """Requested document does not exist."""

    def __init__(self, doc_id: str) -> None:
        super().__init__(f"Document not found: {doc_id}")
        self.doc_id = doc_id
