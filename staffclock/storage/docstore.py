"""Revision-checked document stores used for profiles, events and policy."""

from __future__ import annotations

import copy
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

from staffclock.errors import ConflictError, NotFoundError, StoreError
from staffclock.io_utils import dump_json, ensure_dir, load_json

LOGGER = logging.getLogger("staffclock.storage")

Document = Dict[str, Any]


class DocumentStore(Protocol):
    def get(self, doc_id: str) -> Document: ...

    def put(self, doc: Document) -> str: ...

    def all_docs(self) -> List[Document]: ...


def _next_revision(current: Optional[str]) -> str:
    generation = 0
    if current:
        head = current.split("-", 1)[0]
        generation = int(head) if head.isdigit() else 0
    return f"{generation + 1}-{uuid.uuid4().hex}"


def _check_revision(doc_id: str, existing: Optional[Document], base_rev: Optional[str]) -> None:
    """Compare-and-swap guard: the write must name the revision it was based on."""
    if existing is None:
        if base_rev:
            raise ConflictError(doc_id, f"Revision {base_rev} given for new document {doc_id}")
        return
    if base_rev != existing.get("_rev"):
        raise ConflictError(doc_id)


class MemoryDocumentStore:
    """In-process document store with optimistic concurrency."""

    def __init__(self) -> None:
        self._docs: Dict[str, Document] = {}

    def get(self, doc_id: str) -> Document:
        doc = self._docs.get(doc_id)
        if doc is None:
            raise NotFoundError(doc_id)
        return copy.deepcopy(doc)

    def put(self, doc: Document) -> str:
        doc_id = doc.get("_id")
        if not doc_id:
            raise StoreError("Document is missing _id")
        existing = self._docs.get(doc_id)
        _check_revision(doc_id, existing, doc.get("_rev"))
        stored = copy.deepcopy(doc)
        stored["_rev"] = _next_revision(existing.get("_rev") if existing else None)
        self._docs[doc_id] = stored
        return stored["_rev"]

    def all_docs(self) -> List[Document]:
        return [copy.deepcopy(self._docs[key]) for key in sorted(self._docs)]

    def __len__(self) -> int:
        return len(self._docs)


class JsonDocumentStore:
    """Directory-backed store: one JSON file per document."""

    def __init__(self, root: Path) -> None:
        self.root = ensure_dir(Path(root))

    def _path(self, doc_id: str) -> Path:
        safe = quote(doc_id, safe="")
        return self.root / f"{safe}.json"

    def _read(self, doc_id: str) -> Optional[Document]:
        path = self._path(doc_id)
        if not path.exists():
            return None
        try:
            return load_json(path)
        except (OSError, ValueError) as exc:
            raise StoreError(f"Unable to read document {doc_id}: {exc}") from exc

    def get(self, doc_id: str) -> Document:
        doc = self._read(doc_id)
        if doc is None:
            raise NotFoundError(doc_id)
        return doc

    def put(self, doc: Document) -> str:
        doc_id = doc.get("_id")
        if not doc_id:
            raise StoreError("Document is missing _id")
        existing = self._read(doc_id)
        _check_revision(doc_id, existing, doc.get("_rev"))
        stored = dict(doc)
        stored["_rev"] = _next_revision(existing.get("_rev") if existing else None)
        try:
            dump_json(self._path(doc_id), stored)
        except (OSError, TypeError) as exc:
            raise StoreError(f"Unable to write document {doc_id}: {exc}") from exc
        LOGGER.debug("Stored %s rev=%s", doc_id, stored["_rev"])
        return stored["_rev"]

    def all_docs(self) -> List[Document]:
        docs: List[Document] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                docs.append(load_json(path))
            except (OSError, ValueError) as exc:
                LOGGER.warning("Skipping unreadable document %s: %s", path, exc)
        return docs


def get_or_none(store: DocumentStore, doc_id: str) -> Optional[Document]:
    """Fetch a document, mapping NotFoundError to None."""
    try:
        return store.get(doc_id)
    except NotFoundError:
        return None
