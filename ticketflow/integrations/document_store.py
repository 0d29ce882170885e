"""Document blob store.

Architecture:
  DocumentStore is the only path from services to file bytes. Services
  record the returned ``storage_key`` in the ``documents`` table; the store
  knows nothing about tickets, steps or flags.
    - LocalDocumentStore   — files under DOCUMENT_STORAGE_PATH
    - InMemoryDocumentStore — dict-backed, used by the test suite

Failure contract:
  Every backend error is re-raised as ``DependencyUnavailable`` so callers
  can roll back and the HTTP layer answers 503.

Usage:
    from ticketflow.integrations.document_store import get_document_store

    key = get_document_store().upload(upload, owner_key="tickets/7/steps/3")
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from flask import Flask, current_app
from werkzeug.utils import secure_filename

from ticketflow.core.exceptions import DependencyUnavailable, NotFoundError

logger = logging.getLogger(__name__)

_EXTENSION_KEY = "ticketflow.document_store"


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UploadedFile:
    """File bytes plus the client-supplied name, detached from the request."""

    file_name: str
    data: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_storage(cls, storage) -> UploadedFile:
        """Build from a werkzeug ``FileStorage`` (``request.files[...]``)."""
        return cls(
            file_name=storage.filename or "upload.bin",
            data=storage.read(),
            content_type=storage.mimetype or None,
        )


# ── Store interface ───────────────────────────────────────────────────────────


class DocumentStore(ABC):
    """Abstract blob store: upload, download and delete by key."""

    def make_key(self, file_name: str, owner_key: str) -> str:
        safe = secure_filename(file_name) or "file"
        return f"{owner_key.strip('/')}/{uuid.uuid4().hex}-{safe}"

    @abstractmethod
    def upload(self, upload: UploadedFile, owner_key: str) -> str:
        """Persist the bytes and return the storage key."""

    @abstractmethod
    def download(self, storage_key: str) -> bytes:
        """Return the stored bytes or raise NotFoundError."""

    @abstractmethod
    def delete(self, storage_key: str) -> None:
        """Remove the blob. Deleting an absent key is a no-op."""


class LocalDocumentStore(DocumentStore):
    """Filesystem-backed store rooted at ``root``."""

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def _path(self, storage_key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, storage_key))
        if not path.startswith(self.root + os.sep):
            raise NotFoundError(resource="Document blob", resource_id=storage_key)
        return path

    def upload(self, upload: UploadedFile, owner_key: str) -> str:
        key = self.make_key(upload.file_name, owner_key)
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(upload.data)
        except OSError as exc:
            logger.error("Document upload failed key=%s: %s", key, exc)
            raise DependencyUnavailable("document_store", f"Upload failed: {exc}") from exc
        logger.debug("Stored document key=%s size=%d", key, upload.size)
        return key

    def download(self, storage_key: str) -> bytes:
        path = self._path(storage_key)
        if not os.path.exists(path):
            raise NotFoundError(resource="Document blob", resource_id=storage_key)
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            raise DependencyUnavailable("document_store", f"Download failed: {exc}") from exc

    def delete(self, storage_key: str) -> None:
        path = self._path(storage_key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise DependencyUnavailable("document_store", f"Delete failed: {exc}") from exc


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store for tests and local experiments.

    ``fail_next`` makes the next upload raise DependencyUnavailable, which
    lets tests exercise the rollback path.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.fail_next = False

    def upload(self, upload: UploadedFile, owner_key: str) -> str:
        if self.fail_next:
            self.fail_next = False
            raise DependencyUnavailable("document_store", "Upload failed: store offline")
        key = self.make_key(upload.file_name, owner_key)
        with self._lock:
            self._blobs[key] = upload.data
        return key

    def download(self, storage_key: str) -> bytes:
        with self._lock:
            if storage_key not in self._blobs:
                raise NotFoundError(resource="Document blob", resource_id=storage_key)
            return self._blobs[storage_key]

    def delete(self, storage_key: str) -> None:
        with self._lock:
            self._blobs.pop(storage_key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._blobs)

    def clear(self) -> None:
        with self._lock:
            self._blobs.clear()
        self.fail_next = False


# ── App wiring ────────────────────────────────────────────────────────────────


def init_document_store(app: Flask) -> DocumentStore:
    """Create the configured backend and register it on ``app.extensions``."""
    backend = app.config.get("DOCUMENT_STORE_BACKEND", "local")
    if backend == "memory":
        store: DocumentStore = InMemoryDocumentStore()
    elif backend == "local":
        store = LocalDocumentStore(app.config["DOCUMENT_STORAGE_PATH"])
    else:
        raise RuntimeError(f"Unknown DOCUMENT_STORE_BACKEND: {backend}")
    app.extensions[_EXTENSION_KEY] = store
    app.logger.debug("Document store initialised: %s", type(store).__name__)
    return store


def get_document_store() -> DocumentStore:
    return current_app.extensions[_EXTENSION_KEY]
