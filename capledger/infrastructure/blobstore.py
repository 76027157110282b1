"""
Opaque byte storage for attachment payloads.

Attachment rows only carry a ``blob_ref``; the bytes live here. Two backends:
a sharded directory tree and a process-local dict for tests.
"""

from __future__ import annotations

import hashlib
import os
import threading
import uuid
from pathlib import Path
from typing import Protocol

from .config import StorageConfig, get_settings
from .exceptions import BlobNotFoundError, StorageError, ValidationError
from .logging import get_logger

logger = get_logger(__name__)


class BlobStore(Protocol):
    def put(self, data: bytes, blob_id: str | None = None) -> str: ...

    def get(self, blob_id: str) -> bytes: ...

    def delete(self, blob_id: str) -> None: ...

    def exists(self, blob_id: str) -> bool: ...


def _new_blob_id() -> str:
    return uuid.uuid4().hex


def _check_blob_id(blob_id: str) -> str:
    if not blob_id or not blob_id.isalnum():
        raise ValidationError("blob_id", "must be a non-empty alphanumeric identifier", blob_id)
    return blob_id


class FileSystemBlobStore:
    """
    Blobs stored as ``<root>/<id[:2]>/<id>`` with a sha256 sidecar check on read.

    Example:
        >>> store = FileSystemBlobStore("./blobs")
        >>> ref = store.put(b"evidence")
        >>> store.get(ref)
        b'evidence'
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, blob_id: str) -> Path:
        blob_id = _check_blob_id(blob_id)
        return self.root / blob_id[:2] / blob_id

    def put(self, data: bytes, blob_id: str | None = None) -> str:
        blob_id = blob_id or _new_blob_id()
        path = self._path(blob_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
            path.with_suffix(".sha256").write_text(hashlib.sha256(data).hexdigest())
        except OSError as e:
            raise StorageError(str(e), "blob_put", {"blob_id": blob_id}) from e
        logger.debug(f"Stored blob {blob_id} ({len(data)} bytes)")
        return blob_id

    def get(self, blob_id: str) -> bytes:
        path = self._path(blob_id)
        if not path.exists():
            raise BlobNotFoundError(blob_id)
        data = path.read_bytes()
        checksum = path.with_suffix(".sha256")
        if checksum.exists() and checksum.read_text().strip() != hashlib.sha256(data).hexdigest():
            raise StorageError("checksum mismatch", "blob_get", {"blob_id": blob_id})
        return data

    def delete(self, blob_id: str) -> None:
        path = self._path(blob_id)
        for candidate in (path, path.with_suffix(".sha256")):
            candidate.unlink(missing_ok=True)

    def exists(self, blob_id: str) -> bool:
        return self._path(blob_id).exists()


class InMemoryBlobStore:
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, blob_id: str | None = None) -> str:
        blob_id = _check_blob_id(blob_id or _new_blob_id())
        with self._lock:
            self._blobs[blob_id] = bytes(data)
        return blob_id

    def get(self, blob_id: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[blob_id]
            except KeyError:
                raise BlobNotFoundError(blob_id) from None

    def delete(self, blob_id: str) -> None:
        with self._lock:
            self._blobs.pop(blob_id, None)

    def exists(self, blob_id: str) -> bool:
        with self._lock:
            return blob_id in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


def create_blob_store(config: StorageConfig | None = None) -> BlobStore:
    if config is None:
        config = get_settings().storage
    if config.backend == "memory":
        return InMemoryBlobStore()
    return FileSystemBlobStore(config.blob_dir)
