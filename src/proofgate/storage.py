"""
Persistence Layer.

Two abstract stores back every durable record in proofgate:

- ArtifactStore: content-addressed artifact bytes (SHA-256 of the bytes)
- RecordStore: JSON records keyed by (collection, key)

RecordStore.create() is write-once and backs the immutable records
(evidence bundles, red flag reports, verification reports, root cause
analyses, fix attempts). RecordStore.put() upserts and backs mutable
records (WorkflowState, fix learnings).

Both come in a file-backed flavour, written with tmp file + os.replace
for crash safety, and an in-memory flavour for tests and ephemeral use.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from proofgate.errors import RecordExistsError, RecordNotFoundError

logger = logging.getLogger(__name__)


def content_hash(content: bytes) -> str:
    """SHA-256 hex digest of artifact bytes."""
    return hashlib.sha256(content).hexdigest()


RUN_KEY_SEPARATOR = "__"


def record_key(run_id: str, attempt: int) -> str:
    """Key for records stored per (run id, attempt number)."""
    return f"{run_id}{RUN_KEY_SEPARATOR}{attempt:04d}"


def sanitize_key(key: str) -> str:
    """Sanitize a record key for use as a filename.

    Replaces unsafe characters with underscores and limits length.
    """
    safe = re.sub(r"[<>:\"/\\|?*\s]", "_", key)
    if len(safe) > 200:
        safe = safe[-200:]
    return safe


def _atomic_write(path: Path, content: bytes) -> None:
    """Atomically write content to a file using tmp file + rename."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")

    try:
        tmp_path.write_bytes(content)
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
        logger.error(f"Failed to write {path}: {e}")
        raise


# =============================================================================
# Artifact stores
# =============================================================================


class ArtifactStore(ABC):
    """Content-addressed storage for artifact bytes."""

    @abstractmethod
    def put(self, content: bytes) -> tuple[str, str]:
        """Store bytes.

        Returns:
            Tuple of (content hash, storage path)
        """

    @abstractmethod
    def get(self, digest: str) -> bytes:
        """Read bytes by content hash.

        Raises:
            RecordNotFoundError: If no artifact has the hash
        """

    @abstractmethod
    def exists(self, digest: str) -> bool:
        """Whether bytes with the hash are stored."""


class FileArtifactStore(ArtifactStore):
    """Artifact store on the local filesystem.

    Layout: {base_dir}/artifacts/{hash[:2]}/{hash}
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._root = Path(base_dir) / "artifacts"
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, digest: str) -> Path:
        return self._root / digest[:2] / digest

    def put(self, content: bytes) -> tuple[str, str]:
        digest = content_hash(content)
        path = self._path(digest)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, content)
        return digest, str(path)

    def get(self, digest: str) -> bytes:
        path = self._path(digest)
        if not path.exists():
            raise RecordNotFoundError(f"Artifact not found: {digest}", "artifacts", digest)
        return path.read_bytes()

    def exists(self, digest: str) -> bool:
        return self._path(digest).exists()


class MemoryArtifactStore(ArtifactStore):
    """In-memory artifact store."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    def put(self, content: bytes) -> tuple[str, str]:
        digest = content_hash(content)
        self._blobs.setdefault(digest, bytes(content))
        return digest, f"memory://artifacts/{digest}"

    def get(self, digest: str) -> bytes:
        try:
            return self._blobs[digest]
        except KeyError:
            raise RecordNotFoundError(f"Artifact not found: {digest}", "artifacts", digest) from None

    def exists(self, digest: str) -> bool:
        return digest in self._blobs


# =============================================================================
# Record stores
# =============================================================================


class RecordStore(ABC):
    """Keyed JSON record store partitioned into collections."""

    @abstractmethod
    def create(self, collection: str, key: str, data: dict[str, Any]) -> None:
        """Write a record that must not exist yet.

        Raises:
            RecordExistsError: If the key is already present
        """

    @abstractmethod
    def put(self, collection: str, key: str, data: dict[str, Any]) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Read a record, None if absent."""

    @abstractmethod
    def keys(self, collection: str, prefix: str = "") -> list[str]:
        """Sorted keys in a collection, optionally filtered by prefix."""

    def exists(self, collection: str, key: str) -> bool:
        return self.get(collection, key) is not None

    def list(self, collection: str, prefix: str = "") -> list[dict[str, Any]]:
        """All records whose key starts with prefix, in key order."""
        records = []
        for key in self.keys(collection, prefix):
            data = self.get(collection, key)
            if data is not None:
                records.append(data)
        return records

    def run_records(self, collection: str, run_id: str) -> list[dict[str, Any]]:
        """Per-attempt records of exactly one run, in attempt order.

        The key prefix only narrows the scan; rows are matched on their own
        `run_id` so a run never sees records of another run whose id it
        prefixes.
        """
        return [
            data
            for data in self.list(collection, prefix=f"{run_id}{RUN_KEY_SEPARATOR}")
            if data.get("run_id") == run_id
        ]


class FileRecordStore(RecordStore):
    """Record store writing one JSON file per record.

    Layout: {base_dir}/records/{collection}/{key}.json
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._root = Path(base_dir) / "records"
        self._root.mkdir(parents=True, exist_ok=True)
        # Serializes create() so the existence check and write are one step
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, collection: str, key: str) -> Path:
        directory = self._root / sanitize_key(collection)
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{sanitize_key(key)}.json"

    @staticmethod
    def _encode(data: dict[str, Any]) -> bytes:
        return json.dumps(data, indent=2, sort_keys=True, default=str).encode("utf-8")

    def create(self, collection: str, key: str, data: dict[str, Any]) -> None:
        with self._lock:
            path = self._path(collection, key)
            if path.exists():
                raise RecordExistsError(
                    f"Record already exists: {collection}/{key}", collection, key
                )
            _atomic_write(path, self._encode(data))

    def put(self, collection: str, key: str, data: dict[str, Any]) -> None:
        _atomic_write(self._path(collection, key), self._encode(data))

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        path = self._path(collection, key)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def read_bytes(self, collection: str, key: str) -> bytes:
        """Raw stored bytes of a record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        path = self._path(collection, key)
        if not path.exists():
            raise RecordNotFoundError(f"Record not found: {collection}/{key}", collection, key)
        return path.read_bytes()

    def keys(self, collection: str, prefix: str = "") -> list[str]:
        directory = self._root / sanitize_key(collection)
        if not directory.exists():
            return []
        safe_prefix = sanitize_key(prefix) if prefix else ""
        return sorted(
            p.stem for p in directory.glob("*.json") if p.stem.startswith(safe_prefix)
        )


class MemoryRecordStore(RecordStore):
    """In-memory record store.

    Records are deep-copied in and out so callers never share state with
    the store, mirroring the isolation of the file store.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def create(self, collection: str, key: str, data: dict[str, Any]) -> None:
        records = self._collections.setdefault(collection, {})
        if key in records:
            raise RecordExistsError(f"Record already exists: {collection}/{key}", collection, key)
        records[key] = copy.deepcopy(data)

    def put(self, collection: str, key: str, data: dict[str, Any]) -> None:
        self._collections.setdefault(collection, {})[key] = copy.deepcopy(data)

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        data = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(data) if data is not None else None

    def keys(self, collection: str, prefix: str = "") -> list[str]:
        return sorted(k for k in self._collections.get(collection, {}) if k.startswith(prefix))


def create_stores(backend: str, base_dir: str | Path) -> tuple[ArtifactStore, RecordStore]:
    """Build the artifact and record store pair for a storage backend.

    Args:
        backend: "file" or "memory"
        base_dir: Root directory for the file backend

    Returns:
        Tuple of (artifact store, record store)
    """
    if backend == "memory":
        return MemoryArtifactStore(), MemoryRecordStore()
    if backend == "file":
        return FileArtifactStore(base_dir), FileRecordStore(base_dir)
    raise ValueError(f"Unknown storage backend: {backend}")
