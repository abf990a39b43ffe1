"""
Unit tests for the persistence layer.

Tests cover:
- Content addressing of artifact bytes (file and memory stores)
- Write-once create() vs upsert put() on record stores
- Prefix listing, per-run reads and key sanitization
- Store factory by backend name
"""

import pytest

from proofgate.errors import RecordExistsError, RecordNotFoundError
from proofgate.storage import (
    FileArtifactStore,
    FileRecordStore,
    MemoryArtifactStore,
    MemoryRecordStore,
    content_hash,
    create_stores,
    record_key,
    sanitize_key,
)


@pytest.fixture(params=["memory", "file"])
def stores(request, tmp_path):
    """Artifact/record store pair for each backend."""
    return create_stores(request.param, tmp_path)


@pytest.mark.evidence
class TestArtifactStore:
    """Tests for content-addressed artifact storage."""

    def test_put_returns_sha256_of_bytes(self, stores):
        artifacts, _ = stores
        digest, path = artifacts.put(b"hello")
        assert digest == content_hash(b"hello")
        assert len(digest) == 64
        assert digest in path

    def test_identical_bytes_share_one_address(self, stores):
        artifacts, _ = stores
        first, _ = artifacts.put(b"same bytes")
        second, _ = artifacts.put(b"same bytes")
        assert first == second
        assert artifacts.get(first) == b"same bytes"

    def test_get_missing_raises(self, stores):
        artifacts, _ = stores
        with pytest.raises(RecordNotFoundError):
            artifacts.get("0" * 64)
        assert not artifacts.exists("0" * 64)

    def test_file_layout_is_sharded_by_prefix(self, tmp_path):
        store = FileArtifactStore(tmp_path)
        digest, path = store.put(b"payload")
        assert path.endswith(f"artifacts/{digest[:2]}/{digest}")


@pytest.mark.evidence
class TestRecordStore:
    """Tests for keyed JSON record storage."""

    def test_create_is_write_once(self, stores):
        _, records = stores
        records.create("bundles", "run-1__0001", {"a": 1})
        with pytest.raises(RecordExistsError) as exc_info:
            records.create("bundles", "run-1__0001", {"a": 2})
        assert exc_info.value.collection == "bundles"
        assert records.get("bundles", "run-1__0001") == {"a": 1}

    def test_put_upserts(self, stores):
        _, records = stores
        records.put("states", "run-1", {"stage": "pending"})
        records.put("states", "run-1", {"stage": "executing"})
        assert records.get("states", "run-1") == {"stage": "executing"}

    def test_get_absent_returns_none(self, stores):
        _, records = stores
        assert records.get("states", "nope") is None
        assert not records.exists("states", "nope")

    def test_keys_and_list_filter_by_prefix(self, stores):
        _, records = stores
        records.create("bundles", record_key("run-1", 2), {"attempt": 2})
        records.create("bundles", record_key("run-1", 1), {"attempt": 1})
        records.create("bundles", record_key("run-2", 1), {"attempt": 1, "other": True})

        assert records.keys("bundles", prefix="run-1__") == ["run-1__0001", "run-1__0002"]
        assert [r["attempt"] for r in records.list("bundles", prefix="run-1__")] == [1, 2]
        assert records.keys("missing") == []

    def test_run_records_ignore_runs_sharing_the_prefix(self, stores):
        _, records = stores
        records.create("bundles", record_key("run", 1), {"run_id": "run", "attempt": 1})
        for attempt in (1, 2, 3):
            records.create("bundles", record_key("run__b", attempt), {"run_id": "run__b", "attempt": attempt})

        assert records.run_records("bundles", "run") == [{"run_id": "run", "attempt": 1}]
        assert [r["attempt"] for r in records.run_records("bundles", "run__b")] == [1, 2, 3]
        assert records.run_records("bundles", "ru") == []

    def test_memory_store_isolates_callers(self):
        records = MemoryRecordStore()
        data = {"nested": {"value": 1}}
        records.put("c", "k", data)
        data["nested"]["value"] = 99
        loaded = records.get("c", "k")
        loaded["nested"]["value"] = 42
        assert records.get("c", "k") == {"nested": {"value": 1}}

    def test_file_store_writes_json_files(self, tmp_path):
        records = FileRecordStore(tmp_path)
        records.create("states", "run/1", {"x": 1})
        assert (tmp_path / "records" / "states" / "run_1.json").exists()
        assert b'"x": 1' in records.read_bytes("states", "run/1")
        with pytest.raises(RecordNotFoundError):
            records.read_bytes("states", "other")

    def test_file_store_leaves_no_tmp_files(self, tmp_path):
        records = FileRecordStore(tmp_path)
        records.put("states", "run-1", {"stage": "pending"})
        records.put("states", "run-1", {"stage": "executing"})
        assert not list((tmp_path / "records" / "states").glob("*.tmp"))


@pytest.mark.evidence
class TestHelpers:
    """Tests for key helpers and the store factory."""

    def test_record_key_pads_attempt(self):
        assert record_key("run-1", 3) == "run-1__0003"

    def test_sanitize_key_replaces_unsafe_characters(self):
        assert sanitize_key('a/b:c*d?e "f"') == "a_b_c_d_e__f_"

    def test_sanitize_key_truncates(self):
        assert len(sanitize_key("x" * 500)) == 200

    def test_create_stores_memory(self, tmp_path):
        artifacts, records = create_stores("memory", tmp_path)
        assert isinstance(artifacts, MemoryArtifactStore)
        assert isinstance(records, MemoryRecordStore)
        assert not (tmp_path / "records").exists()

    def test_create_stores_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_stores("s3", tmp_path)
