"""Tests for the memory and local store backends."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import make_record

from imageseal.config import EngineConfig
from imageseal.errors import BlobNotFound, KeyStoreFailure, StorageFailure
from imageseal.stores import StoreBundle, open_stores
from imageseal.stores.local import LocalBlobStore, LocalKeyProfileStore, LocalRecordStore
from imageseal.stores.memory import MemoryBlobStore, MemoryKeyProfileStore, MemoryRecordStore


@pytest.fixture(params=["memory", "local"])
def stores(request, tmp_path: Path) -> StoreBundle:
    """Both backends behind the same interfaces."""
    if request.param == "local":
        return StoreBundle(
            blobs=LocalBlobStore(tmp_path),
            records=LocalRecordStore(tmp_path),
            keys=LocalKeyProfileStore(tmp_path),
        )
    return StoreBundle(
        blobs=MemoryBlobStore(),
        records=MemoryRecordStore(),
        keys=MemoryKeyProfileStore(),
    )


class TestBlobStore:
    """Test blob storage semantics."""

    def test_put_get_delete(self, stores):
        """Test the blob lifecycle."""
        path = stores.blobs.put("alice", "photo.png", b"bytes")

        assert path.startswith("alice/")
        assert path.endswith("-photo.png")
        assert stores.blobs.get(path) == b"bytes"

        stores.blobs.delete(path)
        with pytest.raises(BlobNotFound):
            stores.blobs.get(path)

    def test_missing_blob(self, stores):
        """Test missing blobs raise BlobNotFound."""
        with pytest.raises(BlobNotFound):
            stores.blobs.get("alice/0-missing.png")
        with pytest.raises(BlobNotFound):
            stores.blobs.delete("alice/0-missing.png")

    def test_paths_are_unique(self, stores):
        """Test two uploads of the same name get distinct paths."""
        first = stores.blobs.put("alice", "photo.png", b"one")
        second = stores.blobs.put("alice", "photo.png", b"two")
        assert first != second
        assert stores.blobs.get(first) == b"one"
        assert stores.blobs.get(second) == b"two"


class TestRecordStore:
    """Test owner-scoped record lookups."""

    def test_lookups_are_owner_scoped(self, stores):
        """Test every lookup filters by owner."""
        record = make_record("alice", "photo.png", "a" * 64)
        stores.records.insert(record)

        assert stores.records.find_by_fingerprint("a" * 64, "alice") == record
        assert stores.records.find_by_fingerprint("a" * 64, "bob") is None
        assert stores.records.find_by_name("photo.png", "alice") == record
        assert stores.records.find_by_name("photo.png", "bob") is None
        assert stores.records.get(record.id, "alice") == record
        assert stores.records.get(record.id, "bob") is None

    def test_newest_match(self, stores):
        """Test the newest of several matches is returned."""
        older = make_record("alice", "photo.png", "a" * 64, created_at="2024-01-01T00:00:00+00:00")
        newer = make_record("alice", "photo.png", "b" * 64, created_at="2024-02-01T00:00:00+00:00")
        stores.records.insert(older)
        stores.records.insert(newer)

        assert stores.records.find_by_name("photo.png", "alice").id == newer.id
        assert [r.id for r in stores.records.list_by_owner("alice")] == [newer.id, older.id]

    def test_duplicate_id(self, stores):
        """Test inserting the same id twice fails."""
        record = make_record("alice", "photo.png", "a" * 64)
        stores.records.insert(record)
        with pytest.raises(StorageFailure):
            stores.records.insert(record)

    def test_delete_owner_scoped(self, stores):
        """Test only the owner can delete a record."""
        record = make_record("alice", "photo.png", "a" * 64)
        stores.records.insert(record)

        assert stores.records.delete(record.id, "bob") is False
        assert stores.records.delete(record.id, "alice") is True
        assert stores.records.delete(record.id, "alice") is False
        assert stores.records.list_by_owner("alice") == []


class TestKeyProfileStore:
    """Test the per-user uniqueness guard."""

    def test_create_only_once(self, stores):
        """Test insert-if-absent semantics."""
        assert stores.keys.create_public_key("alice", "key-1") is True
        assert stores.keys.create_public_key("alice", "key-2") is False
        assert stores.keys.get_public_key("alice") == "key-1"

    def test_replace_compare_and_swap(self, stores):
        """Test replace only succeeds against the observed value."""
        stores.keys.upsert_public_key("alice", "placeholder")

        assert stores.keys.replace_public_key("alice", "stale", "key-1") is False
        assert stores.keys.replace_public_key("alice", "placeholder", "key-1") is True
        assert stores.keys.replace_public_key("alice", "placeholder", "key-2") is False
        assert stores.keys.get_public_key("alice") == "key-1"

    def test_replace_missing(self, stores):
        """Test replace never creates a record."""
        assert stores.keys.replace_public_key("alice", "", "key-1") is False
        assert stores.keys.get_record("alice") is None

    def test_upsert(self, stores):
        """Test unconditional overwrite updates the timestamp."""
        stores.keys.upsert_public_key("alice", "key-1")
        created = stores.keys.get_record("alice")
        stores.keys.upsert_public_key("alice", "key-2")
        updated = stores.keys.get_record("alice")

        assert updated.public_key == "key-2"
        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at

    def test_missing_user(self, stores):
        """Test unknown users have no record and no key."""
        assert stores.keys.get_record("nobody") is None
        assert stores.keys.get_public_key("nobody") is None


class TestLocalBackend:
    """Test local filesystem specifics."""

    def test_persists_across_instances(self, tmp_path: Path):
        """Test a second store instance sees the first one's writes."""
        record = make_record("alice", "photo.png", "a" * 64)
        LocalRecordStore(tmp_path).insert(record)
        LocalKeyProfileStore(tmp_path).upsert_public_key("alice", "key-1")

        assert LocalRecordStore(tmp_path).get(record.id, "alice") == record
        assert LocalKeyProfileStore(tmp_path).get_public_key("alice") == "key-1"

    def test_blob_layout(self, tmp_path: Path):
        """Test blobs land under blobs/<owner>/."""
        path = LocalBlobStore(tmp_path).put("alice", "photo.png", b"bytes")
        assert (tmp_path / "blobs" / path).read_bytes() == b"bytes"

    def test_blob_name_sanitized(self, tmp_path: Path):
        """Test owner and name cannot escape the store root."""
        store = LocalBlobStore(tmp_path)
        path = store.put("../alice", "../../photo.png", b"bytes")
        assert ".." not in path
        assert store.get(path) == b"bytes"

    def test_path_escape_rejected(self, tmp_path: Path):
        """Test reading outside the store root fails."""
        (tmp_path / "secret.txt").write_text("secret")
        with pytest.raises(StorageFailure, match="escapes"):
            LocalBlobStore(tmp_path).get("../secret.txt")

    def test_corrupt_records_file(self, tmp_path: Path):
        """Test an unreadable records index raises StorageFailure."""
        (tmp_path / "records.json").write_text("{not json")
        with pytest.raises(StorageFailure):
            LocalRecordStore(tmp_path).list_by_owner("alice")

    def test_corrupt_keys_file(self, tmp_path: Path):
        """Test an unreadable keys index raises KeyStoreFailure."""
        (tmp_path / "keys.json").write_text("{not json")
        with pytest.raises(KeyStoreFailure):
            LocalKeyProfileStore(tmp_path).get_record("alice")


class TestOpenStores:
    """Test backend selection."""

    def test_memory(self):
        """Test the default backend is in-memory."""
        bundle = open_stores(EngineConfig())
        assert isinstance(bundle.records, MemoryRecordStore)

    def test_local(self, tmp_path: Path):
        """Test the local backend creates its root."""
        root = tmp_path / "store"
        bundle = open_stores(EngineConfig(store_backend="local", store_dir=root))
        assert isinstance(bundle.keys, LocalKeyProfileStore)
        assert root.is_dir()
