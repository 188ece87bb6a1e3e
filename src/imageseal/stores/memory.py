"""Process-local store backend.

Holds everything in dictionaries guarded by a lock. Suitable for tests and
single-process tools; nothing survives the process.
"""

from __future__ import annotations

import threading
import time

from imageseal.errors import BlobNotFound, StorageFailure
from imageseal.stores.base import (
    BlobStore,
    ImageRecord,
    KeyProfileStore,
    RecordStore,
    UserKeyRecord,
    newest,
    utc_now_iso,
)


class MemoryBlobStore(BlobStore):
    """Blob store backed by a dict of path -> bytes."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, owner_id: str, file_name: str, data: bytes) -> str:
        with self._lock:
            path = f"{owner_id}/{time.time_ns()}-{file_name}"
            self._blobs[path] = bytes(data)
        return path

    def get(self, path: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[path]
            except KeyError:
                raise BlobNotFound(f"No blob at {path}") from None

    def delete(self, path: str) -> None:
        with self._lock:
            if self._blobs.pop(path, None) is None:
                raise BlobNotFound(f"No blob at {path}")

    def __contains__(self, path: str) -> bool:
        return path in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class MemoryRecordStore(RecordStore):
    """Record store backed by a dict of id -> ImageRecord."""

    def __init__(self) -> None:
        self._records: dict[str, ImageRecord] = {}
        self._lock = threading.Lock()

    def insert(self, record: ImageRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise StorageFailure(f"Duplicate image id: {record.id}")
            self._records[record.id] = record

    def _owned(self, owner_id: str) -> list[ImageRecord]:
        return [r for r in self._records.values() if r.owner_user_id == owner_id]

    def find_by_fingerprint(self, fingerprint: str, owner_id: str) -> ImageRecord | None:
        with self._lock:
            return newest([r for r in self._owned(owner_id) if r.fingerprint == fingerprint])

    def find_by_name(self, file_name: str, owner_id: str) -> ImageRecord | None:
        with self._lock:
            return newest([r for r in self._owned(owner_id) if r.file_name == file_name])

    def get(self, image_id: str, owner_id: str) -> ImageRecord | None:
        with self._lock:
            record = self._records.get(image_id)
        if record is None or record.owner_user_id != owner_id:
            return None
        return record

    def delete(self, image_id: str, owner_id: str) -> bool:
        with self._lock:
            record = self._records.get(image_id)
            if record is None or record.owner_user_id != owner_id:
                return False
            del self._records[image_id]
            return True

    def list_by_owner(self, owner_id: str) -> list[ImageRecord]:
        with self._lock:
            owned = self._owned(owner_id)
        return sorted(owned, key=lambda r: r.created_at, reverse=True)


class MemoryKeyProfileStore(KeyProfileStore):
    """Key-profile store whose lock doubles as the per-user uniqueness guard."""

    def __init__(self) -> None:
        self._profiles: dict[str, UserKeyRecord] = {}
        self._lock = threading.Lock()

    def get_record(self, user_id: str) -> UserKeyRecord | None:
        with self._lock:
            record = self._profiles.get(user_id)
            return UserKeyRecord(**record.to_dict()) if record else None

    def upsert_public_key(self, user_id: str, public_key: str) -> None:
        with self._lock:
            record = self._profiles.get(user_id)
            if record is None:
                self._profiles[user_id] = UserKeyRecord(user_id=user_id, public_key=public_key)
            else:
                record.public_key = public_key
                record.updated_at = utc_now_iso()

    def create_public_key(self, user_id: str, public_key: str) -> bool:
        with self._lock:
            if user_id in self._profiles:
                return False
            self._profiles[user_id] = UserKeyRecord(user_id=user_id, public_key=public_key)
            return True

    def replace_public_key(self, user_id: str, expected: str, public_key: str) -> bool:
        with self._lock:
            record = self._profiles.get(user_id)
            if record is None or record.public_key != expected:
                return False
            record.public_key = public_key
            record.updated_at = utc_now_iso()
            return True
