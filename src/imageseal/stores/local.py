"""Local filesystem store backend.

Layout under the store root:

    blobs/<owner>/<timestamp>-<name>   raw image bytes
    records.json                       image records keyed by id
    keys.json                          public-key profiles keyed by user id

Index files are re-read on every call and rewritten atomically, so several
engine instances may share one root within a process.
"""

from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from typing import Any

from imageseal.errors import BlobNotFound, KeyStoreFailure, StorageFailure
from imageseal.security import sanitize_file_name
from imageseal.stores.base import (
    BlobStore,
    ImageRecord,
    KeyProfileStore,
    RecordStore,
    UserKeyRecord,
    newest,
    utc_now_iso,
)

# One lock per index file path, shared by every store instance in the process
_FILE_LOCKS: dict[str, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _FILE_LOCKS_GUARD:
        if key not in _FILE_LOCKS:
            _FILE_LOCKS[key] = threading.Lock()
        return _FILE_LOCKS[key]


class JsonIndex:
    """A JSON object on disk, loaded and saved whole."""

    def __init__(self, path: Path, error_cls: type[Exception]) -> None:
        self.path = path
        self.error_cls = error_cls
        self.lock = _lock_for(path)

    def load(self) -> dict[str, Any]:
        """Load index contents (empty when the file does not exist yet)."""
        if not self.path.exists():
            return {"version": "1.0", "entries": {}}
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise self.error_cls(f"Cannot read {self.path.name}: {e}") from e

    def save(self, index: dict[str, Any]) -> None:
        """Save index contents atomically."""
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(index, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise self.error_cls(f"Cannot write {self.path.name}: {e}") from e


class LocalBlobStore(BlobStore):
    """Blob store writing files under <root>/blobs."""

    def __init__(self, root: Path) -> None:
        self.root = (root / "blobs").expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        try:
            target.relative_to(self.root)
        except ValueError:
            raise StorageFailure(f"Blob path escapes store root: {path}") from None
        return target

    def put(self, owner_id: str, file_name: str, data: bytes) -> str:
        owner_dir = sanitize_file_name(owner_id)
        path = f"{owner_dir}/{time.time_ns()}-{sanitize_file_name(file_name)}"
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # "x" mode: never overwrite an existing blob
            with open(target, "xb") as f:
                f.write(data)
        except OSError as e:
            raise StorageFailure(f"Cannot write blob {path}: {e}") from e
        return path

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise BlobNotFound(f"No blob at {path}")
        try:
            return target.read_bytes()
        except OSError as e:
            raise StorageFailure(f"Cannot read blob {path}: {e}") from e

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        if not target.is_file():
            raise BlobNotFound(f"No blob at {path}")
        try:
            target.unlink()
        except OSError as e:
            raise StorageFailure(f"Cannot delete blob {path}: {e}") from e


class LocalRecordStore(RecordStore):
    """Record store persisted in <root>/records.json."""

    def __init__(self, root: Path) -> None:
        self._index = JsonIndex(root.expanduser().resolve() / "records.json", StorageFailure)

    def _records(self) -> list[ImageRecord]:
        entries = self._index.load().get("entries", {})
        return [ImageRecord.from_dict(data) for data in entries.values()]

    def _owned(self, owner_id: str) -> list[ImageRecord]:
        return [r for r in self._records() if r.owner_user_id == owner_id]

    def insert(self, record: ImageRecord) -> None:
        with self._index.lock:
            index = self._index.load()
            entries = index.setdefault("entries", {})
            if record.id in entries:
                raise StorageFailure(f"Duplicate image id: {record.id}")
            entries[record.id] = record.to_dict()
            self._index.save(index)

    def find_by_fingerprint(self, fingerprint: str, owner_id: str) -> ImageRecord | None:
        return newest([r for r in self._owned(owner_id) if r.fingerprint == fingerprint])

    def find_by_name(self, file_name: str, owner_id: str) -> ImageRecord | None:
        return newest([r for r in self._owned(owner_id) if r.file_name == file_name])

    def get(self, image_id: str, owner_id: str) -> ImageRecord | None:
        data = self._index.load().get("entries", {}).get(image_id)
        if data is None or data.get("owner_user_id") != owner_id:
            return None
        return ImageRecord.from_dict(data)

    def delete(self, image_id: str, owner_id: str) -> bool:
        with self._index.lock:
            index = self._index.load()
            entries = index.get("entries", {})
            data = entries.get(image_id)
            if data is None or data.get("owner_user_id") != owner_id:
                return False
            del entries[image_id]
            self._index.save(index)
            return True

    def list_by_owner(self, owner_id: str) -> list[ImageRecord]:
        return sorted(self._owned(owner_id), key=lambda r: r.created_at, reverse=True)


class LocalKeyProfileStore(KeyProfileStore):
    """Key-profile store persisted in <root>/keys.json."""

    def __init__(self, root: Path) -> None:
        self._index = JsonIndex(root.expanduser().resolve() / "keys.json", KeyStoreFailure)

    def get_record(self, user_id: str) -> UserKeyRecord | None:
        data = self._index.load().get("entries", {}).get(user_id)
        return UserKeyRecord.from_dict(data) if data else None

    def upsert_public_key(self, user_id: str, public_key: str) -> None:
        with self._index.lock:
            index = self._index.load()
            entries = index.setdefault("entries", {})
            existing = entries.get(user_id)
            if existing is None:
                entries[user_id] = UserKeyRecord(user_id=user_id, public_key=public_key).to_dict()
            else:
                existing["public_key"] = public_key
                existing["updated_at"] = utc_now_iso()
            self._index.save(index)

    def create_public_key(self, user_id: str, public_key: str) -> bool:
        with self._index.lock:
            index = self._index.load()
            entries = index.setdefault("entries", {})
            if user_id in entries:
                return False
            entries[user_id] = UserKeyRecord(user_id=user_id, public_key=public_key).to_dict()
            self._index.save(index)
            return True

    def replace_public_key(self, user_id: str, expected: str, public_key: str) -> bool:
        with self._index.lock:
            index = self._index.load()
            existing = index.get("entries", {}).get(user_id)
            if existing is None or (existing.get("public_key") or "") != expected:
                return False
            existing["public_key"] = public_key
            existing["updated_at"] = utc_now_iso()
            self._index.save(index)
            return True
