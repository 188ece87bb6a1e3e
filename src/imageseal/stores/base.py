"""Store interfaces consumed by the provenance engine.

The engine never talks to a database or object store directly. It is
handed one implementation of each interface below; every lookup on the
record store is filtered by owner.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now_iso() -> str:
    """Get current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ImageRecord:
    """Metadata row for an uploaded, signed image.

    Attributes:
        id: Record identifier
        owner_user_id: User who uploaded and signed the image
        file_name: Sanitized original file name
        file_size: Size in bytes
        file_type: MIME type
        fingerprint: Hex SHA-256 of the raw bytes
        signature: Base64 RSA-PSS signature over the fingerprint
        storage_path: Owner-scoped blob path
        created_at: ISO 8601 upload timestamp
    """

    owner_user_id: str
    file_name: str
    file_size: int
    file_type: str
    fingerprint: str
    signature: str
    storage_path: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "owner_user_id": self.owner_user_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "fingerprint": self.fingerprint,
            "signature": self.signature,
            "storage_path": self.storage_path,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageRecord:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            owner_user_id=data["owner_user_id"],
            file_name=data["file_name"],
            file_size=int(data["file_size"]),
            file_type=data["file_type"],
            fingerprint=data["fingerprint"],
            signature=data["signature"],
            storage_path=data["storage_path"],
            created_at=data["created_at"],
        )


@dataclass
class UserKeyRecord:
    """The single public-key slot of a user."""

    user_id: str
    public_key: str
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "public_key": self.public_key,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserKeyRecord:
        """Create from dictionary."""
        return cls(
            user_id=data["user_id"],
            public_key=data.get("public_key") or "",
            created_at=data.get("created_at") or utc_now_iso(),
            updated_at=data.get("updated_at") or utc_now_iso(),
        )


def newest(records: list[ImageRecord]) -> ImageRecord | None:
    """Pick the most recently created record, or None."""
    if not records:
        return None
    return max(records, key=lambda r: r.created_at)


class BlobStore(ABC):
    """Owner-scoped storage for raw image bytes.

    Raises StorageFailure on backend errors and BlobNotFound for unknown paths.
    """

    @abstractmethod
    def put(self, owner_id: str, file_name: str, data: bytes) -> str:
        """Store bytes and return the owner-scoped path."""
        pass

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Return the bytes stored at path."""
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the blob at path."""
        pass


class RecordStore(ABC):
    """Image metadata rows. Every lookup is filtered by owner.

    Raises StorageFailure on backend errors.
    """

    @abstractmethod
    def insert(self, record: ImageRecord) -> None:
        pass

    @abstractmethod
    def find_by_fingerprint(self, fingerprint: str, owner_id: str) -> ImageRecord | None:
        """Newest record of owner_id with this fingerprint."""
        pass

    @abstractmethod
    def find_by_name(self, file_name: str, owner_id: str) -> ImageRecord | None:
        """Newest record of owner_id with this file name."""
        pass

    @abstractmethod
    def get(self, image_id: str, owner_id: str) -> ImageRecord | None:
        pass

    @abstractmethod
    def delete(self, image_id: str, owner_id: str) -> bool:
        """Delete an owner's record. Returns False if it did not exist."""
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> list[ImageRecord]:
        """All records of owner_id, newest first."""
        pass


class KeyProfileStore(ABC):
    """Per-user public key slot with a uniqueness guard.

    Raises KeyStoreFailure on backend errors.
    """

    @abstractmethod
    def get_record(self, user_id: str) -> UserKeyRecord | None:
        pass

    def get_public_key(self, user_id: str) -> str | None:
        """Stored public key string, or None if the user has no record."""
        record = self.get_record(user_id)
        return record.public_key if record else None

    @abstractmethod
    def upsert_public_key(self, user_id: str, public_key: str) -> None:
        """Unconditionally write the user's public key."""
        pass

    @abstractmethod
    def create_public_key(self, user_id: str, public_key: str) -> bool:
        """Insert a record only if the user has none. Returns False on conflict."""
        pass

    @abstractmethod
    def replace_public_key(self, user_id: str, expected: str, public_key: str) -> bool:
        """Overwrite the key only if the stored value still equals expected."""
        pass
