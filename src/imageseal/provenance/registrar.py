"""Upload-time signing and image record lifecycle.

An image record is written only after the blob write succeeded and the
signature is known to verify against the owner's public key on file. If
the record insert fails, the blob is removed again; a failed removal
leaves an orphaned blob, which is harmless because verification always
starts from a record.
"""

from __future__ import annotations

import logging
import mimetypes

from imageseal.errors import RecordNotFound, SigningError, StorageFailure
from imageseal.hashing import fingerprint
from imageseal.provenance.keys import KeyManager
from imageseal.provenance.signing import DEFAULT_SALT_LENGTH, Signer
from imageseal.security import SecurityLimits, check_upload
from imageseal.stores.base import BlobStore, ImageRecord, RecordStore

logger = logging.getLogger(__name__)


class ImageRegistrar:
    """Signs uploads and manages an owner's image records."""

    def __init__(
        self,
        blobs: BlobStore,
        records: RecordStore,
        keys: KeyManager,
        limits: SecurityLimits | None = None,
        salt_length: int = DEFAULT_SALT_LENGTH,
    ) -> None:
        self.blobs = blobs
        self.records = records
        self.keys = keys
        self.limits = limits or SecurityLimits()
        self.salt_length = salt_length

    def sign(self, data: bytes, private_key: str) -> tuple[str, str]:
        """Fingerprint and sign bytes.

        Returns:
            Tuple of (fingerprint, signature)
        """
        signer = Signer(private_key=private_key, salt_length=self.salt_length)
        content_fingerprint = fingerprint(data)
        return content_fingerprint, signer.sign(content_fingerprint)

    def register(
        self,
        owner_user_id: str,
        file_name: str,
        data: bytes,
        private_key: str,
        file_type: str | None = None,
    ) -> ImageRecord:
        """Sign and store an upload.

        Args:
            owner_user_id: Uploading user
            file_name: Original file name
            data: Raw image bytes
            private_key: Owner's private key export
            file_type: MIME type (guessed from the name when omitted)

        Returns:
            The persisted ImageRecord

        Raises:
            SecurityError: If the upload violates the limits
            MalformedKey: If the private key cannot be imported
            KeyNotFound: If the owner has no provisioned public key
            SigningError: If the private key does not match the key on file
            StorageFailure: If the blob or record cannot be stored
        """
        if not owner_user_id:
            raise ValueError("owner_user_id is required")

        safe_name = check_upload(file_name, len(data), self.limits)
        if file_type is None:
            file_type = mimetypes.guess_type(safe_name)[0] or "application/octet-stream"

        content_fingerprint, signature = self.sign(data, private_key)

        public_key = self.keys.resolve_public_key(owner_user_id, self_heal=False)
        verifier = Signer(public_key=public_key, salt_length=self.salt_length)
        if not verifier.verify(content_fingerprint, signature):
            raise SigningError(
                f"Private key does not match the public key on file for user {owner_user_id}"
            )

        storage_path = self.blobs.put(owner_user_id, safe_name, data)
        logger.debug(f"Stored blob {storage_path} for user {owner_user_id}")

        record = ImageRecord(
            owner_user_id=owner_user_id,
            file_name=safe_name,
            file_size=len(data),
            file_type=file_type,
            fingerprint=content_fingerprint,
            signature=signature,
            storage_path=storage_path,
        )

        try:
            self.records.insert(record)
        except Exception as e:
            logger.error(f"Failed to save image metadata for {storage_path}: {e}")
            try:
                self.blobs.delete(storage_path)
            except Exception as rollback_error:
                logger.error(f"Rollback of blob {storage_path} failed: {rollback_error}")
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(f"Failed to save image metadata: {e}") from e

        logger.info(f"Registered image {record.id} ({safe_name}) for user {owner_user_id}")
        return record

    def list_images(self, owner_user_id: str) -> list[ImageRecord]:
        """All of an owner's images, newest first."""
        return self.records.list_by_owner(owner_user_id)

    def get_image(self, image_id: str, owner_user_id: str) -> ImageRecord:
        """One of the owner's records.

        Raises:
            RecordNotFound: If the id is unknown or belongs to another user
        """
        record = self.records.get(image_id, owner_user_id)
        if record is None:
            raise RecordNotFound(f"No image {image_id} for user {owner_user_id}")
        return record

    def fetch_content(self, image_id: str, owner_user_id: str) -> tuple[ImageRecord, bytes]:
        """Record and stored bytes of one of the owner's images."""
        record = self.get_image(image_id, owner_user_id)
        return record, self.blobs.get(record.storage_path)

    def delete_image(self, image_id: str, owner_user_id: str) -> bool:
        """Delete an owner's image record and its blob.

        Returns:
            False if the owner has no such image
        """
        record = self.records.get(image_id, owner_user_id)
        if record is None or not self.records.delete(image_id, owner_user_id):
            return False

        try:
            self.blobs.delete(record.storage_path)
        except Exception as e:
            logger.warning(f"Image {image_id} deleted but blob {record.storage_path} remains: {e}")

        logger.info(f"Deleted image {image_id} for user {owner_user_id}")
        return True

