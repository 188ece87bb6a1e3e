"""Exception taxonomy for the provenance engine.

Verification never lets these escape to its caller: the orchestrator maps
them onto verdicts. Key management, registration and the stores raise them
directly.
"""

from __future__ import annotations


class ImageSealError(Exception):
    """Base class for all imageseal errors."""
    pass


class IOFailure(ImageSealError):
    """Candidate bytes could not be read."""
    pass


class SecurityError(ImageSealError):
    """Input rejected by security limits (size, name, extension)."""
    pass


class StorageFailure(ImageSealError):
    """Blob or record store unreachable or failed."""
    pass


class BlobNotFound(StorageFailure):
    """No blob stored at the requested path."""
    pass


class RecordNotFound(StorageFailure):
    """No image record with this id for this owner."""
    pass


class KeyStoreFailure(ImageSealError):
    """Key-profile store unreachable or failed."""
    pass


class KeyNotFound(ImageSealError):
    """User has no provisioned public key."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No public key provisioned for user {user_id}")
        self.user_id = user_id


class MalformedKey(ImageSealError):
    """Key material could not be decoded or imported."""
    pass


class MalformedSignature(ImageSealError):
    """Signature encoding could not be decoded."""
    pass


class SigningError(ImageSealError):
    """Signing failed or produced a signature that does not verify."""
    pass


class KeyConflict(ImageSealError):
    """User already has a different usable public key on file."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"A different public key is already on file for user {user_id}")
        self.user_id = user_id
