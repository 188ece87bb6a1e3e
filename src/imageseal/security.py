"""Security hardening for untrusted uploads and candidate files.

Provides limits and sanitization to prevent:
- Resource exhaustion from oversized files
- Path traversal through user-supplied file names
- Non-image uploads
"""

from __future__ import annotations

import re
from pathlib import Path

from imageseal.errors import IOFailure, SecurityError

# Default security limits
DEFAULT_MAX_FILE_SIZE = 25 * 1024 * 1024  # 25 MB
DEFAULT_ALLOWED_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".tif", ".tiff", ".heic",
})
MAX_FILE_NAME_LENGTH = 255


class SecurityLimits:
    """Configurable security limits."""

    def __init__(
        self,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        allowed_extensions: frozenset[str] | set[str] | None = DEFAULT_ALLOWED_EXTENSIONS,
    ) -> None:
        self.max_file_size = max_file_size
        self.allowed_extensions = (
            frozenset(ext.lower() for ext in allowed_extensions)
            if allowed_extensions is not None else None
        )


def sanitize_file_name(file_name: str) -> str:
    """Reduce a user-supplied file name to a safe base name.

    Directory components are stripped, control characters removed.

    Raises:
        SecurityError: If nothing usable remains
    """
    base = re.split(r"[\\/]", file_name or "")[-1]
    base = re.sub(r"[\x00-\x1f\x7f]", "", base).strip()
    if not base or base in (".", ".."):
        raise SecurityError(f"Invalid file name: {file_name!r}")
    if len(base) > MAX_FILE_NAME_LENGTH:
        raise SecurityError(f"File name too long: {len(base)} characters")
    return base


def check_upload(
    file_name: str,
    size: int,
    limits: SecurityLimits | None = None,
) -> str:
    """Validate an upload's name and size.

    Returns:
        Sanitized file name

    Raises:
        SecurityError: If the upload violates the limits
    """
    if limits is None:
        limits = SecurityLimits()

    safe_name = sanitize_file_name(file_name)

    if size == 0:
        raise SecurityError(f"Empty file: {safe_name}")
    if size > limits.max_file_size:
        raise SecurityError(
            f"File too large: {safe_name} ({size} bytes > {limits.max_file_size})"
        )

    if limits.allowed_extensions is not None:
        ext = Path(safe_name).suffix.lower()
        if ext not in limits.allowed_extensions:
            raise SecurityError(
                f"File extension not allowed: {ext or '(none)'}. "
                f"Allowed: {sorted(limits.allowed_extensions)}"
            )

    return safe_name


def safe_read_file(path: Path, limits: SecurityLimits | None = None) -> bytes:
    """Read a candidate file with size limits.

    Raises:
        IOFailure: If the file cannot be read
        SecurityError: If the file is too large
    """
    if limits is None:
        limits = SecurityLimits()

    try:
        size = path.stat().st_size
    except OSError as e:
        raise IOFailure(f"Could not stat {path}: {e}") from e

    if size > limits.max_file_size:
        raise SecurityError(
            f"File too large: {path} ({size} bytes > {limits.max_file_size})"
        )

    try:
        return path.read_bytes()
    except OSError as e:
        raise IOFailure(f"Could not read {path}: {e}") from e
