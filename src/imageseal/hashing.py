"""Content fingerprinting.

A fingerprint is the lowercase hex SHA-256 digest of a file's raw bytes.
File name, MIME type and timestamps never contribute to it.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO

from imageseal.errors import IOFailure

FINGERPRINT_ALGORITHM = "sha256"
FINGERPRINT_LENGTH = 64  # hex characters
CHUNK_SIZE = 8192


def fingerprint(data: bytes) -> str:
    """Compute the fingerprint of an in-memory byte blob."""
    return hashlib.sha256(data).hexdigest()


def fingerprint_stream(stream: BinaryIO) -> str:
    """Compute the fingerprint of a readable binary stream.

    Raises:
        IOFailure: If the stream cannot be read
    """
    hasher = hashlib.sha256()
    try:
        while chunk := stream.read(CHUNK_SIZE):
            hasher.update(chunk)
    except OSError as e:
        raise IOFailure(f"Could not read candidate stream: {e}") from e
    return hasher.hexdigest()


def fingerprint_file(path: Path) -> str:
    """Compute the fingerprint of a file on disk.

    Raises:
        IOFailure: If the file cannot be opened or read
    """
    try:
        with open(path, "rb") as f:
            return fingerprint_stream(f)
    except OSError as e:
        raise IOFailure(f"Could not read {path}: {e}") from e


def is_fingerprint(value: str) -> bool:
    """Check that a value has the shape of a fingerprint."""
    if not isinstance(value, str) or len(value) != FINGERPRINT_LENGTH:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def fingerprint_bytes(value: str) -> bytes:
    """Convert a hex fingerprint into the 32 raw digest bytes that get signed.

    Raises:
        ValueError: If value is not a 64-character hex string
    """
    if not is_fingerprint(value):
        raise ValueError(f"Not a {FINGERPRINT_ALGORITHM} fingerprint: {value!r}")
    return bytes.fromhex(value)


def fingerprint_distance(first: str, second: str) -> int:
    """Count positional character differences between two fingerprints.

    Positions beyond the shorter string each count as one difference.
    """
    shared = min(len(first), len(second))
    differences = sum(1 for i in range(shared) if first[i] != second[i])
    return differences + abs(len(first) - len(second))
