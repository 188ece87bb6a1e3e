"""Tests for content fingerprinting."""

from __future__ import annotations

import io
import random
from pathlib import Path

import pytest

from imageseal.errors import IOFailure
from imageseal.hashing import (
    CHUNK_SIZE,
    fingerprint,
    fingerprint_bytes,
    fingerprint_distance,
    fingerprint_file,
    fingerprint_stream,
    is_fingerprint,
)


class TestFingerprint:
    """Test fingerprint computation."""

    def test_known_vectors(self):
        """Test against published SHA-256 vectors."""
        assert fingerprint(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        assert fingerprint(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_deterministic(self):
        """Test same bytes give the same fingerprint."""
        data = b"\x89PNG" + bytes(range(256)) * 10
        assert fingerprint(data) == fingerprint(bytes(data))

    def test_shape(self):
        """Test fingerprint is 64 lowercase hex characters."""
        value = fingerprint(b"some image")
        assert len(value) == 64
        assert value == value.lower()
        assert is_fingerprint(value)

    def test_no_collisions(self):
        """Test distinct inputs give distinct fingerprints."""
        rng = random.Random(1234)
        inputs = {rng.randbytes(rng.randint(1, 64)) for _ in range(2000)}
        fingerprints = {fingerprint(data) for data in inputs}
        assert len(fingerprints) == len(inputs)

    def test_single_byte_change(self):
        """Test flipping one byte changes the fingerprint."""
        data = bytearray(b"x" * 1000)
        original = fingerprint(bytes(data))
        data[500] ^= 0x01
        assert fingerprint(bytes(data)) != original


class TestStreamsAndFiles:
    """Test chunked fingerprinting."""

    def test_stream_matches_bytes(self):
        """Test multi-chunk stream hashing equals in-memory hashing."""
        data = bytes(range(256)) * (CHUNK_SIZE // 64)
        assert len(data) > CHUNK_SIZE
        assert fingerprint_stream(io.BytesIO(data)) == fingerprint(data)

    def test_file_matches_bytes(self, tmp_path: Path):
        """Test file hashing equals in-memory hashing."""
        path = tmp_path / "photo.png"
        path.write_bytes(b"image-bytes" * 3000)
        assert fingerprint_file(path) == fingerprint(b"image-bytes" * 3000)

    def test_missing_file(self, tmp_path: Path):
        """Test unreadable input raises IOFailure."""
        with pytest.raises(IOFailure):
            fingerprint_file(tmp_path / "missing.png")

    def test_stream_read_error(self):
        """Test a failing stream raises IOFailure."""

        class BrokenStream(io.RawIOBase):
            def readable(self):
                return True

            def read(self, size=-1):
                raise OSError("device unplugged")

        with pytest.raises(IOFailure, match="device unplugged"):
            fingerprint_stream(BrokenStream())


class TestFingerprintHelpers:
    """Test shape checks, raw bytes and distance."""

    def test_fingerprint_bytes(self):
        """Test conversion to the 32 raw digest bytes."""
        value = fingerprint(b"abc")
        raw = fingerprint_bytes(value)
        assert len(raw) == 32
        assert raw.hex() == value

    @pytest.mark.parametrize("value", ["", "abc", "z" * 64, "a" * 63, "a" * 65])
    def test_fingerprint_bytes_rejects(self, value):
        """Test malformed fingerprints are rejected."""
        assert not is_fingerprint(value)
        with pytest.raises(ValueError):
            fingerprint_bytes(value)

    def test_distance_identical(self):
        """Test distance between equal fingerprints is zero."""
        value = fingerprint(b"abc")
        assert fingerprint_distance(value, value) == 0

    def test_distance_positional(self):
        """Test distance counts differing positions."""
        assert fingerprint_distance("aaaa", "abab") == 2
        assert fingerprint_distance("abcd", "dcba") == 4

    def test_distance_length_difference(self):
        """Test extra characters each count as a difference."""
        assert fingerprint_distance("abc", "abcde") == 2
        assert fingerprint_distance("", fingerprint(b"abc")) == 64
