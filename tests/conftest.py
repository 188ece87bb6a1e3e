"""Shared fixtures for imageseal tests."""

from __future__ import annotations

import pytest

from imageseal.config import EngineConfig
from imageseal.engine import ProvenanceEngine
from imageseal.provenance.signing import KeyPair, Signer
from imageseal.stores.base import ImageRecord

PNG_HEADER = b"\x89PNG\r\n\x1a\n"


def image_bytes(label: str, size: int = 2048) -> bytes:
    """Deterministic fake image content."""
    body = (label.encode("utf-8") + b"|") * (size // (len(label) + 1) + 1)
    return PNG_HEADER + body[:size]


def mutate_fingerprint(value: str, count: int) -> str:
    """Change the first ``count`` hex characters of a fingerprint."""
    chars = list(value)
    for i in range(count):
        chars[i] = "0" if chars[i] != "0" else "1"
    return "".join(chars)


def make_record(
    owner: str,
    file_name: str,
    fingerprint: str,
    signature: str = "c2lnbmF0dXJl",
    **kwargs,
) -> ImageRecord:
    """Build an image record without going through the registrar."""
    return ImageRecord(
        owner_user_id=owner,
        file_name=file_name,
        file_size=kwargs.pop("file_size", 100),
        file_type=kwargs.pop("file_type", "image/png"),
        fingerprint=fingerprint,
        signature=signature,
        storage_path=kwargs.pop("storage_path", f"{owner}/0-{file_name}"),
        **kwargs,
    )


@pytest.fixture(scope="session")
def alice_keys() -> KeyPair:
    """Key pair for alice (generated once per session)."""
    return Signer.generate_keys()


@pytest.fixture(scope="session")
def bob_keys() -> KeyPair:
    """Key pair for bob (generated once per session)."""
    return Signer.generate_keys()


@pytest.fixture
def config() -> EngineConfig:
    """Default in-memory configuration."""
    return EngineConfig()


@pytest.fixture
def engine(config: EngineConfig) -> ProvenanceEngine:
    """Engine over fresh in-memory stores."""
    return ProvenanceEngine.from_config(config)


@pytest.fixture
def provisioned(engine: ProvenanceEngine, alice_keys: KeyPair, bob_keys: KeyPair) -> ProvenanceEngine:
    """Engine where alice and bob already have public keys on file."""
    engine.key_store.upsert_public_key("alice", alice_keys.public_key)
    engine.key_store.upsert_public_key("bob", bob_keys.public_key)
    return engine
