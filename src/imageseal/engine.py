"""Engine wiring.

The engine owns no stores of its own: callers hand it a blob store, a
record store and a key-profile store, and it builds its components on top
of them. Nothing is cached between calls.
"""

from __future__ import annotations

from pathlib import Path

from imageseal.config import EngineConfig
from imageseal.provenance.keys import KeyManager
from imageseal.provenance.matcher import ProvenanceMatcher
from imageseal.provenance.registrar import ImageRegistrar
from imageseal.provenance.verdict import VerificationVerdict
from imageseal.provenance.verifier import ImageVerifier
from imageseal.stores import StoreBundle, open_stores
from imageseal.stores.base import BlobStore, KeyProfileStore, RecordStore


class ProvenanceEngine:
    """Key management, registration and verification over injected stores."""

    def __init__(
        self,
        blobs: BlobStore,
        records: RecordStore,
        keys: KeyProfileStore,
        config: EngineConfig | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.blobs = blobs
        self.records = records
        self.key_store = keys

        self.key_manager = KeyManager(keys, self.config)
        self.matcher = ProvenanceMatcher(
            records,
            self.key_manager,
            tolerance=self.config.tolerance,
            salt_length=self.config.salt_length,
        )
        self.verifier = ImageVerifier(self.matcher, limits=self.config.limits)
        self.registrar = ImageRegistrar(
            blobs,
            records,
            self.key_manager,
            limits=self.config.limits,
            salt_length=self.config.salt_length,
        )

    @classmethod
    def from_stores(cls, stores: StoreBundle, config: EngineConfig | None = None) -> ProvenanceEngine:
        """Build an engine over a store bundle."""
        return cls(stores.blobs, stores.records, stores.keys, config)

    @classmethod
    def from_config(cls, config: EngineConfig | None = None) -> ProvenanceEngine:
        """Build an engine over the store backend named in the config."""
        config = config or EngineConfig()
        return cls.from_stores(open_stores(config), config)

    def verify(self, data: bytes, file_name: str | None, requesting_user_id: str) -> VerificationVerdict:
        """Verify candidate bytes on behalf of a user."""
        return self.verifier.verify(data, file_name, requesting_user_id)

    def verify_file(
        self,
        path: Path,
        requesting_user_id: str,
        file_name: str | None = None,
    ) -> VerificationVerdict:
        """Verify a file on disk on behalf of a user."""
        return self.verifier.verify_file(path, requesting_user_id, file_name)
