"""Per-user key lifecycle.

Each user owns at most one live public key, held by the key-profile store.
Private keys are either generated here, returned to the caller exactly once
and never kept, or generated by the caller, who registers only the public
half.

A stored key is classified into one of three states:

- UNPROVISIONED: no record, an empty value, or a known placeholder
- PROVISIONED: the value imports as an RSA public key
- BROKEN: any other value

Concurrent provisioning relies on the store's uniqueness guard
(insert-if-absent, compare-and-swap); a caller that loses the race returns
the winner's key instead of writing its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from imageseal.config import EngineConfig
from imageseal.errors import KeyConflict, KeyNotFound, KeyStoreFailure, MalformedKey
from imageseal.provenance.signing import KeyPair, Signer, export_public_key, load_public_key
from imageseal.stores.base import KeyProfileStore, UserKeyRecord

logger = logging.getLogger(__name__)


class KeyStatus(Enum):
    """Provisioning state of a user's public-key slot."""

    UNPROVISIONED = "unprovisioned"
    PROVISIONED = "provisioned"
    BROKEN = "broken"


@dataclass(frozen=True)
class KeyProvisioning:
    """Outcome of ensure_public_key.

    Attributes:
        exists: True if a usable key was already on file
        private_key: Private key export, set only when a new pair was generated
        public_key: The public key now on file
    """

    exists: bool
    public_key: str
    private_key: str | None = None

    def to_dict(self) -> dict[str, str | bool | None]:
        """Convert to dictionary."""
        return {
            "exists": self.exists,
            "public_key": self.public_key,
            "private_key": self.private_key,
        }


class KeyManager:
    """Generates, persists and resolves per-user RSA keys."""

    # ensure_public_key gives up after this many lost compare-and-swap rounds
    MAX_PROVISION_ATTEMPTS = 3

    def __init__(self, store: KeyProfileStore, config: EngineConfig | None = None) -> None:
        self.store = store
        self.config = config or EngineConfig()

    def _read(self, user_id: str) -> UserKeyRecord | None:
        try:
            return self.store.get_record(user_id)
        except KeyStoreFailure:
            raise
        except Exception as e:
            raise KeyStoreFailure(f"Key store read failed for user {user_id}: {e}") from e

    def classify(self, public_key: str | None) -> KeyStatus:
        """Classify a stored public-key value."""
        if public_key is None or not public_key.strip():
            return KeyStatus.UNPROVISIONED
        if public_key.strip() in self.config.placeholder_keys:
            return KeyStatus.UNPROVISIONED
        try:
            load_public_key(public_key)
        except MalformedKey:
            return KeyStatus.BROKEN
        return KeyStatus.PROVISIONED

    def key_status(self, user_id: str) -> KeyStatus:
        """Current provisioning state for a user."""
        record = self._read(user_id)
        return self.classify(record.public_key if record else None)

    def get_key_record(self, user_id: str) -> UserKeyRecord | None:
        """Raw key record for a user, if any."""
        return self._read(user_id)

    def _generate(self, user_id: str) -> KeyPair:
        logger.info(f"Generating {self.config.key_size}-bit RSA key pair for user {user_id}")
        return Signer.generate_keys(key_size=self.config.key_size)

    def _claim(self, user_id: str, record: UserKeyRecord | None, public_key: str) -> bool:
        """Write a key into an unusable slot through the store's uniqueness guard."""
        try:
            if record is None:
                return self.store.create_public_key(user_id, public_key)
            return self.store.replace_public_key(user_id, record.public_key, public_key)
        except KeyStoreFailure:
            raise
        except Exception as e:
            raise KeyStoreFailure(f"Key store write failed for user {user_id}: {e}") from e

    def ensure_public_key(self, user_id: str) -> KeyProvisioning:
        """Make sure a user has a usable public key.

        Returns:
            KeyProvisioning with exists=True if a usable key was already on
            file, otherwise the freshly generated private key export

        Raises:
            KeyStoreFailure: If the store fails or the slot keeps changing
        """
        if not user_id:
            raise ValueError("user_id is required")

        for _ in range(self.MAX_PROVISION_ATTEMPTS):
            record = self._read(user_id)
            current = record.public_key if record else None
            status = self.classify(current)

            if status is KeyStatus.PROVISIONED:
                return KeyProvisioning(exists=True, public_key=current)

            if status is KeyStatus.BROKEN:
                logger.warning(f"Stored public key for user {user_id} is malformed; replacing it")

            pair = self._generate(user_id)
            if self._claim(user_id, record, pair.public_key):
                logger.info(f"Provisioned public key for user {user_id}")
                return KeyProvisioning(
                    exists=False,
                    public_key=pair.public_key,
                    private_key=pair.private_key,
                )

            # Another caller changed the slot first; their key stands
            logger.debug(f"Lost key provisioning race for user {user_id}; re-reading")

        raise KeyStoreFailure(f"Could not provision a public key for user {user_id}")

    def register_public_key(self, user_id: str, public_key: str) -> KeyProvisioning:
        """Store a public key whose private half was generated by the caller.

        The slot follows the same write-once rule as ensure_public_key: an
        unusable slot is claimed, a usable one is never overwritten.
        Registering the key already on file is a no-op.

        Returns:
            KeyProvisioning with exists=True if this key was already on file

        Raises:
            MalformedKey: If the value is not an RSA public key or is a placeholder
            KeyConflict: If a different usable key is on file
            KeyStoreFailure: If the store fails or the slot keeps changing
        """
        if not user_id:
            raise ValueError("user_id is required")
        if public_key and public_key.strip() in self.config.placeholder_keys:
            raise MalformedKey("Placeholder public keys cannot be registered")

        # Stored as base64 DER whatever encoding the caller sent
        export = export_public_key(load_public_key(public_key))
        if export in self.config.placeholder_keys:
            raise MalformedKey("Placeholder public keys cannot be registered")

        for _ in range(self.MAX_PROVISION_ATTEMPTS):
            record = self._read(user_id)
            current = record.public_key if record else None

            if self.classify(current) is KeyStatus.PROVISIONED:
                if export_public_key(load_public_key(current)) == export:
                    return KeyProvisioning(exists=True, public_key=current)
                raise KeyConflict(user_id)

            if self._claim(user_id, record, export):
                logger.info(f"Registered caller-supplied public key for user {user_id}")
                return KeyProvisioning(exists=False, public_key=export)

            logger.debug(f"Lost key registration race for user {user_id}; re-reading")

        raise KeyStoreFailure(f"Could not register a public key for user {user_id}")

    def regenerate_key_pair(self, user_id: str) -> str:
        """Replace a user's public key unconditionally.

        Every image signed under the previous key stops verifying.

        Returns:
            The new private key export
        """
        if not user_id:
            raise ValueError("user_id is required")

        pair = self._generate(user_id)
        try:
            self.store.upsert_public_key(user_id, pair.public_key)
        except KeyStoreFailure:
            raise
        except Exception as e:
            raise KeyStoreFailure(f"Key store write failed for user {user_id}: {e}") from e

        logger.warning(
            f"Public key for user {user_id} regenerated; earlier signatures are no longer verifiable"
        )
        return pair.private_key

    def resolve_public_key(self, user_id: str, self_heal: bool | None = None) -> str:
        """Look up a user's public key.

        Args:
            user_id: Key owner
            self_heal: Provision a key when none exists (default: config.self_heal_keys)

        Returns:
            Public key export

        Raises:
            KeyNotFound: If the user has no usable key
            MalformedKey: If the stored key is broken
            KeyStoreFailure: If the store fails
        """
        if self_heal is None:
            self_heal = self.config.self_heal_keys

        record = self._read(user_id)
        current = record.public_key if record else None
        status = self.classify(current)

        if status is KeyStatus.PROVISIONED:
            return current

        if status is KeyStatus.BROKEN:
            raise MalformedKey(f"Stored public key for user {user_id} cannot be imported")

        if self_heal:
            logger.warning(f"No public key for user {user_id}; provisioning one during lookup")
            provisioning = self.ensure_public_key(user_id)
            if provisioning.private_key is not None:
                logger.warning(
                    f"Private key generated during lookup for user {user_id} was not delivered"
                )
            return provisioning.public_key

        raise KeyNotFound(user_id)
