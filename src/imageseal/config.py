"""
Configuration for the provenance engine.

Supports:
- Environment variable configuration
- YAML file configuration
- Runtime overrides
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from imageseal.security import DEFAULT_ALLOWED_EXTENSIONS, DEFAULT_MAX_FILE_SIZE, SecurityLimits

# Seeded into every new profile by the account-creation trigger; it marks
# an account that never generated a real key.
DEFAULT_PLACEHOLDER_KEY = (
    "MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8AMIIBCgKCAQEAu5sVBczU9qQCQzK5qvZn+QS5Hd/2FRK6Z+Yv9jSVEDIr0L"
    "rLXhCmGnmwMYEsuA9QA69TLLmS9TBxZ0qhH7gV1xNU+Jl80VYSQkxzJJJIKw0WJ0H5xzCEMJkCUUVEJCMvmLW8/yvML"
    "KmxhwZZwIm2T+rhyxfYQGtPpvFAYiJZZrdYS1XyaGEZQUCV/CWH3r2yWJQE5+NjJc5wkUjkE9mh4GnlGVSRbMZXJZ8xU"
    "m7yYdN0UOvSlYnY4ilPTKpRJDq5Tww0TnGNyRpZdKO5zU7J9UhyTnwbJuAQW9XyD4Qo+XK+aLaGxgNKG5bVEd8pHcpuY"
    "RF3he8lvQQGXBQGGvvDZQIDAQAB"
)

STORE_BACKENDS = ("memory", "local")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """
    Configuration for the provenance engine.

    All values default to the behavior of the deployed system:
    - tolerance: 5 differing fingerprint characters still reach the signature check
    - salt_length: 32-byte PSS salt
    - key_size: 2048-bit RSA modulus, public exponent fixed at 65537
    - self_heal_keys: False (resolving a missing key never generates one)
    """

    # Matching
    tolerance: int = 5

    # Signing
    salt_length: int = 32
    key_size: int = 2048
    self_heal_keys: bool = False
    placeholder_keys: tuple[str, ...] = (DEFAULT_PLACEHOLDER_KEY,)

    # Storage
    store_backend: str = "memory"
    store_dir: Path | None = None

    # Input limits
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_extensions: frozenset[str] | None = field(
        default_factory=lambda: DEFAULT_ALLOWED_EXTENSIONS
    )

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {self.tolerance}")

        if self.salt_length < 0:
            raise ValueError(f"salt_length must be >= 0, got {self.salt_length}")

        if self.key_size < 2048:
            raise ValueError(f"key_size must be >= 2048, got {self.key_size}")

        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(
                f"store_backend must be one of {STORE_BACKENDS}, got {self.store_backend!r}"
            )

        if self.store_backend == "local" and self.store_dir is None:
            raise ValueError("store_dir is required for the local store backend")

        if self.max_file_size < 1:
            raise ValueError(f"max_file_size must be >= 1, got {self.max_file_size}")

        if self.store_dir is not None and not isinstance(self.store_dir, Path):
            self.store_dir = Path(self.store_dir)

        self.placeholder_keys = tuple(self.placeholder_keys)

    @property
    def limits(self) -> SecurityLimits:
        """Security limits derived from this configuration."""
        return SecurityLimits(
            max_file_size=self.max_file_size,
            allowed_extensions=self.allowed_extensions,
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """
        Create configuration from environment variables.

        Environment variables:
            IMAGESEAL_TOLERANCE: Maximum fingerprint distance for the fallback path
            IMAGESEAL_SALT_LENGTH: PSS salt length in bytes
            IMAGESEAL_KEY_SIZE: RSA modulus size in bits
            IMAGESEAL_SELF_HEAL_KEYS: Generate a key when resolving a missing one (true/false)
            IMAGESEAL_STORE: Store backend (memory/local)
            IMAGESEAL_STORE_DIR: Root directory of the local store
            IMAGESEAL_MAX_FILE_SIZE: Maximum accepted file size in bytes
        """
        store_dir = os.getenv("IMAGESEAL_STORE_DIR")
        backend = os.getenv("IMAGESEAL_STORE", "local" if store_dir else "memory").lower()

        return cls(
            tolerance=int(os.getenv("IMAGESEAL_TOLERANCE", "5")),
            salt_length=int(os.getenv("IMAGESEAL_SALT_LENGTH", "32")),
            key_size=int(os.getenv("IMAGESEAL_KEY_SIZE", "2048")),
            self_heal_keys=_env_flag("IMAGESEAL_SELF_HEAL_KEYS", False),
            store_backend=backend,
            store_dir=Path(store_dir) if store_dir else None,
            max_file_size=int(os.getenv("IMAGESEAL_MAX_FILE_SIZE", str(DEFAULT_MAX_FILE_SIZE))),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create configuration from dictionary (e.g., YAML)."""
        store = data.get("store", {})
        limits = data.get("limits", {})

        placeholders = data.get("placeholder_keys")
        extensions = limits.get("allowed_extensions", DEFAULT_ALLOWED_EXTENSIONS)
        store_dir = store.get("dir")

        return cls(
            tolerance=data.get("tolerance", 5),
            salt_length=data.get("salt_length", 32),
            key_size=data.get("key_size", 2048),
            self_heal_keys=data.get("self_heal_keys", False),
            placeholder_keys=(
                tuple(placeholders) if placeholders is not None else (DEFAULT_PLACEHOLDER_KEY,)
            ),
            store_backend=store.get("backend", "memory"),
            store_dir=Path(store_dir) if store_dir else None,
            max_file_size=limits.get("max_file_size", DEFAULT_MAX_FILE_SIZE),
            allowed_extensions=frozenset(extensions) if extensions is not None else None,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load configuration from a YAML file."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "tolerance": self.tolerance,
            "salt_length": self.salt_length,
            "key_size": self.key_size,
            "self_heal_keys": self.self_heal_keys,
            "placeholder_keys": list(self.placeholder_keys),
            "store": {
                "backend": self.store_backend,
                "dir": str(self.store_dir) if self.store_dir else None,
            },
            "limits": {
                "max_file_size": self.max_file_size,
                "allowed_extensions": (
                    sorted(self.allowed_extensions)
                    if self.allowed_extensions is not None else None
                ),
            },
        }
