"""RSA-PSS signing of content fingerprints.

Signatures cover the 32 raw SHA-256 digest bytes of a file, not the file
itself. Parameters match WebCrypto ``RSA-PSS`` with ``hash: SHA-256`` and
``saltLength: 32``:

- message digest: SHA-256
- mask generation: MGF1 with SHA-256
- salt length: 32 bytes

Key material travels as base64 text:
- public key: DER SubjectPublicKeyInfo
- private key: DER PKCS#8, unencrypted

PSS is probabilistic, so signing the same fingerprint twice yields two
different signatures that both verify.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from imageseal.errors import MalformedKey, MalformedSignature, SigningError
from imageseal.hashing import fingerprint_bytes

DEFAULT_SALT_LENGTH = 32
DEFAULT_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537


@dataclass(frozen=True)
class KeyPair:
    """Exported key pair. The private half is handed to its owner only."""

    public_key: str
    private_key: str

    def private_key_document(self) -> str:
        """Private key file contents: ``{"privateKey": "<export>"}``."""
        return json.dumps({"privateKey": self.private_key}, indent=2)


def _b64decode(value: str) -> bytes:
    return base64.b64decode("".join(value.split()), validate=True)


def export_public_key(key: rsa.RSAPublicKey) -> str:
    """Encode a public key as base64 DER SubjectPublicKeyInfo."""
    der = key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


def export_private_key(key: rsa.RSAPrivateKey) -> str:
    """Encode a private key as base64 DER PKCS#8."""
    der = key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(der).decode("ascii")


def load_public_key(export: str) -> rsa.RSAPublicKey:
    """Import a public key from base64 DER or PEM text.

    Raises:
        MalformedKey: If the value is not an RSA public key
    """
    if not export or not export.strip():
        raise MalformedKey("Empty public key")
    try:
        if export.lstrip().startswith("-----BEGIN"):
            key = serialization.load_pem_public_key(export.encode("ascii"))
        else:
            key = serialization.load_der_public_key(_b64decode(export))
    except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm) as e:
        raise MalformedKey(f"Public key could not be imported: {e}") from e

    if not isinstance(key, rsa.RSAPublicKey):
        raise MalformedKey(f"Expected an RSA public key, got {type(key).__name__}")
    return key


def load_private_key(export: str) -> rsa.RSAPrivateKey:
    """Import a private key from base64 DER PKCS#8 or PEM text.

    Raises:
        MalformedKey: If the value is not an RSA private key
    """
    if not export or not export.strip():
        raise MalformedKey("Empty private key")
    try:
        if export.lstrip().startswith("-----BEGIN"):
            key = serialization.load_pem_private_key(export.encode("ascii"), password=None)
        else:
            key = serialization.load_der_private_key(_b64decode(export), password=None)
    except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm) as e:
        raise MalformedKey(f"Private key could not be imported: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise MalformedKey(f"Expected an RSA private key, got {type(key).__name__}")
    return key


def read_private_key_document(text: str) -> str:
    """Extract the private key export from key file contents.

    Accepts the JSON document written at key generation time, or a bare
    export / PEM block.

    Raises:
        MalformedKey: If a JSON document lacks the privateKey property
    """
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            document = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise MalformedKey(f"Invalid key file: not valid JSON ({e})") from e
        export = document.get("privateKey") if isinstance(document, dict) else None
        if not isinstance(export, str) or not export:
            raise MalformedKey("Invalid key file format: missing privateKey property")
        return export
    return stripped


def load_private_key_file(path: Path) -> str:
    """Read a private key file and return its export string."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedKey(f"Cannot read key file {path}: {e}") from e
    export = read_private_key_document(text)
    load_private_key(export)  # fail early on garbage
    return export


class Signer:
    """Fingerprint signer and verifier."""

    ALG_RSA_PSS = "RSA-PSS-SHA256"

    def __init__(
        self,
        private_key: str | None = None,
        public_key: str | None = None,
        salt_length: int = DEFAULT_SALT_LENGTH,
    ) -> None:
        """Initialize signer.

        Args:
            private_key: Base64 PKCS#8 private key export (optional)
            public_key: Base64 SPKI public key export (optional)
            salt_length: PSS salt length in bytes

        Without a public key, verification uses the public half of the
        private key.

        Raises:
            MalformedKey: If a supplied key cannot be imported
        """
        self.salt_length = salt_length
        self._signing_key = load_private_key(private_key) if private_key else None
        if public_key:
            self._verify_key = load_public_key(public_key)
        elif self._signing_key is not None:
            self._verify_key = self._signing_key.public_key()
        else:
            self._verify_key = None

    def _padding(self) -> padding.PSS:
        return padding.PSS(
            mgf=padding.MGF1(hashes.SHA256()),
            salt_length=self.salt_length,
        )

    def is_configured(self) -> bool:
        """Check if signer has a private key."""
        return self._signing_key is not None

    @property
    def public_key(self) -> str | None:
        """Public key export used for verification."""
        return export_public_key(self._verify_key) if self._verify_key else None

    def sign(self, fingerprint: str) -> str:
        """Sign a fingerprint.

        Args:
            fingerprint: 64-character hex SHA-256 fingerprint

        Returns:
            Base64 signature

        Raises:
            SigningError: If no private key is configured
            ValueError: If fingerprint is malformed
        """
        if not self.is_configured():
            raise SigningError("No private key configured")

        signature = self._signing_key.sign(
            fingerprint_bytes(fingerprint),
            self._padding(),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode("ascii")

    def verify(self, fingerprint: str, signature: str) -> bool:
        """Verify a signature.

        Args:
            fingerprint: 64-character hex SHA-256 fingerprint
            signature: Base64 signature

        Returns:
            True if valid, False otherwise

        Raises:
            SigningError: If no key is available for verification
            MalformedSignature: If the signature is not valid base64
            ValueError: If fingerprint is malformed
        """
        if self._verify_key is None:
            raise SigningError("No public key available for verification")

        message = fingerprint_bytes(fingerprint)

        if not signature or not signature.strip():
            raise MalformedSignature("Empty signature")
        try:
            raw_signature = _b64decode(signature)
        except (binascii.Error, ValueError) as e:
            raise MalformedSignature(f"Signature is not valid base64: {e}") from e

        try:
            self._verify_key.verify(raw_signature, message, self._padding(), hashes.SHA256())
            return True
        except InvalidSignature:
            return False

    @classmethod
    def generate_keys(cls, key_size: int = DEFAULT_KEY_SIZE) -> KeyPair:
        """Generate a new key pair with fixed public exponent 65537."""
        private_key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
        return KeyPair(
            public_key=export_public_key(private_key.public_key()),
            private_key=export_private_key(private_key),
        )
