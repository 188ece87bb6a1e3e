"""Provenance verification engine.

Key lifecycle, RSA-PSS signing of content fingerprints, upload-time
registration and the owner-scoped verification decision.
"""

from __future__ import annotations

from imageseal.provenance.keys import KeyManager, KeyProvisioning, KeyStatus
from imageseal.provenance.matcher import ProvenanceMatcher
from imageseal.provenance.registrar import ImageRegistrar
from imageseal.provenance.signing import KeyPair, Signer
from imageseal.provenance.verdict import MatchPath, VerdictCode, VerdictStatus, VerificationVerdict
from imageseal.provenance.verifier import ImageVerifier

__all__ = [
    "ImageRegistrar",
    "ImageVerifier",
    "KeyManager",
    "KeyPair",
    "KeyProvisioning",
    "KeyStatus",
    "MatchPath",
    "ProvenanceMatcher",
    "Signer",
    "VerdictCode",
    "VerdictStatus",
    "VerificationVerdict",
]
