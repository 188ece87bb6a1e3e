"""imageseal - cryptographic provenance for uploaded images.

Per-user RSA key management, content fingerprinting, RSA-PSS signing and
an owner-scoped verification engine that classifies a candidate file into
a trust verdict.
"""

from __future__ import annotations

__version__ = "0.3.0"

from imageseal.engine import ProvenanceEngine
from imageseal.provenance.verdict import VerdictStatus, VerificationVerdict

__all__ = [
    "__version__",
    "ProvenanceEngine",
    "VerdictStatus",
    "VerificationVerdict",
]
