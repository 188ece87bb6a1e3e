"""Verification verdicts."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


class VerdictStatus(Enum):
    """Final classification of a verification attempt."""

    VERIFIED = "VERIFIED"
    CONTENT_MODIFIED = "CONTENT_MODIFIED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    KEY_UNAVAILABLE = "KEY_UNAVAILABLE"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


class MatchPath(Enum):
    """How the candidate reached its record."""

    FINGERPRINT = "fingerprint"
    NAME_EXACT = "name_exact"  # found by name, stored fingerprint identical
    NAME_TOLERATED = "name_tolerated"  # found by name, fingerprint within tolerance
    NAME_MODIFIED = "name_modified"  # found by name, fingerprint beyond tolerance
    NONE = "none"


class VerdictCode(str, Enum):
    """Machine-readable reason codes."""

    SIGNATURE_VALID = "SIGNATURE_VALID"
    SIGNATURE_VALID_MINOR_DIFFERENCE = "SIGNATURE_VALID_MINOR_DIFFERENCE"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    SIGNATURE_MALFORMED = "SIGNATURE_MALFORMED"
    FINGERPRINT_MISMATCH = "FINGERPRINT_MISMATCH"
    KEY_MISSING = "KEY_MISSING"
    KEY_MALFORMED = "KEY_MALFORMED"
    NO_RECORD = "NO_RECORD"
    READ_FAILED = "READ_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_TITLES = {
    VerdictStatus.VERIFIED: "Image Verified Successfully",
    VerdictStatus.CONTENT_MODIFIED: "Image Has Been Modified",
    VerdictStatus.SIGNATURE_INVALID: "Signature Verification Failed",
    VerdictStatus.KEY_UNAVAILABLE: "Verification Key Unavailable",
    VerdictStatus.NOT_FOUND: "Image Not Found",
    VerdictStatus.ERROR: "Verification Error",
}


@dataclass
class VerificationVerdict:
    """Outcome of one verification request.

    ``trace`` holds internal diagnostics (store errors, stack summaries) and
    is excluded from ``to_dict`` unless explicitly requested.
    """

    status: VerdictStatus
    code: VerdictCode
    detail: str
    match: MatchPath = MatchPath.NONE
    file_name: str | None = None
    fingerprint: str | None = None
    stored_fingerprint: str | None = None
    fingerprint_distance: int | None = None
    minor_difference_tolerated: bool = False
    image_id: str | None = None
    owner_user_id: str | None = None
    uploaded_at: str | None = None
    error_id: str | None = None
    trace: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def verified(self) -> bool:
        """True only for a VERIFIED verdict."""
        return self.status is VerdictStatus.VERIFIED

    @property
    def title(self) -> str:
        """Short human-readable headline."""
        return STATUS_TITLES[self.status]

    def to_dict(self, include_trace: bool = False) -> dict[str, Any]:
        """Convert to dictionary."""
        result = {
            "status": self.status.value,
            "verified": self.verified,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "match": self.match.value,
            "file_name": self.file_name,
            "fingerprint": self.fingerprint,
            "stored_fingerprint": self.stored_fingerprint,
            "fingerprint_distance": self.fingerprint_distance,
            "minor_difference_tolerated": self.minor_difference_tolerated,
            "image_id": self.image_id,
            "owner_user_id": self.owner_user_id,
            "uploaded_at": self.uploaded_at,
            "error_id": self.error_id,
            "timestamp": self.timestamp,
        }
        if include_trace:
            result["trace"] = list(self.trace)
        return result

    def write_json(self, path: Path) -> None:
        """Write to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)

    def write_markdown(self, path: Path) -> None:
        """Write to Markdown file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(self._generate_markdown())

    def _generate_markdown(self) -> str:
        """Generate markdown report."""
        lines = [
            "# Image Verification Report",
            "",
            f"**Status:** {'✅' if self.verified else '❌'} {self.title}",
            f"**Timestamp:** {self.timestamp}",
            "",
            self.detail,
            "",
            "## Summary",
            "",
            f"- **Code:** `{self.code.value}`",
            f"- **Match:** {self.match.value}",
        ]

        if self.file_name:
            lines.append(f"- **File:** `{self.file_name}`")
        if self.fingerprint:
            lines.append(f"- **Fingerprint:** `{self.fingerprint}`")
        if self.stored_fingerprint and self.stored_fingerprint != self.fingerprint:
            lines.append(f"- **Stored Fingerprint:** `{self.stored_fingerprint}`")
        if self.fingerprint_distance is not None:
            lines.append(f"- **Fingerprint Distance:** {self.fingerprint_distance}")
        if self.minor_difference_tolerated:
            lines.append("- **Note:** Minor differences detected but signature verified.")

        if self.image_id:
            lines.extend([
                "",
                "## Record",
                "",
                f"- **Image ID:** `{self.image_id}`",
                f"- **Owner:** `{self.owner_user_id}`",
                f"- **Uploaded:** {self.uploaded_at}",
            ])

        if self.error_id:
            lines.extend(["", f"Reference this error as `{self.error_id}` when reporting it."])

        lines.append("")
        return "\n".join(lines)
