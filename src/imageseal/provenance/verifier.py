"""End-to-end image verification.

Composes hashing, matching, key resolution and signature checking into a
single call that always returns a verdict. Infrastructure failures become
an ERROR verdict with a generic message; the underlying exception is logged
and kept in the verdict's internal trace.
"""

from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path

from imageseal.errors import IOFailure, SecurityError
from imageseal.hashing import fingerprint
from imageseal.provenance.matcher import ProvenanceMatcher
from imageseal.provenance.verdict import VerdictCode, VerdictStatus, VerificationVerdict
from imageseal.security import SecurityLimits, safe_read_file, sanitize_file_name

logger = logging.getLogger(__name__)


def generate_error_id() -> str:
    """Generate unique error ID."""
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(8)
    return f"err_{timestamp}_{random_part}"


def lookup_name(file_name: str | None) -> str | None:
    """Candidate name as the registrar would have stored it, or None."""
    if not file_name:
        return None
    try:
        return sanitize_file_name(file_name)
    except SecurityError:
        return None


class ImageVerifier:
    """Verification orchestrator."""

    def __init__(
        self,
        matcher: ProvenanceMatcher,
        limits: SecurityLimits | None = None,
    ) -> None:
        self.matcher = matcher
        self.limits = limits or SecurityLimits()

    def verify(
        self,
        data: bytes,
        file_name: str | None,
        requesting_user_id: str,
    ) -> VerificationVerdict:
        """Verify candidate bytes on behalf of a user.

        Args:
            data: Raw candidate bytes
            file_name: Candidate's file name (used for the fallback lookup)
            requesting_user_id: Trusted identity of the caller

        Returns:
            VerificationVerdict
        """
        trace: list[str] = []
        candidate_fingerprint = None
        try:
            candidate_fingerprint = fingerprint(data)
            trace.append(f"candidate fingerprint {candidate_fingerprint}")
            name = lookup_name(file_name)
            if name != file_name:
                trace.append(f"candidate name {file_name!r} normalized to {name!r}")
            verdict = self.matcher.match(candidate_fingerprint, name, requesting_user_id, trace)
        except Exception as e:
            return self._error_verdict(e, trace, file_name, candidate_fingerprint)

        verdict.trace = trace
        logger.info(
            f"Verification for user {requesting_user_id}: {verdict.status.value} "
            f"({verdict.code.value}) file={file_name!r}"
        )
        return verdict

    def verify_file(
        self,
        path: Path,
        requesting_user_id: str,
        file_name: str | None = None,
    ) -> VerificationVerdict:
        """Verify a file on disk.

        Args:
            path: Candidate file
            requesting_user_id: Trusted identity of the caller
            file_name: Name to use for the fallback lookup (default: path.name)
        """
        name = file_name or path.name
        try:
            data = safe_read_file(path, self.limits)
        except (IOFailure, SecurityError) as e:
            return self._error_verdict(e, [], name, None)
        return self.verify(data, name, requesting_user_id)

    def verify_and_report(
        self,
        path: Path,
        requesting_user_id: str,
        output_dir: Path,
        file_name: str | None = None,
    ) -> tuple[VerificationVerdict, dict[str, Path]]:
        """Verify a file and write reports.

        Returns:
            Tuple of (verdict, report_paths)
        """
        verdict = self.verify_file(path, requesting_user_id, file_name)

        output_dir.mkdir(parents=True, exist_ok=True)
        paths = {}

        # Write JSON report
        json_path = output_dir / "verification_report.json"
        verdict.write_json(json_path)
        paths["json"] = json_path

        # Write Markdown report
        md_path = output_dir / "verification_report.md"
        verdict.write_markdown(md_path)
        paths["markdown"] = md_path

        return verdict, paths

    def _error_verdict(
        self,
        error: Exception,
        trace: list[str],
        file_name: str | None,
        candidate_fingerprint: str | None,
    ) -> VerificationVerdict:
        error_id = generate_error_id()
        trace.append(f"{type(error).__name__}: {error}")

        if isinstance(error, (IOFailure, SecurityError)):
            logger.warning(f"Candidate could not be read [{error_id}]: {error}")
            code = VerdictCode.READ_FAILED
            detail = "The candidate file could not be read. Please try again."
        else:
            logger.exception(f"Verification failed [{error_id}]: {error}")
            code = VerdictCode.INTERNAL_ERROR
            detail = "An error occurred during verification. Please try again."

        return VerificationVerdict(
            status=VerdictStatus.ERROR,
            code=code,
            detail=detail,
            file_name=file_name,
            fingerprint=candidate_fingerprint,
            error_id=error_id,
            trace=trace,
        )
