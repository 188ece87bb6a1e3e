"""Owner-scoped record matching and the verdict decision.

Steps, strictly in order:

1. Fingerprint lookup among the requesting user's records.
2. Name lookup among the same user's records, if step 1 missed.
3. Fingerprint comparison for a name hit: identical, within tolerance, or
   modified (terminal).
4. Signature check with the record owner's public key against the freshly
   computed fingerprint.

A record belonging to another user is never returned, even when its bytes
are identical.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from imageseal.errors import KeyNotFound, MalformedKey, MalformedSignature
from imageseal.hashing import fingerprint_distance
from imageseal.provenance.keys import KeyManager
from imageseal.provenance.signing import DEFAULT_SALT_LENGTH, Signer
from imageseal.provenance.verdict import MatchPath, VerdictCode, VerdictStatus, VerificationVerdict
from imageseal.stores.base import ImageRecord, RecordStore

logger = logging.getLogger(__name__)

VerifierFactory = Callable[[str], Signer]


class ProvenanceMatcher:
    """Decides a verdict for one candidate fingerprint within one user's scope."""

    def __init__(
        self,
        records: RecordStore,
        keys: KeyManager,
        tolerance: int = 5,
        salt_length: int = DEFAULT_SALT_LENGTH,
        verifier_factory: VerifierFactory | None = None,
    ) -> None:
        self.records = records
        self.keys = keys
        self.tolerance = tolerance
        self.verifier_factory = verifier_factory or (
            lambda public_key: Signer(public_key=public_key, salt_length=salt_length)
        )

    def match(
        self,
        fingerprint: str,
        file_name: str | None,
        requesting_user_id: str,
        trace: list[str] | None = None,
    ) -> VerificationVerdict:
        """Run the lookup and decision steps.

        Args:
            fingerprint: Freshly computed fingerprint of the candidate
            file_name: Candidate's file name, used only for the fallback lookup
            requesting_user_id: Trusted identity; scopes every lookup
            trace: Internal diagnostics list to append to

        Returns:
            VerificationVerdict (never ERROR; store failures propagate)
        """
        if trace is None:
            trace = []

        base = {"file_name": file_name, "fingerprint": fingerprint}

        if not requesting_user_id:
            trace.append("no requesting user id; nothing is in scope")
            return VerificationVerdict(
                status=VerdictStatus.NOT_FOUND,
                code=VerdictCode.NO_RECORD,
                detail="This image has not been registered in our system.",
                **base,
            )

        record = self.records.find_by_fingerprint(fingerprint, requesting_user_id)
        if record is not None:
            trace.append(f"fingerprint lookup hit record {record.id}")
            return self._check_signature(record, fingerprint, MatchPath.FINGERPRINT, None, trace, base)

        trace.append("fingerprint lookup missed")

        record = self.records.find_by_name(file_name, requesting_user_id) if file_name else None
        if record is None:
            trace.append(f"name lookup missed for {file_name!r}")
            return VerificationVerdict(
                status=VerdictStatus.NOT_FOUND,
                code=VerdictCode.NO_RECORD,
                detail="This image has not been registered in our system.",
                **base,
            )

        trace.append(f"name lookup hit record {record.id}")

        if record.fingerprint == fingerprint:
            return self._check_signature(record, fingerprint, MatchPath.NAME_EXACT, 0, trace, base)

        distance = fingerprint_distance(fingerprint, record.fingerprint or "")
        trace.append(f"fingerprint distance {distance} (tolerance {self.tolerance})")

        if distance > self.tolerance:
            return VerificationVerdict(
                status=VerdictStatus.CONTENT_MODIFIED,
                code=VerdictCode.FINGERPRINT_MISMATCH,
                detail=(
                    "An image with this filename exists in our system, "
                    "but its content has been modified."
                ),
                match=MatchPath.NAME_MODIFIED,
                stored_fingerprint=record.fingerprint,
                fingerprint_distance=distance,
                **self._record_metadata(record),
                **base,
            )

        return self._check_signature(record, fingerprint, MatchPath.NAME_TOLERATED, distance, trace, base)

    @staticmethod
    def _record_metadata(record: ImageRecord) -> dict[str, str]:
        return {
            "image_id": record.id,
            "owner_user_id": record.owner_user_id,
            "uploaded_at": record.created_at,
        }

    def _check_signature(
        self,
        record: ImageRecord,
        fingerprint: str,
        match: MatchPath,
        distance: int | None,
        trace: list[str],
        base: dict[str, str | None],
    ) -> VerificationVerdict:
        tolerated = match is MatchPath.NAME_TOLERATED
        common = {
            "match": match,
            "stored_fingerprint": record.fingerprint,
            "fingerprint_distance": distance,
            "minor_difference_tolerated": tolerated,
            **self._record_metadata(record),
            **base,
        }

        try:
            public_key = self.keys.resolve_public_key(record.owner_user_id, self_heal=False)
        except KeyNotFound:
            trace.append(f"no public key on file for owner {record.owner_user_id}")
            return VerificationVerdict(
                status=VerdictStatus.KEY_UNAVAILABLE,
                code=VerdictCode.KEY_MISSING,
                detail=(
                    "Could not retrieve the public key for verification. "
                    "The image exists but cannot be verified."
                ),
                **common,
            )
        except MalformedKey as e:
            trace.append(f"stored public key unusable: {e}")
            return VerificationVerdict(
                status=VerdictStatus.KEY_UNAVAILABLE,
                code=VerdictCode.KEY_MALFORMED,
                detail=(
                    "The public key on file is corrupt. "
                    "The image exists but cannot be verified."
                ),
                **common,
            )

        verifier = self.verifier_factory(public_key)
        try:
            valid = verifier.verify(fingerprint, record.signature)
        except MalformedSignature as e:
            trace.append(f"stored signature unusable: {e}")
            return VerificationVerdict(
                status=VerdictStatus.SIGNATURE_INVALID,
                code=VerdictCode.SIGNATURE_MALFORMED,
                detail="The image was found but its stored signature is corrupt.",
                **common,
            )

        trace.append(f"signature check {'passed' if valid else 'failed'}")
        logger.debug(f"Signature check for record {record.id}: valid={valid} match={match.value}")

        if valid and tolerated:
            return VerificationVerdict(
                status=VerdictStatus.VERIFIED,
                code=VerdictCode.SIGNATURE_VALID_MINOR_DIFFERENCE,
                detail=(
                    "This image is authentic and has not been significantly modified "
                    "since it was signed. Minor difference tolerated."
                ),
                **common,
            )
        if valid:
            return VerificationVerdict(
                status=VerdictStatus.VERIFIED,
                code=VerdictCode.SIGNATURE_VALID,
                detail="This image is authentic and has not been modified since it was signed.",
                **common,
            )
        return VerificationVerdict(
            status=VerdictStatus.SIGNATURE_INVALID,
            code=VerdictCode.SIGNATURE_MISMATCH,
            detail=(
                "The image was found but its signature verification failed. "
                "This could indicate tampering."
            ),
            **common,
        )
