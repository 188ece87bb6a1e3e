"""Tests for owner-scoped matching and the verdict decision."""

from __future__ import annotations

import pytest

from conftest import make_record, mutate_fingerprint

from imageseal.config import DEFAULT_PLACEHOLDER_KEY, EngineConfig
from imageseal.errors import MalformedSignature
from imageseal.hashing import fingerprint
from imageseal.provenance.keys import KeyManager
from imageseal.provenance.matcher import ProvenanceMatcher
from imageseal.provenance.verdict import MatchPath, VerdictCode, VerdictStatus
from imageseal.stores.memory import MemoryKeyProfileStore, MemoryRecordStore

CANDIDATE = fingerprint(b"candidate image")


class SpyVerifier:
    """Stands in for Signer and records every verify call."""

    def __init__(self, factory, public_key):
        self.factory = factory
        self.public_key = public_key

    def verify(self, fp, signature):
        self.factory.calls.append((self.public_key, fp, signature))
        if isinstance(self.factory.result, Exception):
            raise self.factory.result
        return self.factory.result


class SpyFactory:
    """Verifier factory handing out SpyVerifiers."""

    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def __call__(self, public_key):
        return SpyVerifier(self, public_key)


@pytest.fixture
def records() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def key_store(alice_keys, bob_keys) -> MemoryKeyProfileStore:
    store = MemoryKeyProfileStore()
    store.upsert_public_key("alice", alice_keys.public_key)
    store.upsert_public_key("bob", bob_keys.public_key)
    return store


@pytest.fixture
def spy() -> SpyFactory:
    return SpyFactory()


@pytest.fixture
def matcher(records, key_store, spy) -> ProvenanceMatcher:
    return ProvenanceMatcher(records, KeyManager(key_store, EngineConfig()), verifier_factory=spy)


class TestLookupOrder:
    """Test fingerprint lookup, name fallback and ownership scope."""

    def test_fingerprint_hit(self, matcher, records, spy, alice_keys):
        """Test an exact fingerprint hit goes straight to the signature check."""
        record = make_record("alice", "photo.png", CANDIDATE, signature="c2lnLWE=")
        records.insert(record)

        verdict = matcher.match(CANDIDATE, "renamed.png", "alice")

        assert verdict.status is VerdictStatus.VERIFIED
        assert verdict.code is VerdictCode.SIGNATURE_VALID
        assert verdict.match is MatchPath.FINGERPRINT
        assert verdict.image_id == record.id
        assert verdict.owner_user_id == "alice"
        assert verdict.uploaded_at == record.created_at
        assert spy.calls == [(alice_keys.public_key, CANDIDATE, "c2lnLWE=")]

    def test_fingerprint_before_name(self, matcher, records):
        """Test a fingerprint hit wins over a record with the candidate's name."""
        by_name = make_record("alice", "photo.png", mutate_fingerprint(CANDIDATE, 2))
        by_fp = make_record("alice", "other.png", CANDIDATE)
        records.insert(by_name)
        records.insert(by_fp)

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert verdict.image_id == by_fp.id
        assert verdict.match is MatchPath.FINGERPRINT

    def test_no_record(self, matcher, spy):
        """Test nothing registered gives NOT_FOUND."""
        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert verdict.status is VerdictStatus.NOT_FOUND
        assert verdict.code is VerdictCode.NO_RECORD
        assert verdict.match is MatchPath.NONE
        assert spy.calls == []

    def test_no_file_name(self, matcher, records):
        """Test a fingerprint miss without a name gives NOT_FOUND."""
        records.insert(make_record("alice", "photo.png", mutate_fingerprint(CANDIDATE, 1)))
        assert matcher.match(CANDIDATE, None, "alice").status is VerdictStatus.NOT_FOUND

    def test_other_owner_identical_bytes(self, matcher, records, spy):
        """Test another user's record is invisible even with identical content."""
        records.insert(make_record("bob", "photo.png", CANDIDATE))

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert verdict.status is VerdictStatus.NOT_FOUND
        assert spy.calls == []

    def test_each_owner_sees_own_record(self, matcher, records, spy, alice_keys, bob_keys):
        """Test identical uploads by two users resolve to their own records."""
        alice_record = make_record("alice", "photo.png", CANDIDATE)
        bob_record = make_record("bob", "photo.png", CANDIDATE)
        records.insert(alice_record)
        records.insert(bob_record)

        assert matcher.match(CANDIDATE, "photo.png", "alice").image_id == alice_record.id
        assert matcher.match(CANDIDATE, "photo.png", "bob").image_id == bob_record.id
        assert [call[0] for call in spy.calls] == [alice_keys.public_key, bob_keys.public_key]

    def test_empty_user(self, matcher, records):
        """Test an empty requesting user matches nothing."""
        records.insert(make_record("", "photo.png", CANDIDATE))
        assert matcher.match(CANDIDATE, "photo.png", "").status is VerdictStatus.NOT_FOUND

    def test_newest_record_wins(self, matcher, records):
        """Test the most recent of several matching records is used."""
        older = make_record("alice", "photo.png", CANDIDATE, created_at="2024-01-01T00:00:00+00:00")
        newer = make_record("alice", "photo.png", CANDIDATE, created_at="2024-06-01T00:00:00+00:00")
        records.insert(newer)
        records.insert(older)

        assert matcher.match(CANDIDATE, "photo.png", "alice").image_id == newer.id

    def test_trace(self, matcher, records):
        """Test the decision path is recorded in the trace."""
        records.insert(make_record("alice", "photo.png", CANDIDATE))
        trace = []
        matcher.match(CANDIDATE, "photo.png", "alice", trace)
        assert any("fingerprint lookup hit" in line for line in trace)
        assert any("signature check passed" in line for line in trace)


class TestTolerance:
    """Test the name-fallback tolerance boundary."""

    def test_at_tolerance(self, matcher, records, spy):
        """Test exactly `tolerance` differences reach the signature check."""
        stored = mutate_fingerprint(CANDIDATE, 5)
        records.insert(make_record("alice", "photo.png", stored))

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert len(spy.calls) == 1
        assert spy.calls[0][1] == CANDIDATE
        assert verdict.status is VerdictStatus.VERIFIED
        assert verdict.code is VerdictCode.SIGNATURE_VALID_MINOR_DIFFERENCE
        assert verdict.match is MatchPath.NAME_TOLERATED
        assert verdict.fingerprint_distance == 5
        assert verdict.minor_difference_tolerated is True
        assert verdict.stored_fingerprint == stored
        assert "Minor difference tolerated" in verdict.detail

    def test_beyond_tolerance(self, matcher, records, spy):
        """Test one more difference is CONTENT_MODIFIED without a signature check."""
        stored = mutate_fingerprint(CANDIDATE, 6)
        record = make_record("alice", "photo.png", stored)
        records.insert(record)

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert spy.calls == []
        assert verdict.status is VerdictStatus.CONTENT_MODIFIED
        assert verdict.code is VerdictCode.FINGERPRINT_MISMATCH
        assert verdict.match is MatchPath.NAME_MODIFIED
        assert verdict.fingerprint_distance == 6
        assert verdict.image_id == record.id
        assert verdict.minor_difference_tolerated is False

    def test_tolerated_but_signature_fails(self, matcher, records, spy):
        """Test a tolerated match still needs a valid signature."""
        spy.result = False
        records.insert(make_record("alice", "photo.png", mutate_fingerprint(CANDIDATE, 3)))

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert verdict.status is VerdictStatus.SIGNATURE_INVALID
        assert verdict.match is MatchPath.NAME_TOLERATED

    def test_zero_tolerance(self, records, key_store, spy):
        """Test tolerance 0 treats any difference as modified."""
        matcher = ProvenanceMatcher(records, KeyManager(key_store), tolerance=0, verifier_factory=spy)
        records.insert(make_record("alice", "photo.png", mutate_fingerprint(CANDIDATE, 1)))

        assert matcher.match(CANDIDATE, "photo.png", "alice").status is VerdictStatus.CONTENT_MODIFIED
        assert spy.calls == []


class TestSignatureOutcomes:
    """Test key resolution and signature check outcomes."""

    def test_signature_mismatch(self, matcher, records, spy):
        """Test a failing signature gives SIGNATURE_INVALID."""
        spy.result = False
        records.insert(make_record("alice", "photo.png", CANDIDATE))

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert verdict.status is VerdictStatus.SIGNATURE_INVALID
        assert verdict.code is VerdictCode.SIGNATURE_MISMATCH

    def test_malformed_signature(self, matcher, records, spy):
        """Test an undecodable stored signature gives SIGNATURE_INVALID."""
        spy.result = MalformedSignature("bad base64")
        records.insert(make_record("alice", "photo.png", CANDIDATE))

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert verdict.status is VerdictStatus.SIGNATURE_INVALID
        assert verdict.code is VerdictCode.SIGNATURE_MALFORMED

    def test_owner_without_key(self, matcher, records, spy):
        """Test a record whose owner has no key gives KEY_UNAVAILABLE."""
        records.insert(make_record("carol", "photo.png", CANDIDATE))

        verdict = matcher.match(CANDIDATE, "photo.png", "carol")

        assert verdict.status is VerdictStatus.KEY_UNAVAILABLE
        assert verdict.code is VerdictCode.KEY_MISSING
        assert spy.calls == []

    def test_owner_with_placeholder_not_healed(self, records, key_store, spy):
        """Test lookups never provision keys, even with self-heal configured."""
        key_store.upsert_public_key("carol", DEFAULT_PLACEHOLDER_KEY)
        manager = KeyManager(key_store, EngineConfig(self_heal_keys=True))
        matcher = ProvenanceMatcher(records, manager, verifier_factory=spy)
        records.insert(make_record("carol", "photo.png", CANDIDATE))

        verdict = matcher.match(CANDIDATE, "photo.png", "carol")

        assert verdict.status is VerdictStatus.KEY_UNAVAILABLE
        assert key_store.get_public_key("carol") == DEFAULT_PLACEHOLDER_KEY

    def test_owner_with_broken_key(self, matcher, records, key_store):
        """Test a corrupt stored key is reported distinctly."""
        key_store.upsert_public_key("alice", "garbage")
        records.insert(make_record("alice", "photo.png", CANDIDATE))

        verdict = matcher.match(CANDIDATE, "photo.png", "alice")

        assert verdict.status is VerdictStatus.KEY_UNAVAILABLE
        assert verdict.code is VerdictCode.KEY_MALFORMED
