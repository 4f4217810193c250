"""
Tests for the validity engine

Covers reconciliation against the authoritative record, duplicate
handling, the expiration policy, scope decisions, concurrency and the
lineage entries each outcome produces.
"""

import asyncio
from datetime import timedelta

import pytest

from consent_lineage.exceptions import (
    ConsentNotFoundError,
    InvalidTimestampError,
    MissingFieldError,
    SupersededError,
)
from consent_lineage.schemas.consent import ConsentDecision, ConsentState
from consent_lineage.services.expiration import ExpirationPolicy
from consent_lineage.services.scope_matrix import AllowAllScopeMatrix, MappingScopeMatrix
from consent_lineage.services.timestamp_validator import TimestampValidator
from consent_lineage.services.validity_engine import ValidityEngine, build_validity_engine
from utils.mock_utils import T0, make_record

SUBJECT = "1234-5678-ABCD"


@pytest.fixture(autouse=True)
def server_time(clock):
    """Server clock a little after the records' creation"""
    clock.advance(10)


def make_engine(session_factory, lineage_log, clock, **kwargs) -> ValidityEngine:
    return ValidityEngine(
        session_factory=session_factory,
        lineage_log=lineage_log,
        validator=TimestampValidator(clock=clock),
        clock=clock,
        **kwargs,
    )


class TestFirstSubmission:
    async def test_granted_without_prior_record(self, validity_engine, lineage_log):
        outcome = await validity_engine.receive(make_record())

        assert outcome.decision == ConsentDecision.GRANTED
        assert outcome.state == ConsentState.VALIDATED
        assert not outcome.duplicate
        assert outcome.message == "Access granted"

        entries = await lineage_log.entries(SUBJECT)
        assert len(entries) == 1
        assert entries[0].result == "Access granted"
        assert entries[0].from_state == "Submitted"
        assert entries[0].to_state == "Validated"

    async def test_authoritative_record_persisted(self, validity_engine, clock):
        await validity_engine.receive(make_record())

        record = await validity_engine.get_record(SUBJECT)
        assert record.state == ConsentState.VALIDATED
        assert record.decision == ConsentDecision.GRANTED
        assert record.created_at == T0
        assert record.validated_at == clock.now()

    async def test_timestamps_are_monotonic(self, validity_engine):
        outcome = await validity_engine.receive(make_record())
        record = outcome.record
        assert record.created_at <= record.stored_at <= record.request_at <= record.validated_at

    async def test_validated_at_not_before_skewed_request(self, validity_engine, clock):
        # Client clock two minutes ahead, within tolerance
        ahead = clock.now() + timedelta(minutes=2)
        outcome = await validity_engine.receive(make_record(created_at=ahead))
        assert outcome.record.validated_at >= outcome.record.request_at

    async def test_missing_request_at_stamped_on_receipt(self, validity_engine, clock):
        outcome = await validity_engine.receive(make_record(request_after=None))
        assert outcome.record.request_at == clock.now()

    async def test_client_expiry_is_ignored(self, validity_engine):
        record = make_record().model_copy(update={"expires_at": T0 + timedelta(seconds=5)})
        outcome = await validity_engine.receive(record)

        assert outcome.record.expires_at is None
        assert outcome.decision == ConsentDecision.GRANTED

    async def test_unknown_subject_not_found(self, validity_engine):
        with pytest.raises(ConsentNotFoundError):
            await validity_engine.get_record("nobody")


class TestRejections:
    async def test_invalid_timestamp_rejected_and_logged(self, validity_engine, lineage_log):
        with pytest.raises(InvalidTimestampError):
            await validity_engine.receive(make_record(stored_after=-5))

        entries = await lineage_log.entries(SUBJECT)
        assert len(entries) == 1
        assert entries[0].result == "Rejected: InvalidTimestamp"
        assert entries[0].decision is None

        with pytest.raises(ConsentNotFoundError):
            await validity_engine.get_record(SUBJECT)

    async def test_far_future_request_rejected(self, validity_engine, lineage_log, clock):
        record = make_record().model_copy(update={"request_at": clock.now() + timedelta(days=365)})

        with pytest.raises(InvalidTimestampError) as exc_info:
            await validity_engine.receive(record)
        assert exc_info.value.field == "request_at"

        entries = await lineage_log.entries(SUBJECT)
        assert [e.result for e in entries] == ["Rejected: InvalidTimestamp"]
        with pytest.raises(ConsentNotFoundError):
            await validity_engine.get_record(SUBJECT)

    async def test_future_creation_rejected(self, validity_engine, clock):
        with pytest.raises(InvalidTimestampError) as exc_info:
            await validity_engine.receive(make_record(created_at=clock.now() + timedelta(hours=1)))
        assert exc_info.value.field == "created_at"

    async def test_older_record_superseded(self, validity_engine, lineage_log):
        await validity_engine.receive(make_record(created_at=T0))

        with pytest.raises(SupersededError):
            await validity_engine.receive(make_record(created_at=T0 - timedelta(minutes=1), consent_payload="older"))

        record = await validity_engine.get_record(SUBJECT)
        assert record.consent_payload == "abc123"
        entries = await lineage_log.entries(SUBJECT)
        assert entries[-1].result == "Rejected: Superseded"

    async def test_same_creation_different_payload_first_writer_wins(self, validity_engine):
        await validity_engine.receive(make_record(consent_payload="first"))

        with pytest.raises(SupersededError):
            await validity_engine.receive(make_record(consent_payload="second", request_after=3))

        record = await validity_engine.get_record(SUBJECT)
        assert record.consent_payload == "first"

    async def test_reject_malformed_logs_then_raises(self, validity_engine, lineage_log):
        with pytest.raises(MissingFieldError):
            await validity_engine.reject_malformed(None, MissingFieldError(["deviceId"]), consent_string="abc123")

        entries = await lineage_log.entries("unknown")
        assert len(entries) == 1
        assert entries[0].result == "Rejected: MissingField"
        assert entries[0].consent_string == "abc123"


class TestDuplicates:
    async def test_retransmission_returns_cached_decision(self, validity_engine, lineage_log, clock):
        first = await validity_engine.receive(make_record(request_after=2))
        clock.advance(30)
        second = await validity_engine.receive(make_record(request_after=20))

        assert second.duplicate
        assert second.decision == first.decision
        assert second.reason == "Duplicate"

        record = await validity_engine.get_record(SUBJECT)
        assert record.validated_at == first.record.validated_at

        entries = await lineage_log.entries(SUBJECT)
        assert [e.transition for e in entries] == ["validate", "duplicate"]
        assert entries[1].result == "Duplicate"

    async def test_identical_attempt_not_logged_twice(self, validity_engine, lineage_log):
        record = make_record()
        first = await validity_engine.receive(record)
        again = await validity_engine.receive(record)

        assert again.duplicate
        assert again.decision == first.decision
        assert len(await lineage_log.entries(SUBJECT)) == 1

    async def test_replayed_attempt_after_replacement_is_superseded(self, validity_engine, lineage_log):
        grant = make_record(consent_payload="grant")
        await validity_engine.receive(grant)
        await validity_engine.receive(make_record(created_at=T0 + timedelta(seconds=3), consent_payload="revoke"))

        with pytest.raises(SupersededError):
            await validity_engine.receive(grant)

        record = await validity_engine.get_record(SUBJECT)
        assert record.consent_payload == "revoke"
        entries = await lineage_log.entries(SUBJECT)
        assert entries[-1].result == "Rejected: Superseded"

    async def test_duplicate_of_expired_grant_is_denied(self, session_factory, lineage_log, clock):
        engine = make_engine(session_factory, lineage_log, clock, expiration=ExpirationPolicy(timedelta(minutes=1)))
        first = await engine.receive(make_record())
        assert first.decision == ConsentDecision.GRANTED

        clock.advance(120)
        second = await engine.receive(make_record(request_after=100))
        assert second.duplicate
        assert second.decision == ConsentDecision.DENIED


class TestExpiration:
    async def test_past_expiry_denies(self, session_factory, lineage_log, clock):
        engine = make_engine(session_factory, lineage_log, clock, expiration=ExpirationPolicy(timedelta(seconds=5)))
        outcome = await engine.receive(make_record())

        assert outcome.state == ConsentState.EXPIRED
        assert outcome.decision == ConsentDecision.DENIED
        assert outcome.message == "Consent expired"
        assert outcome.record.expires_at == T0 + timedelta(seconds=5)

        entries = await lineage_log.entries(SUBJECT)
        assert entries[0].result == "Consent expired"

    async def test_expiry_overrides_granting_scope(self, session_factory, lineage_log, clock):
        engine = make_engine(
            session_factory,
            lineage_log,
            clock,
            expiration=ExpirationPolicy(timedelta(seconds=5)),
            scope_matrix=MappingScopeMatrix({"abc123": ["analytics"]}),
        )
        outcome = await engine.receive(make_record(), ["analytics"])
        assert outcome.decision == ConsentDecision.DENIED

    async def test_future_expiry_is_recorded(self, session_factory, lineage_log, clock):
        engine = make_engine(session_factory, lineage_log, clock, expiration=ExpirationPolicy(timedelta(days=365)))
        outcome = await engine.receive(make_record())

        assert outcome.decision == ConsentDecision.GRANTED
        assert outcome.record.expires_at == T0 + timedelta(days=365)


class TestScopes:
    async def test_denied_scope_propagated(self, session_factory, lineage_log, clock):
        engine = make_engine(
            session_factory, lineage_log, clock, scope_matrix=MappingScopeMatrix({"abc123": ["analytics"]})
        )
        outcome = await engine.receive(make_record(), ["analytics", "advertising"])

        assert outcome.state == ConsentState.VALIDATED
        assert outcome.decision == ConsentDecision.DENIED
        entries = await lineage_log.entries(SUBJECT)
        assert entries[0].result == "Access denied"

    async def test_built_engine_uses_given_matrix(self, session_factory):
        matrix = MappingScopeMatrix({"abc123": ["analytics"]})
        engine = build_validity_engine(session_factory, scope_matrix=matrix)
        assert engine.scope_matrix is matrix

    async def test_built_engine_allows_all_by_default(self, session_factory):
        engine = build_validity_engine(session_factory)
        assert isinstance(engine.scope_matrix, AllowAllScopeMatrix)


class TestAccessDecision:
    async def test_no_consent_denies(self, validity_engine):
        check = await validity_engine.access_decision(SUBJECT)
        assert check.decision == ConsentDecision.DENIED
        assert check.reason == "NoConsent"

    async def test_granted_record(self, validity_engine):
        await validity_engine.receive(make_record())
        check = await validity_engine.access_decision(SUBJECT)
        assert check.decision == ConsentDecision.GRANTED

    async def test_expiry_applied_at_read_time_without_mutation(self, session_factory, lineage_log, clock):
        engine = make_engine(session_factory, lineage_log, clock, expiration=ExpirationPolicy(timedelta(minutes=1)))
        await engine.receive(make_record())

        clock.advance(300)
        check = await engine.access_decision(SUBJECT)
        assert check.decision == ConsentDecision.DENIED
        assert check.reason == "Expired"

        record = await engine.get_record(SUBJECT)
        assert record.state == ConsentState.VALIDATED
        assert len(await lineage_log.entries(SUBJECT)) == 1


class TestConcurrency:
    @pytest.mark.parametrize("newer_first", [True, False])
    async def test_later_creation_wins(self, validity_engine, newer_first):
        older = make_record(created_at=T0, consent_payload="v1")
        newer = make_record(created_at=T0 + timedelta(seconds=3), consent_payload="v2")
        submissions = [newer, older] if newer_first else [older, newer]

        results = await asyncio.gather(*(validity_engine.receive(r) for r in submissions), return_exceptions=True)

        record = await validity_engine.get_record(SUBJECT)
        assert record.consent_payload == "v2"
        assert record.created_at == T0 + timedelta(seconds=3)
        if newer_first:
            assert any(isinstance(r, SupersededError) for r in results)

    async def test_subjects_are_independent(self, validity_engine):
        records = [make_record(subject_id=f"device-{i}") for i in range(5)]
        outcomes = await asyncio.gather(*(validity_engine.receive(r) for r in records))

        assert all(o.decision == ConsentDecision.GRANTED for o in outcomes)
        assert len(validity_engine.locks) == 0

    async def test_lineage_count_equals_transitions(self, validity_engine, lineage_log, clock):
        transitions = 0

        await validity_engine.receive(make_record())
        transitions += 1
        clock.advance(5)
        await validity_engine.receive(make_record(request_after=12))
        transitions += 1
        with pytest.raises(SupersededError):
            await validity_engine.receive(make_record(created_at=T0 - timedelta(seconds=30)))
        transitions += 1
        with pytest.raises(InvalidTimestampError):
            await validity_engine.receive(make_record(stored_after=-1))
        transitions += 1

        assert len(await lineage_log.entries(SUBJECT)) == transitions
        entries, verification = await validity_engine.lineage(SUBJECT)
        assert verification.valid
        assert [e.sequence for e in entries] == list(range(1, transitions + 1))
