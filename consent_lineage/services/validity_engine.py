"""
Validity Engine

Server-side reconciliation of submitted consent records. For each
submission, inside the subject's critical section:

1. Received: timestamps are validated; a violation rejects the submission.
2. Reconciling: the submission is compared with the authoritative record.
   An older or conflicting record is superseded, a retransmission of the
   authoritative record is answered from its cached decision.
3. Checking expiration: the server's expiration policy may expire the
   record, which always denies access.
4. Checking scope: the scope matrix grants or denies the requested scopes.
5. Validated: the decision is stamped, persisted as the authoritative
   record and appended to the lineage log in the same transaction.

Every rejection, decision and duplicate produces exactly one lineage entry.
"""

import logging
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import NoReturn

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from consent_lineage.config import settings
from consent_lineage.database import AsyncSessionLocal
from consent_lineage.exceptions import (
    ConsentLineageError,
    ConsentNotFoundError,
    InvalidTimestampError,
    SupersededError,
)
from consent_lineage.schemas.consent import ConsentDecision, ConsentRecord, ConsentState
from consent_lineage.schemas.lineage import (
    RESULT_DENIED,
    RESULT_EXPIRED,
    RESULT_GRANTED,
    ChainVerification,
    LineageEntry,
)
from consent_lineage.services import state_machine
from consent_lineage.services.consent_repository import ConsentRepository
from consent_lineage.services.expiration import ExpirationPolicy
from consent_lineage.services.lineage_log import (
    DatabaseLineageLog,
    JsonLinesLineageLog,
    LineageLog,
    rejection_fields,
    verify_chain,
)
from consent_lineage.services.scope_matrix import AllowAllScopeMatrix, ScopeMatrix
from consent_lineage.services.timestamp_validator import TimestampValidator
from consent_lineage.utils.locks import SubjectLocks
from consent_lineage.utils.timestamps import Clock, SystemClock, format_rfc3339

logger = logging.getLogger(__name__)

# Number of decided attempts remembered for exact-retransmission replies
DEFAULT_OUTCOME_CACHE_SIZE = 1024


@dataclass(frozen=True)
class ValidityOutcome:
    """Result of a submission the engine accepted."""

    record: ConsentRecord
    decision: ConsentDecision
    duplicate: bool = False
    entry: LineageEntry | None = None

    @property
    def state(self) -> ConsentState:
        return self.record.state

    @property
    def granted(self) -> bool:
        return self.decision == ConsentDecision.GRANTED

    @property
    def reason(self) -> str | None:
        if self.duplicate:
            return "Duplicate"
        if self.record.state == ConsentState.EXPIRED or self.decision_expired:
            return "Expired"
        return None

    @property
    def decision_expired(self) -> bool:
        return self.record.decision == ConsentDecision.GRANTED and self.decision == ConsentDecision.DENIED

    @property
    def message(self) -> str:
        if self.record.state == ConsentState.EXPIRED or self.decision_expired:
            return RESULT_EXPIRED
        return RESULT_GRANTED if self.granted else RESULT_DENIED


@dataclass(frozen=True)
class AccessCheck:
    """Current access decision for a subject, computed without mutation."""

    subject_id: str
    decision: ConsentDecision
    reason: str | None = None
    record: ConsentRecord | None = None


class ValidityEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        lineage_log: LineageLog | None = None,
        validator: TimestampValidator | None = None,
        expiration: ExpirationPolicy | None = None,
        scope_matrix: ScopeMatrix | None = None,
        clock: Clock | None = None,
        locks: SubjectLocks | None = None,
        cache_size: int = DEFAULT_OUTCOME_CACHE_SIZE,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.lineage_log = lineage_log or DatabaseLineageLog(session_factory)
        self.validator = validator or TimestampValidator(clock=self.clock)
        self.expiration = expiration or ExpirationPolicy()
        self.scope_matrix = scope_matrix or AllowAllScopeMatrix()
        self.locks = locks or SubjectLocks()
        self.cache_size = cache_size
        self._outcomes: OrderedDict[tuple, ValidityOutcome] = OrderedDict()

    async def receive(self, record: ConsentRecord, requested_scopes: Sequence[str] = ()) -> ValidityOutcome:
        """
        Reconcile a submitted record and decide access.

        Args:
            record: The client's record as received
            requested_scopes: Scopes to evaluate against the consent payload

        Returns:
            ValidityOutcome with the authoritative record and the decision

        Raises:
            InvalidTimestampError: timestamps violate ordering or freshness
            SupersededError: a newer or conflicting authoritative record exists
        """
        async with self.locks.hold(record.subject_id):
            now = self.clock.now()
            received = self._as_received(record, now)

            cached = self._outcomes.get(received.attempt_key)
            if cached is not None:
                self._outcomes.move_to_end(received.attempt_key)
                logger.info(
                    f"Repeated attempt for {received.subject_id} answered from cache",
                    extra={"subject_id": received.subject_id},
                )
                return replace(cached, duplicate=True, decision=self._current_decision(cached.record, now))

            async with self.session_factory() as session:
                try:
                    self.validator.validate(received, now)
                except InvalidTimestampError as e:
                    await self._reject(session, received, now, e.reason)
                    raise

                repository = ConsentRepository(session)
                current = await repository.get(received.subject_id)

                if current is not None and current.created_at >= received.created_at:
                    if current.created_at == received.created_at and current.consent_payload == received.consent_payload:
                        return await self._duplicate(session, current, received, now)

                    await self._reject(session, received, now, SupersededError.reason)
                    raise SupersededError(
                        received.subject_id,
                        format_rfc3339(current.created_at),
                        format_rfc3339(received.created_at),
                    )

                transition = self._decide(received, requested_scopes, now)
                await repository.save(transition.record)
                entry = await self.lineage_log.append(transition, session=session)
                await session.commit()

            self.lineage_log.committed(entry)
            outcome = ValidityOutcome(record=transition.record, decision=transition.record.decision, entry=entry)
            self._forget(received.subject_id)
            self._remember(received.attempt_key, outcome)
            logger.info(
                f"Consent {received.subject_id} {transition.to_state.value}: {outcome.decision.value}",
                extra={"subject_id": received.subject_id, "transition": transition.name},
            )
            return outcome

    def _as_received(self, record: ConsentRecord, now: datetime) -> ConsentRecord:
        """Strip server-owned fields and place the record in the Submitted state."""
        if record.expires_at is not None:
            logger.warning(
                f"Ignoring client-supplied expires_at for {record.subject_id}",
                extra={"subject_id": record.subject_id},
            )
        updates = {
            "state": ConsentState.SUBMITTED,
            "decision": None,
            "validated_at": None,
            "expires_at": None,
            "rejection_reason": None,
        }
        if record.request_at is None:
            updates["request_at"] = max([now] + [value for _, value in record.timeline()])
        return record.model_copy(update=updates)

    def _decide(self, received: ConsentRecord, requested_scopes: Sequence[str], now: datetime):
        # Never stamp validated_at before a tolerated-skew client timestamp
        validated_at = max(now, received.timeline()[-1][1])
        expires_at = self.expiration.expires_at(received)

        if ExpirationPolicy.is_expired(expires_at, now):
            return state_machine.expire(received, validated_at, expires_at)

        decision = self.scope_matrix.evaluate(received.consent_payload, list(requested_scopes))
        return state_machine.validate(received, decision, validated_at, expires_at)

    async def _duplicate(
        self,
        session: AsyncSession,
        current: ConsentRecord,
        received: ConsentRecord,
        now: datetime,
    ) -> ValidityOutcome:
        transition = state_machine.duplicate(current, now)
        entry = await self.lineage_log.append(transition, session=session)
        await session.commit()
        self.lineage_log.committed(entry)

        outcome = ValidityOutcome(
            record=current,
            decision=self._current_decision(current, now),
            duplicate=True,
            entry=entry,
        )
        self._remember(received.attempt_key, outcome)
        logger.info(
            f"Retransmission of {received.subject_id} answered with cached decision {outcome.decision.value}",
            extra={"subject_id": received.subject_id, "transition": transition.name},
        )
        return outcome

    async def _reject(self, session: AsyncSession, received: ConsentRecord, now: datetime, reason: str) -> None:
        transition = state_machine.reject(received, now, reason)
        entry = await self.lineage_log.append(transition, session=session)
        await session.commit()
        self.lineage_log.committed(entry)
        logger.warning(
            f"Rejected consent submission for {received.subject_id}: {reason}",
            extra={"subject_id": received.subject_id, "transition": transition.name},
        )

    def _current_decision(self, record: ConsentRecord, now: datetime) -> ConsentDecision:
        if ExpirationPolicy.is_expired(record.expires_at, now):
            return ConsentDecision.DENIED
        return record.decision

    def _forget(self, subject_id: str) -> None:
        """Drop cached replies that answered for a replaced authoritative record."""
        for key in [key for key in self._outcomes if key[0] == subject_id]:
            del self._outcomes[key]

    def _remember(self, key: tuple, outcome: ValidityOutcome) -> None:
        self._outcomes[key] = outcome
        self._outcomes.move_to_end(key)
        while len(self._outcomes) > self.cache_size:
            self._outcomes.popitem(last=False)

    async def reject_malformed(
        self,
        subject_id: str | None,
        error: ConsentLineageError,
        consent_string: str | None = None,
    ) -> NoReturn:
        """
        Log the rejection of a submission that could not be parsed, then raise it.

        Used for missing required fields and unparseable timestamps, where no
        ConsentRecord can be built.
        """
        subject_id = subject_id or "unknown"
        reason = getattr(error, "reason", None) or error.error_code.value
        async with self.locks.hold(subject_id):
            now = self.clock.now()
            async with self.session_factory() as session:
                entry = await self.lineage_log.append_event(
                    rejection_fields(subject_id, now, reason, consent_string=consent_string),
                    session=session,
                )
                await session.commit()
            self.lineage_log.committed(entry)
        logger.warning(
            f"Rejected malformed consent submission for {subject_id}: {error.message}",
            extra={"subject_id": subject_id},
        )
        raise error

    async def get_record(self, subject_id: str) -> ConsentRecord:
        async with self.session_factory() as session:
            record = await ConsentRepository(session).get(subject_id)
        if record is None:
            raise ConsentNotFoundError(subject_id)
        return record

    async def access_decision(self, subject_id: str, requested_scopes: Sequence[str] = ()) -> AccessCheck:
        """
        Current access decision for a subject.

        Expiration is applied at request time; the authoritative record is
        not modified.
        """
        async with self.locks.hold(subject_id):
            async with self.session_factory() as session:
                record = await ConsentRepository(session).get(subject_id)
            now = self.clock.now()

        if record is None:
            return AccessCheck(subject_id=subject_id, decision=ConsentDecision.DENIED, reason="NoConsent")
        if record.state == ConsentState.EXPIRED or ExpirationPolicy.is_expired(record.expires_at, now):
            return AccessCheck(subject_id=subject_id, decision=ConsentDecision.DENIED, reason="Expired", record=record)
        if requested_scopes:
            decision = self.scope_matrix.evaluate(record.consent_payload, list(requested_scopes))
        else:
            decision = record.decision
        return AccessCheck(subject_id=subject_id, decision=decision, record=record)

    async def lineage(self, subject_id: str) -> tuple[list[LineageEntry], ChainVerification]:
        entries = await self.lineage_log.entries(subject_id)
        return entries, verify_chain(entries)


def build_validity_engine(
    session_factory: async_sessionmaker = AsyncSessionLocal,
    scope_matrix: ScopeMatrix | None = None,
) -> ValidityEngine:
    """Engine wired from application settings. Scopes are allowed unless a matrix is given."""
    mirror = JsonLinesLineageLog(settings.lineage_log_path) if settings.lineage_log_path else None
    clock = SystemClock()
    engine = ValidityEngine(
        session_factory=session_factory,
        lineage_log=DatabaseLineageLog(session_factory, mirror=mirror),
        validator=TimestampValidator(
            clock=clock,
            skew_tolerance=timedelta(seconds=settings.clock_skew_tolerance_seconds),
        ),
        expiration=ExpirationPolicy.from_settings(),
        scope_matrix=scope_matrix or AllowAllScopeMatrix(),
        clock=clock,
    )
    logger.info(
        f"Validity engine ready (skew tolerance {settings.clock_skew_tolerance_seconds}s, "
        f"ttl {settings.consent_ttl_seconds or 'none'}, mirror {settings.lineage_log_path or 'none'})"
    )
    return engine
