"""
Consent Lineage State Machine

Defines the allowed state transitions of a consent record and produces
the transition events that the lineage log records.

    Created -> Stored -> Submitted -> Validated | Expired | Rejected

Any non-terminal state may also move to Rejected. Terminal records are
never mutated again; they are only superseded by a newly created record.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from consent_lineage.exceptions import InvalidStateTransitionError
from consent_lineage.schemas.consent import ConsentDecision, ConsentRecord, ConsentState

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ConsentState, frozenset[ConsentState]] = {
    ConsentState.CREATED: frozenset({ConsentState.STORED, ConsentState.REJECTED}),
    ConsentState.STORED: frozenset({ConsentState.SUBMITTED, ConsentState.REJECTED}),
    ConsentState.SUBMITTED: frozenset({ConsentState.VALIDATED, ConsentState.EXPIRED, ConsentState.REJECTED}),
    ConsentState.VALIDATED: frozenset(),
    ConsentState.EXPIRED: frozenset(),
    ConsentState.REJECTED: frozenset(),
}

# Transition names recorded in the lineage log
CAPTURE = "capture"
STORE = "store"
SUBMIT = "submit"
VALIDATE = "validate"
EXPIRE = "expire"
REJECT = "reject"
DUPLICATE = "duplicate"
ATTEMPT = "attempt"


@dataclass(frozen=True)
class Transition:
    """One observed lineage transition and the record it produced."""

    record: ConsentRecord
    name: str
    from_state: ConsentState | None
    to_state: ConsentState
    timestamp: datetime
    actor: str
    reason: str | None = None

    @property
    def subject_id(self) -> str:
        return self.record.subject_id


def can_transition(from_state: ConsentState, to_state: ConsentState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[from_state]


def _apply(
    record: ConsentRecord,
    to_state: ConsentState,
    name: str,
    at: datetime,
    actor: str,
    reason: str | None = None,
    **updates,
) -> Transition:
    if not can_transition(record.state, to_state):
        raise InvalidStateTransitionError(record.state.value, to_state.value)

    updated = record.model_copy(update={"state": to_state, **updates})
    logger.debug(
        f"Consent {record.subject_id}: {record.state.value} -> {to_state.value} ({name})",
        extra={"subject_id": record.subject_id, "transition": name},
    )
    return Transition(
        record=updated,
        name=name,
        from_state=record.state,
        to_state=to_state,
        timestamp=at,
        actor=actor,
        reason=reason,
    )


def capture(record: ConsentRecord, actor: str = "client") -> Transition:
    """The creation event of a record; it has no prior state."""
    if record.state is not ConsentState.CREATED:
        raise InvalidStateTransitionError("none", record.state.value)
    return Transition(
        record=record,
        name=CAPTURE,
        from_state=None,
        to_state=ConsentState.CREATED,
        timestamp=record.created_at,
        actor=actor,
    )


def store(record: ConsentRecord, at: datetime, actor: str = "device_store") -> Transition:
    return _apply(record, ConsentState.STORED, STORE, at, actor, stored_at=at)


def stamp_request(record: ConsentRecord, at: datetime) -> ConsentRecord:
    """Attach a fresh request_at for a transmission attempt. Not a state change."""
    if record.is_terminal:
        raise InvalidStateTransitionError(record.state.value, record.state.value)
    return record.model_copy(update={"request_at": at})


def submit(record: ConsentRecord, at: datetime, actor: str = "sync_client") -> Transition:
    return _apply(record, ConsentState.SUBMITTED, SUBMIT, at, actor)


def validate(
    record: ConsentRecord,
    decision: ConsentDecision,
    at: datetime,
    expires_at: datetime | None = None,
    actor: str = "validity_engine",
) -> Transition:
    return _apply(
        record,
        ConsentState.VALIDATED,
        VALIDATE,
        at,
        actor,
        validated_at=at,
        decision=decision,
        expires_at=expires_at,
    )


def expire(record: ConsentRecord, at: datetime, expires_at: datetime, actor: str = "validity_engine") -> Transition:
    return _apply(
        record,
        ConsentState.EXPIRED,
        EXPIRE,
        at,
        actor,
        reason="Expired",
        validated_at=at,
        decision=ConsentDecision.DENIED,
        expires_at=expires_at,
    )


def reject(record: ConsentRecord, at: datetime, reason: str, actor: str = "validity_engine") -> Transition:
    return _apply(record, ConsentState.REJECTED, REJECT, at, actor, reason=reason, rejection_reason=reason)


def duplicate(authoritative: ConsentRecord, at: datetime, actor: str = "validity_engine") -> Transition:
    """
    A retransmission of an already decided record.

    Recorded as a no-op edge on the authoritative record's terminal state;
    the authoritative record itself is returned unchanged.
    """
    return Transition(
        record=authoritative,
        name=DUPLICATE,
        from_state=authoritative.state,
        to_state=authoritative.state,
        timestamp=at,
        actor=actor,
        reason="Duplicate",
    )


def attempt(record: ConsentRecord, at: datetime, number: int, actor: str = "sync_client") -> Transition:
    """One transmission attempt of a Stored or Submitted record; logged but not a state change."""
    if record.state not in (ConsentState.STORED, ConsentState.SUBMITTED):
        raise InvalidStateTransitionError(record.state.value, ConsentState.SUBMITTED.value)
    return Transition(
        record=record,
        name=ATTEMPT,
        from_state=record.state,
        to_state=record.state,
        timestamp=at,
        actor=actor,
        reason=f"attempt {number}",
    )
