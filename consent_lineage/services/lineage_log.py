"""
Lineage Log

Append-only record of every observed transition of a consent record.
Entries of one subject form a hash chain: each entry's hash covers its own
fields and the hash of the entry before it, so a subject's lineage can be
verified and replayed from the log alone.

Sinks:
- DatabaseLineageLog: `lineage_entries` table, used by the server
- JsonLinesLineageLog: one JSON object per line, optional mirror
- InMemoryLineageLog: client side and tests
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from consent_lineage.exceptions import StorageError
from consent_lineage.models.lineage_entry import LineageLogEntry
from consent_lineage.schemas.consent import ConsentDecision, ConsentState
from consent_lineage.schemas.lineage import (
    RESULT_DENIED,
    RESULT_DUPLICATE,
    RESULT_EXPIRED,
    RESULT_GRANTED,
    ChainVerification,
    LineageEntry,
    ReplayResult,
)
from consent_lineage.services import state_machine
from consent_lineage.services.state_machine import Transition

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


def compute_entry_hash(prev_hash: str, fields: dict[str, Any]) -> str:
    """SHA-256 over the previous hash and the canonical JSON of the entry fields."""
    canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(f"{prev_hash}{canonical}".encode("utf-8")).hexdigest()


def result_for(transition: Transition) -> str:
    """Human readable `result` of a transition."""
    if transition.name == state_machine.VALIDATE:
        return RESULT_GRANTED if transition.record.decision == ConsentDecision.GRANTED else RESULT_DENIED
    if transition.name == state_machine.EXPIRE:
        return RESULT_EXPIRED
    if transition.name == state_machine.REJECT:
        return f"Rejected: {transition.reason}"
    if transition.name == state_machine.DUPLICATE:
        return RESULT_DUPLICATE
    if transition.name == state_machine.ATTEMPT:
        return "Request sent"
    return transition.to_state.value


def transition_fields(transition: Transition) -> dict[str, Any]:
    """Entry fields of a transition, without sequence and hashes."""
    record = transition.record
    return {
        "subject_id": record.subject_id,
        "transition": transition.name,
        "from_state": transition.from_state.value if transition.from_state is not None else None,
        "to_state": transition.to_state.value,
        "timestamp": transition.timestamp,
        "actor": transition.actor,
        "consent_string": record.consent_payload,
        "created_at": record.created_at,
        "request_at": record.request_at,
        "validated_at": record.validated_at,
        "expires_at": record.expires_at,
        "decision": record.decision.value if record.decision is not None else None,
        "result": result_for(transition),
        "reason": transition.reason,
    }


def seal_entry(fields: dict[str, Any], sequence: int, prev_hash: str) -> LineageEntry:
    """Attach chain position and hashes to entry fields."""
    unsealed = LineageEntry(**fields, sequence=sequence, prev_hash=prev_hash, entry_hash="")
    entry_hash = compute_entry_hash(prev_hash, unsealed.hashed_fields())
    return unsealed.model_copy(update={"entry_hash": entry_hash})


def verify_chain(entries: Iterable[LineageEntry]) -> ChainVerification:
    """
    Check that entries form an unbroken, untampered chain per subject.

    Entries may interleave subjects; each subject is checked on its own.
    """
    tails: dict[str, tuple[int, str]] = {}
    count = 0
    for entry in entries:
        count += 1
        expected_sequence, expected_prev = tails.get(entry.subject_id, (0, GENESIS_HASH))
        if entry.sequence != expected_sequence + 1:
            return ChainVerification(
                valid=False,
                entries=count,
                broken_at=entry.sequence,
                reason=f"sequence gap: expected {expected_sequence + 1}",
            )
        if entry.prev_hash != expected_prev:
            return ChainVerification(valid=False, entries=count, broken_at=entry.sequence, reason="prev_hash mismatch")
        if compute_entry_hash(entry.prev_hash, entry.hashed_fields()) != entry.entry_hash:
            return ChainVerification(valid=False, entries=count, broken_at=entry.sequence, reason="entry_hash mismatch")
        tails[entry.subject_id] = (entry.sequence, entry.entry_hash)
    return ChainVerification(valid=True, entries=count)


def replay(subject_id: str, entries: Iterable[LineageEntry]) -> ReplayResult:
    """
    Rebuild a subject's authoritative state and decision from its entries.

    Only entries written by the server's decision edges (validate, expire)
    change the authoritative result; rejected submissions and duplicates
    leave it as it was.
    """
    state = decision = created_at = validated_at = None
    transitions = rejections = duplicates = 0

    for entry in sorted((e for e in entries if e.subject_id == subject_id), key=lambda e: e.sequence):
        transitions += 1
        if entry.transition == state_machine.REJECT:
            rejections += 1
        elif entry.transition == state_machine.DUPLICATE:
            duplicates += 1
        elif entry.transition in (state_machine.VALIDATE, state_machine.EXPIRE):
            state = entry.to_state
            decision = entry.decision
            created_at = entry.created_at
            validated_at = entry.validated_at

    return ReplayResult(
        subject_id=subject_id,
        state=state,
        decision=decision,
        created_at=created_at,
        validated_at=validated_at,
        transitions=transitions,
        rejections=rejections,
        duplicates=duplicates,
    )


def rejection_fields(
    subject_id: str,
    at,
    reason: str,
    consent_string: str | None = None,
    created_at=None,
    request_at=None,
    actor: str = "validity_engine",
) -> dict[str, Any]:
    """Entry fields for a submission rejected before a record could be built."""
    return {
        "subject_id": subject_id,
        "transition": state_machine.REJECT,
        "from_state": None,
        "to_state": ConsentState.REJECTED.value,
        "timestamp": at,
        "actor": actor,
        "consent_string": consent_string,
        "created_at": created_at,
        "request_at": request_at,
        "validated_at": None,
        "expires_at": None,
        "decision": None,
        "result": f"Rejected: {reason}",
        "reason": reason,
    }


class LineageLog(ABC):
    """Append-only lineage sink."""

    async def append(self, transition: Transition, session: AsyncSession | None = None) -> LineageEntry:
        entry = await self.append_event(transition_fields(transition), session=session)
        logger.info(
            f"Lineage {entry.subject_id}#{entry.sequence}: {entry.transition} -> {entry.to_state} ({entry.result})",
            extra={"subject_id": entry.subject_id, "transition": entry.transition},
        )
        return entry

    @abstractmethod
    async def append_event(self, fields: dict[str, Any], session: AsyncSession | None = None) -> LineageEntry:
        """Seal and persist one entry."""

    @abstractmethod
    async def entries(self, subject_id: str | None = None, session: AsyncSession | None = None) -> list[LineageEntry]:
        """Entries in append order, optionally for one subject."""

    def committed(self, entry: LineageEntry) -> None:
        """Called once the transaction holding `entry` has committed."""

    async def replay(self, subject_id: str, session: AsyncSession | None = None) -> ReplayResult:
        return replay(subject_id, await self.entries(subject_id, session=session))


class InMemoryLineageLog(LineageLog):
    def __init__(self):
        self._entries: list[LineageEntry] = []
        self._tails: dict[str, tuple[int, str]] = {}

    async def append_event(self, fields: dict[str, Any], session: AsyncSession | None = None) -> LineageEntry:
        sequence, prev_hash = self._tails.get(fields["subject_id"], (0, GENESIS_HASH))
        entry = seal_entry(fields, sequence + 1, prev_hash)
        self._entries.append(entry)
        self._tails[entry.subject_id] = (entry.sequence, entry.entry_hash)
        return entry

    async def entries(self, subject_id: str | None = None, session: AsyncSession | None = None) -> list[LineageEntry]:
        if subject_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.subject_id == subject_id]

    def __len__(self) -> int:
        return len(self._entries)


class JsonLinesLineageLog(LineageLog):
    """
    Lineage log stored as JSON lines in a single file.

    Used standalone it chains entries itself; as a mirror of the database
    log, `write()` appends entries that were already sealed elsewhere.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._tails: dict[str, tuple[int, str]] = {}
        self._loaded = False

    def _load_tails(self) -> None:
        if self._loaded:
            return
        for entry in self._read():
            self._tails[entry.subject_id] = (entry.sequence, entry.entry_hash)
        self._loaded = True

    def _read(self) -> list[LineageEntry]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as f:
                return [LineageEntry.from_json_line(line) for line in f if line.strip()]
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read lineage log: {e}", key=str(self.path)) from e

    def write(self, entry: LineageEntry) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(entry.to_json_line() + "\n")
        except OSError as e:
            raise StorageError(f"Cannot write lineage log: {e}", key=str(self.path)) from e
        self._tails[entry.subject_id] = (entry.sequence, entry.entry_hash)

    async def append_event(self, fields: dict[str, Any], session: AsyncSession | None = None) -> LineageEntry:
        self._load_tails()
        sequence, prev_hash = self._tails.get(fields["subject_id"], (0, GENESIS_HASH))
        entry = seal_entry(fields, sequence + 1, prev_hash)
        self.write(entry)
        return entry

    async def entries(self, subject_id: str | None = None, session: AsyncSession | None = None) -> list[LineageEntry]:
        entries = self._read()
        if subject_id is None:
            return entries
        return [e for e in entries if e.subject_id == subject_id]


class DatabaseLineageLog(LineageLog):
    """
    Lineage log in the `lineage_entries` table.

    When a session is passed the entry joins the caller's transaction, so a
    decision and its lineage entry commit together. Without one the log
    opens and commits its own session.
    """

    def __init__(self, session_factory: async_sessionmaker, mirror: JsonLinesLineageLog | None = None):
        self.session_factory = session_factory
        self.mirror = mirror

    async def _tail(self, session: AsyncSession, subject_id: str) -> tuple[int, str]:
        last_sequence = await session.scalar(
            select(func.max(LineageLogEntry.sequence)).where(LineageLogEntry.subject_id == subject_id)
        )
        if last_sequence is None:
            return 0, GENESIS_HASH
        prev_hash = await session.scalar(
            select(LineageLogEntry.entry_hash).where(
                LineageLogEntry.subject_id == subject_id,
                LineageLogEntry.sequence == last_sequence,
            )
        )
        return last_sequence, prev_hash

    async def _insert(self, session: AsyncSession, fields: dict[str, Any]) -> LineageEntry:
        sequence, prev_hash = await self._tail(session, fields["subject_id"])
        entry = seal_entry(fields, sequence + 1, prev_hash)
        session.add(LineageLogEntry.from_entry(entry))
        await session.flush()
        return entry

    async def append_event(self, fields: dict[str, Any], session: AsyncSession | None = None) -> LineageEntry:
        if session is not None:
            return await self._insert(session, fields)

        async with self.session_factory() as own_session:
            entry = await self._insert(own_session, fields)
            await own_session.commit()
        self.committed(entry)
        return entry

    def committed(self, entry: LineageEntry) -> None:
        """Copy a committed entry to the JSON-lines mirror, if configured."""
        if self.mirror is None:
            return
        try:
            self.mirror.write(entry)
        except StorageError as e:
            # The database copy is authoritative
            logger.error(f"Failed to mirror lineage entry {entry.subject_id}#{entry.sequence}: {e.message}")

    async def entries(self, subject_id: str | None = None, session: AsyncSession | None = None) -> list[LineageEntry]:
        query = select(LineageLogEntry).order_by(LineageLogEntry.id)
        if subject_id is not None:
            query = query.where(LineageLogEntry.subject_id == subject_id)

        if session is not None:
            rows = (await session.execute(query)).scalars().all()
        else:
            async with self.session_factory() as own_session:
                rows = (await own_session.execute(query)).scalars().all()
        return [row.to_entry() for row in rows]

