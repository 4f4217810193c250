"""
Client-side consent persistence.

Keeps the most recent consent record of each subject in the device store,
moves it through Created -> Stored -> Submitted, and caches the server's
last decision for offline reads.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ValidationError, field_serializer

from consent_lineage.client.device_store import DeviceStore
from consent_lineage.exceptions import StorageError
from consent_lineage.schemas.consent import ConsentDecision, ConsentRecord, ConsentState
from consent_lineage.services import state_machine
from consent_lineage.services.lineage_log import LineageLog
from consent_lineage.services.state_machine import Transition
from consent_lineage.services.timestamp_validator import TimestampValidator
from consent_lineage.utils.timestamps import Clock, SystemClock, format_rfc3339

logger = logging.getLogger(__name__)

RECORD_KEY = "consent/{subject_id}/record"
DECISION_KEY = "consent/{subject_id}/decision"


class CachedDecision(BaseModel):
    """Last decision acknowledged by the server. Not authoritative."""

    subject_id: str
    decision: ConsentDecision
    state: ConsentState
    created_at: datetime
    validated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    cached_at: datetime

    @field_serializer("created_at", "validated_at", "expires_at", "cached_at")
    def serialize_timestamp(self, v: Optional[datetime]) -> Optional[str]:
        return format_rfc3339(v) if v is not None else None


class LocalConsentStore:
    def __init__(
        self,
        device_store: DeviceStore,
        clock: Clock | None = None,
        validator: TimestampValidator | None = None,
        lineage_log: LineageLog | None = None,
    ):
        self.device_store = device_store
        self.clock = clock or SystemClock()
        self.validator = validator or TimestampValidator(clock=self.clock)
        self.lineage_log = lineage_log

    async def record_consent(self, subject_id: str, consent_payload: str) -> ConsentRecord:
        """Capture a new consent decision and persist it. Returns the Stored record."""
        record = ConsentRecord.create(subject_id, consent_payload, self.clock.now())
        await self._log(state_machine.capture(record))
        logger.info(f"Captured consent for {subject_id}", extra={"subject_id": subject_id})
        return await self.save(record)

    async def save(self, record: ConsentRecord) -> ConsentRecord:
        """
        Persist a Created record to the device store.

        Raises:
            InvalidTimestampError: the Stored record would violate ordering
            StorageError: the device store failed
        """
        transition = state_machine.store(record, self.clock.now())
        self.validator.validate(transition.record)
        await self._write(transition.record)
        await self._log(transition)
        return transition.record

    async def latest(self, subject_id: str) -> ConsentRecord | None:
        raw = await self.device_store.get(RECORD_KEY.format(subject_id=subject_id))
        if raw is None:
            return None
        try:
            return ConsentRecord.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt consent record for {subject_id}", key=RECORD_KEY.format(subject_id=subject_id)) from e

    async def mark_submitted(self, record: ConsentRecord, at: datetime) -> ConsentRecord:
        """Record the server's acknowledgement: Stored -> Submitted."""
        transition = state_machine.submit(record, at)
        await self._write(transition.record)
        await self._log(transition)
        return transition.record

    async def cache_decision(
        self,
        record: ConsentRecord,
        decision: ConsentDecision,
        state: ConsentState,
        validated_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> CachedDecision:
        cached = CachedDecision(
            subject_id=record.subject_id,
            decision=decision,
            state=state,
            created_at=record.created_at,
            validated_at=validated_at,
            expires_at=expires_at,
            cached_at=self.clock.now(),
        )
        await self.device_store.put(
            DECISION_KEY.format(subject_id=record.subject_id),
            cached.model_dump_json().encode("utf-8"),
        )
        return cached

    async def cached_decision(self, subject_id: str) -> CachedDecision | None:
        """
        Last decision cached for offline reads.

        A cached grant past its expiry reads as Denied. The server's copy
        wins on the next sync.
        """
        key = DECISION_KEY.format(subject_id=subject_id)
        raw = await self.device_store.get(key)
        if raw is None:
            return None
        try:
            cached = CachedDecision.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt cached decision for {subject_id}", key=key) from e

        if cached.expires_at is not None and cached.expires_at <= self.clock.now():
            return cached.model_copy(update={"decision": ConsentDecision.DENIED})
        return cached

    async def _write(self, record: ConsentRecord) -> None:
        await self.device_store.put(
            RECORD_KEY.format(subject_id=record.subject_id),
            record.model_dump_json().encode("utf-8"),
        )

    async def _log(self, transition: Transition) -> None:
        if self.lineage_log is not None:
            await self.lineage_log.append(transition)
