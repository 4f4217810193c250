"""
Sync Client

Transmits the most recent local consent record of a subject to the sync
server, retrying transient failures with exponential backoff. Every
attempt carries a fresh request_at; created_at never changes.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

import httpx
from pydantic import ValidationError

from consent_lineage.client.local_store import LocalConsentStore
from consent_lineage.config import settings
from consent_lineage.exceptions import MissingRecordError, NetworkError, ServerRejectedError
from consent_lineage.schemas.consent import ConsentDecision, ConsentRecord, ConsentState
from consent_lineage.schemas.sync import SyncRequest, SyncResponse
from consent_lineage.services import state_machine
from consent_lineage.services.timestamp_validator import TimestampValidator
from consent_lineage.utils.timestamps import Clock, parse_rfc3339

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/v1/consent/sync"


@dataclass(frozen=True)
class SyncResult:
    accepted: bool
    decision: ConsentDecision
    server_timestamp: datetime | None
    state: ConsentState
    reason: str | None = None
    duplicate: bool = False
    attempts: int = 1


class _Retryable(Exception):
    """Transient failure of one attempt."""


class SyncClient:
    def __init__(
        self,
        store: LocalConsentStore,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        validator: TimestampValidator | None = None,
        max_attempts: int = settings.sync_max_attempts,
        backoff_base: float = settings.sync_backoff_base_seconds,
        backoff_max: float = settings.sync_backoff_max_seconds,
        timeout: float = settings.sync_timeout_seconds,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.base_url = base_url or settings.sync_server_url
        self.http_client = http_client
        self.clock = clock or store.clock
        self.validator = validator or store.validator
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is not None:
            yield self.http_client
            return
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            yield client

    async def submit(self, subject_id: str, scopes: list[str] | None = None) -> SyncResult:
        """
        Send the subject's most recent record to the server.

        Raises:
            MissingRecordError: no local record for the subject
            InvalidTimestampError: the stamped record fails local validation
            NetworkError: every attempt failed transiently
            ServerRejectedError: the server refused the record
            StorageError: the device store failed
        """
        record = await self.store.latest(subject_id)
        if record is None:
            raise MissingRecordError(subject_id)

        last_error = None
        async with self._client() as client:
            for attempt in range(1, self.max_attempts + 1):
                stamped = state_machine.stamp_request(record, self.clock.now())
                # Local validation failures are final
                self.validator.validate(stamped)
                await self._log_attempt(stamped, attempt)

                try:
                    response = await self._send(client, stamped, scopes)
                except _Retryable as e:
                    last_error = e
                    logger.warning(
                        f"Sync attempt {attempt}/{self.max_attempts} for {subject_id} failed: {e}",
                        extra={"subject_id": subject_id, "attempt": attempt},
                    )
                    if attempt < self.max_attempts:
                        await self.sleep(self.backoff(attempt))
                    continue

                return await self._acknowledge(stamped, response, attempt)

        raise NetworkError(f"Sync server unreachable after {self.max_attempts} attempts: {last_error}", attempts=self.max_attempts)

    async def _send(self, client: httpx.AsyncClient, record: ConsentRecord, scopes: list[str] | None) -> SyncResponse:
        url = SYNC_PATH if str(client.base_url) else f"{self.base_url.rstrip('/')}{SYNC_PATH}"
        try:
            response = await client.post(url, json=SyncRequest.from_record(record, scopes).wire(), timeout=self.timeout)
        except httpx.TransportError as e:
            raise _Retryable(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 500:
            raise _Retryable(f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise ServerRejectedError("Malformed sync response", http_status=response.status_code) from e

        if response.status_code >= 400:
            if isinstance(body, dict) and isinstance(body.get("error"), str):
                raise ServerRejectedError(body["error"], reason="MissingField", http_status=response.status_code)
            reason = body.get("reason") if isinstance(body, dict) else None
            message = body.get("message", "Sync rejected") if isinstance(body, dict) else "Sync rejected"
            raise ServerRejectedError(message, reason=reason, http_status=response.status_code)

        try:
            parsed = SyncResponse.model_validate(body)
        except ValidationError as e:
            raise ServerRejectedError("Malformed sync response", http_status=response.status_code) from e
        if not parsed.accepted:
            raise ServerRejectedError(parsed.message, reason=parsed.reason, http_status=response.status_code)
        return parsed

    async def _acknowledge(self, record: ConsentRecord, response: SyncResponse, attempts: int) -> SyncResult:
        server_timestamp = parse_rfc3339(response.validated_at) if response.validated_at else None
        expires_at = parse_rfc3339(response.expires_at) if response.expires_at else None
        decision = ConsentDecision(response.decision)
        state = ConsentState(response.state)

        if record.state == ConsentState.STORED:
            record = await self.store.mark_submitted(record, self.clock.now())
        await self.store.cache_decision(record, decision, state, validated_at=server_timestamp, expires_at=expires_at)

        logger.info(
            f"Consent {record.subject_id} acknowledged: {decision.value} ({state.value})",
            extra={"subject_id": record.subject_id, "attempt": attempts},
        )
        return SyncResult(
            accepted=True,
            decision=decision,
            server_timestamp=server_timestamp,
            state=state,
            reason=response.reason,
            duplicate=response.duplicate,
            attempts=attempts,
        )

    async def _log_attempt(self, record: ConsentRecord, attempt: int) -> None:
        if self.store.lineage_log is not None:
            await self.store.lineage_log.append(state_machine.attempt(record, record.request_at, attempt))
