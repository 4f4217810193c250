"""
Consent Sync Routes

Wire API of the sync server:
- POST /consent/sync: submit a consent record for validation
- GET /consent/{subject_id}: authoritative record
- GET /consent/{subject_id}/access: current access decision
- GET /consent/{subject_id}/lineage: lineage entries with chain verification
"""

import json
import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from consent_lineage.exceptions import InvalidFieldError, InvalidTimestampError, MissingFieldError, SupersededError
from consent_lineage.schemas.sync import (
    MISSING_FIELDS_MESSAGE,
    AccessResponse,
    ConsentRecordResponse,
    LineageResponse,
    SyncRequest,
    SyncResponse,
)
from consent_lineage.services.lineage_log import replay
from consent_lineage.services.validity_engine import ValidityEngine
from consent_lineage.utils.timestamps import format_optional

router = APIRouter(prefix="/consent", tags=["Consent Sync"])

logger = logging.getLogger(__name__)


def get_validity_engine(request: Request) -> ValidityEngine:
    """Engine singleton built at startup."""
    return request.app.state.validity_engine


def _missing_fields_response() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": MISSING_FIELDS_MESSAGE})


@router.post("/sync")
async def sync_consent(request: Request, engine: ValidityEngine = Depends(get_validity_engine)) -> JSONResponse:
    """
    Submit a consent record.

    Decisions (granted, denied, expired) answer 200. Invalid timestamps
    answer 400 and superseded records 409, both with status "Failure".
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None

    subject_id = payload.get("deviceId") if isinstance(payload, dict) else None
    consent_string = payload.get("consentString") if isinstance(payload, dict) else None
    if not isinstance(subject_id, str):
        subject_id = None
    if not isinstance(consent_string, str):
        consent_string = None

    try:
        missing = SyncRequest.missing_fields(payload)
        if missing:
            await engine.reject_malformed(subject_id, MissingFieldError(missing), consent_string=consent_string)

        try:
            sync_request = SyncRequest.model_validate(payload)
        except ValidationError as e:
            await engine.reject_malformed(subject_id, SyncRequest.rejection_for(e), consent_string=consent_string)

        try:
            record = sync_request.to_record()
        except InvalidTimestampError as e:
            # Unparseable on the wire; no record could be built
            await engine.reject_malformed(subject_id, e, consent_string=consent_string)

        outcome = await engine.receive(record, sync_request.scopes)
    except MissingFieldError:
        return _missing_fields_response()
    except (InvalidTimestampError, InvalidFieldError) as e:
        failure = SyncResponse.failure(e.message, e.reason)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=failure.wire())
    except SupersededError as e:
        failure = SyncResponse.failure(e.message, e.reason)
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=failure.wire())

    return JSONResponse(status_code=status.HTTP_200_OK, content=SyncResponse.success(outcome).wire())


@router.get("/{subject_id}", response_model=ConsentRecordResponse)
async def get_consent(subject_id: str, engine: ValidityEngine = Depends(get_validity_engine)) -> ConsentRecordResponse:
    """Authoritative consent record of a subject."""
    record = await engine.get_record(subject_id)
    return ConsentRecordResponse.from_record(record)


@router.get("/{subject_id}/access", response_model=AccessResponse)
async def get_access(
    subject_id: str,
    scopes: list[str] = Query(default=[]),
    engine: ValidityEngine = Depends(get_validity_engine),
) -> AccessResponse:
    check = await engine.access_decision(subject_id, scopes)
    return AccessResponse(
        subject_id=subject_id,
        decision=check.decision.value,
        reason=check.reason,
        state=check.record.state.value if check.record else None,
        expires_at=format_optional(check.record.expires_at) if check.record else None,
        scopes=scopes,
    )


@router.get("/{subject_id}/lineage", response_model=LineageResponse)
async def get_lineage(subject_id: str, engine: ValidityEngine = Depends(get_validity_engine)) -> LineageResponse:
    """Lineage entries of a subject in append order, with chain verification and replay."""
    entries, verification = await engine.lineage(subject_id)
    if not verification.valid:
        logger.error(
            f"Lineage chain for {subject_id} broken at #{verification.broken_at}: {verification.reason}",
            extra={"subject_id": subject_id},
        )
    return LineageResponse(
        subject_id=subject_id,
        entries=[entry.wire() for entry in entries],
        verification=verification,
        replay=replay(subject_id, entries),
    )
