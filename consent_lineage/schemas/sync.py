"""
Sync wire format.

Field names on the wire are camelCase; `timestamp` carries the record's
created_at. Timestamps are RFC3339 UTC strings.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from consent_lineage.exceptions import (
    ConsentLineageError,
    InvalidFieldError,
    InvalidTimestampError,
    MissingFieldError,
)
from consent_lineage.schemas.consent import ConsentRecord, ConsentState
from consent_lineage.schemas.lineage import ChainVerification, ReplayResult
from consent_lineage.utils.timestamps import format_optional, parse_rfc3339

# Wire name -> record field
REQUIRED_FIELDS = {"consentString": "consent_payload", "timestamp": "created_at", "deviceId": "subject_id"}

MISSING_FIELDS_MESSAGE = "Missing required fields."

TIMESTAMP_FIELDS = ("timestamp", "storedAt", "requestAt", "expiresAt")


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    consent_string: str = Field(..., alias="consentString", min_length=1)
    timestamp: str = Field(..., description="created_at, RFC3339")
    device_id: str = Field(..., alias="deviceId", min_length=1)
    stored_at: Optional[str] = Field(None, alias="storedAt")
    request_at: Optional[str] = Field(None, alias="requestAt")
    # Accepted for compatibility, never trusted
    expires_at: Optional[str] = Field(None, alias="expiresAt")
    scopes: list[str] = Field(default_factory=list)

    @staticmethod
    def missing_fields(payload: Any) -> list[str]:
        """Required wire fields that are absent, null or blank."""
        if not isinstance(payload, dict):
            return list(REQUIRED_FIELDS)
        missing = []
        for name in REQUIRED_FIELDS:
            value = payload.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    @staticmethod
    def rejection_for(error: ValidationError) -> ConsentLineageError:
        """
        Map a validation failure to the rejection it is reported as.

        A wrongly typed required field counts as missing, a wrongly typed
        timestamp as invalid; anything else (e.g. `scopes`) is an invalid field.
        """
        fields = sorted({str(e["loc"][0]) for e in error.errors() if e["loc"]})
        required = [name for name in fields if name in REQUIRED_FIELDS and name != "timestamp"]
        if required:
            return MissingFieldError(required)
        timestamps = [name for name in fields if name in TIMESTAMP_FIELDS]
        if timestamps:
            return InvalidTimestampError(f"{timestamps[0]} must be an RFC3339 string", field=timestamps[0])
        return InvalidFieldError(fields)

    def to_record(self) -> ConsentRecord:
        """
        Build the submitted record.

        Raises:
            InvalidTimestampError: if a timestamp is not valid RFC3339 UTC
        """
        timestamps = {}
        for wire_name, field, value in (
            ("timestamp", "created_at", self.timestamp),
            ("storedAt", "stored_at", self.stored_at),
            ("requestAt", "request_at", self.request_at),
            ("expiresAt", "expires_at", self.expires_at),
        ):
            if value is None:
                continue
            try:
                timestamps[field] = parse_rfc3339(value)
            except ValueError as e:
                raise InvalidTimestampError(str(e), field=wire_name) from e

        return ConsentRecord(
            subject_id=self.device_id,
            consent_payload=self.consent_string,
            state=ConsentState.SUBMITTED,
            **timestamps,
        )

    @classmethod
    def from_record(cls, record: ConsentRecord, scopes: Optional[list[str]] = None) -> "SyncRequest":
        return cls(
            consent_string=record.consent_payload,
            timestamp=format_optional(record.created_at),
            device_id=record.subject_id,
            stored_at=format_optional(record.stored_at),
            request_at=format_optional(record.request_at),
            scopes=scopes or [],
        )

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SyncResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    message: str
    decision: Optional[str] = None
    state: Optional[str] = None
    reason: Optional[str] = None
    validated_at: Optional[str] = Field(None, alias="validatedAt")
    expires_at: Optional[str] = Field(None, alias="expiresAt")
    duplicate: bool = False

    @property
    def accepted(self) -> bool:
        return self.status == "Success"

    @classmethod
    def success(cls, outcome) -> "SyncResponse":
        """Response for a ValidityOutcome."""
        return cls(
            status="Success",
            message=outcome.message,
            decision=outcome.decision.value,
            state=outcome.state.value,
            reason=outcome.reason,
            validated_at=format_optional(outcome.record.validated_at),
            expires_at=format_optional(outcome.record.expires_at),
            duplicate=outcome.duplicate,
        )

    @classmethod
    def failure(cls, message: str, reason: str) -> "SyncResponse":
        return cls(status="Failure", message=message, state=ConsentState.REJECTED.value, reason=reason)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ConsentRecordResponse(BaseModel):
    subject_id: str
    consent_string: str
    created_at: str
    stored_at: Optional[str] = None
    request_at: Optional[str] = None
    validated_at: Optional[str] = None
    expires_at: Optional[str] = None
    state: str
    decision: Optional[str] = None

    @classmethod
    def from_record(cls, record: ConsentRecord) -> "ConsentRecordResponse":
        return cls(
            subject_id=record.subject_id,
            consent_string=record.consent_payload,
            created_at=format_optional(record.created_at),
            stored_at=format_optional(record.stored_at),
            request_at=format_optional(record.request_at),
            validated_at=format_optional(record.validated_at),
            expires_at=format_optional(record.expires_at),
            state=record.state.value,
            decision=record.decision.value if record.decision else None,
        )


class AccessResponse(BaseModel):
    subject_id: str
    decision: str
    reason: Optional[str] = None
    state: Optional[str] = None
    expires_at: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)


class LineageResponse(BaseModel):
    subject_id: str
    entries: list[dict[str, Any]]
    verification: ChainVerification
    replay: ReplayResult
