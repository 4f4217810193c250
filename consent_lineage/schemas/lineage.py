import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from consent_lineage.utils.timestamps import ensure_utc, format_rfc3339

# Wire values of the `result` field
RESULT_GRANTED = "Access granted"
RESULT_DENIED = "Access denied"
RESULT_EXPIRED = "Consent expired"
RESULT_DUPLICATE = "Duplicate"

_TIMESTAMP_FIELDS = ("timestamp", "created_at", "request_at", "validated_at", "expires_at")


class LineageEntry(BaseModel):
    """
    One immutable lineage log entry.

    Carries the transition (subject_id, transition, from_state, to_state,
    timestamp, actor), the record's lineage timestamps, and the hash chain
    linking it to the previous entry of the same subject.
    """

    model_config = ConfigDict(frozen=True)

    subject_id: str
    sequence: int = Field(..., ge=1, description="Per-subject position, breaks timestamp ties by arrival")
    transition: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime
    actor: str
    consent_string: Optional[str] = None
    created_at: Optional[datetime] = None
    request_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    decision: Optional[str] = None
    result: str
    reason: Optional[str] = None
    prev_hash: str
    entry_hash: str

    @field_validator(*_TIMESTAMP_FIELDS)
    @classmethod
    def timestamps_must_be_utc(cls, v):
        if v is None:
            return v
        return ensure_utc(v)

    @field_serializer(*_TIMESTAMP_FIELDS)
    def serialize_timestamp(self, v: Optional[datetime]) -> Optional[str]:
        return format_rfc3339(v) if v is not None else None

    def hashed_fields(self) -> dict[str, Any]:
        """Every field covered by entry_hash."""
        return self.model_dump(mode="json", exclude={"entry_hash"})

    def wire(self) -> dict[str, Any]:
        """Log line: the audit schema fields followed by the transition fields."""
        data = self.model_dump(mode="json")
        line = {
            "user_id": data["subject_id"],
            "consent_string": data["consent_string"],
            "request_at": data["request_at"],
            "validated_at": data["validated_at"],
            "result": data["result"],
        }
        line.update(data)
        return line

    def to_json_line(self) -> str:
        return json.dumps(self.wire(), separators=(",", ":"))

    @classmethod
    def from_json_line(cls, line: str) -> "LineageEntry":
        data = json.loads(line)
        data.pop("user_id", None)
        return cls.model_validate(data)


class ChainVerification(BaseModel):
    valid: bool
    entries: int
    broken_at: Optional[int] = None
    reason: Optional[str] = None


class ReplayResult(BaseModel):
    """Authoritative state rebuilt from a subject's lineage entries."""

    subject_id: str
    state: Optional[str] = None
    decision: Optional[str] = None
    created_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None
    transitions: int = 0
    rejections: int = 0
    duplicates: int = 0

    @field_serializer("created_at", "validated_at")
    def serialize_timestamp(self, v: Optional[datetime]) -> Optional[str]:
        return format_rfc3339(v) if v is not None else None
