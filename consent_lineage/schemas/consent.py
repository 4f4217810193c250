from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from consent_lineage.utils.timestamps import ensure_utc, format_rfc3339


class ConsentState(str, Enum):
    CREATED = "Created"
    STORED = "Stored"
    SUBMITTED = "Submitted"
    VALIDATED = "Validated"
    EXPIRED = "Expired"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ConsentState.VALIDATED, ConsentState.EXPIRED, ConsentState.REJECTED})


class ConsentDecision(str, Enum):
    GRANTED = "Granted"
    DENIED = "Denied"
    PENDING = "Pending"


# States in which the server has recorded a decision
DECIDED_STATES = frozenset({ConsentState.VALIDATED, ConsentState.EXPIRED})

# Lineage timestamps in the order the stages happen
TIMELINE_FIELDS = ("created_at", "stored_at", "request_at", "validated_at")


class ConsentRecord(BaseModel):
    """
    One consent decision and its lineage timestamps.

    Records are immutable: every stage transition produces a new instance,
    see consent_lineage.services.state_machine. Ordering rules between the
    timestamps are enforced by the TimestampValidator, not here, so that an
    out-of-order record can still be represented, logged and rejected.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    subject_id: str = Field(..., min_length=1, description="Opaque user/device identifier")
    consent_payload: str = Field(..., min_length=1, description="Opaque encoded consent preferences")
    created_at: datetime = Field(..., description="Set once by the originating client")
    stored_at: Optional[datetime] = Field(None, description="Set when persisted to the device store")
    request_at: Optional[datetime] = Field(None, description="Set by the sync client per transmission attempt")
    validated_at: Optional[datetime] = Field(None, description="Set by the server when the validity check completes")
    expires_at: Optional[datetime] = Field(None, description="Policy deadline, server assigned")
    state: ConsentState = ConsentState.CREATED
    decision: Optional[ConsentDecision] = None
    rejection_reason: Optional[str] = None

    @field_validator("created_at", "stored_at", "request_at", "validated_at", "expires_at")
    @classmethod
    def timestamps_must_be_utc(cls, v):
        if v is None:
            return v
        return ensure_utc(v)

    @model_validator(mode="after")
    def decision_only_once_decided(self):
        if self.decision is not None and self.state not in DECIDED_STATES:
            raise ValueError(f"decision is only present once a record is Validated or Expired, not {self.state.value}")
        if self.state in DECIDED_STATES and self.decision is None:
            raise ValueError(f"a {self.state.value} record must carry a decision")
        return self

    @field_serializer("created_at", "stored_at", "request_at", "validated_at", "expires_at")
    def serialize_timestamp(self, v: Optional[datetime]) -> Optional[str]:
        return format_rfc3339(v) if v is not None else None

    @classmethod
    def create(cls, subject_id: str, consent_payload: str, created_at: datetime) -> "ConsentRecord":
        """Capture a new consent decision in the Created state."""
        return cls(subject_id=subject_id, consent_payload=consent_payload, created_at=created_at)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def record_key(self) -> tuple[str, datetime]:
        """Identity of the record; survives retransmission."""
        return (self.subject_id, self.created_at)

    @property
    def attempt_key(self) -> tuple[str, datetime, Optional[datetime]]:
        """Identity of one transmission attempt."""
        return (self.subject_id, self.created_at, self.request_at)

    def timeline(self) -> list[tuple[str, datetime]]:
        """Present lineage timestamps, in stage order."""
        return [(name, getattr(self, name)) for name in TIMELINE_FIELDS if getattr(self, name) is not None]
