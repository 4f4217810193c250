"""
Authoritative consent record, one row per subject.

The server is the sole writer of this table; rows are replaced only by a
record with a later created_at, inside the subject's critical section.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Enum, String, Text

from consent_lineage.database import Base, UTCDateTime
from consent_lineage.schemas.consent import ConsentDecision, ConsentRecord, ConsentState


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class AuthoritativeConsent(Base):
    __tablename__ = "consent_records"

    subject_id = Column(String(255), primary_key=True)
    consent_payload = Column(Text, nullable=False)
    created_at = Column(UTCDateTime(), nullable=False)
    stored_at = Column(UTCDateTime(), nullable=True)
    request_at = Column(UTCDateTime(), nullable=True)
    validated_at = Column(UTCDateTime(), nullable=True)
    # Server-assigned; client-supplied expiry is never persisted
    expires_at = Column(UTCDateTime(), nullable=True)
    state = Column(
        Enum(ConsentState, name="consent_state", native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    decision = Column(
        Enum(ConsentDecision, name="consent_decision", native_enum=False, values_callable=_enum_values),
        nullable=True,
    )
    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_record(self) -> ConsentRecord:
        return ConsentRecord(
            subject_id=self.subject_id,
            consent_payload=self.consent_payload,
            created_at=self.created_at,
            stored_at=self.stored_at,
            request_at=self.request_at,
            validated_at=self.validated_at,
            expires_at=self.expires_at,
            state=self.state,
            decision=self.decision,
        )

    def apply(self, record: ConsentRecord) -> None:
        """Overwrite this row with a newer authoritative record."""
        self.consent_payload = record.consent_payload
        self.created_at = record.created_at
        self.stored_at = record.stored_at
        self.request_at = record.request_at
        self.validated_at = record.validated_at
        self.expires_at = record.expires_at
        self.state = record.state
        self.decision = record.decision

    def __repr__(self) -> str:
        return f"<AuthoritativeConsent(subject_id={self.subject_id}, state={self.state}, decision={self.decision})>"
