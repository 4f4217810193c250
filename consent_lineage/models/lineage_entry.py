from sqlalchemy import Column, Index, Integer, String, Text, UniqueConstraint

from consent_lineage.database import Base, UTCDateTime
from consent_lineage.schemas.lineage import LineageEntry


class LineageLogEntry(Base):
    """Append-only lineage log row. Rows are inserted, never updated or deleted."""

    __tablename__ = "lineage_entries"

    # Global arrival order
    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(255), nullable=False)
    sequence = Column(Integer, nullable=False)
    transition = Column(String(32), nullable=False)
    from_state = Column(String(20), nullable=True)
    to_state = Column(String(20), nullable=False)
    timestamp = Column(UTCDateTime(), nullable=False)
    actor = Column(String(64), nullable=False)
    consent_string = Column(Text, nullable=True)
    created_at = Column(UTCDateTime(), nullable=True)
    request_at = Column(UTCDateTime(), nullable=True)
    validated_at = Column(UTCDateTime(), nullable=True)
    expires_at = Column(UTCDateTime(), nullable=True)
    decision = Column(String(20), nullable=True)
    result = Column(String(255), nullable=False)
    reason = Column(String(64), nullable=True)
    prev_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("subject_id", "sequence", name="uq_lineage_subject_sequence"),
        Index("idx_lineage_subject_timestamp", "subject_id", "timestamp"),
    )

    @classmethod
    def from_entry(cls, entry: LineageEntry) -> "LineageLogEntry":
        return cls(
            subject_id=entry.subject_id,
            sequence=entry.sequence,
            transition=entry.transition,
            from_state=entry.from_state,
            to_state=entry.to_state,
            timestamp=entry.timestamp,
            actor=entry.actor,
            consent_string=entry.consent_string,
            created_at=entry.created_at,
            request_at=entry.request_at,
            validated_at=entry.validated_at,
            expires_at=entry.expires_at,
            decision=entry.decision,
            result=entry.result,
            reason=entry.reason,
            prev_hash=entry.prev_hash,
            entry_hash=entry.entry_hash,
        )

    def to_entry(self) -> LineageEntry:
        return LineageEntry(
            subject_id=self.subject_id,
            sequence=self.sequence,
            transition=self.transition,
            from_state=self.from_state,
            to_state=self.to_state,
            timestamp=self.timestamp,
            actor=self.actor,
            consent_string=self.consent_string,
            created_at=self.created_at,
            request_at=self.request_at,
            validated_at=self.validated_at,
            expires_at=self.expires_at,
            decision=self.decision,
            result=self.result,
            reason=self.reason,
            prev_hash=self.prev_hash,
            entry_hash=self.entry_hash,
        )
