from datetime import datetime, timedelta

from consent_lineage.config import settings
from consent_lineage.schemas.consent import ConsentRecord


class ExpirationPolicy:
    """
    Server-side expiry deadline for consent records.

    The deadline is computed from the record's created_at and the configured
    time-to-live. Expiry supplied by a client is never consulted.
    """

    def __init__(self, ttl: timedelta | None = None):
        if ttl is not None and ttl <= timedelta(0):
            raise ValueError("Consent TTL must be positive")
        self.ttl = ttl

    @classmethod
    def from_settings(cls) -> "ExpirationPolicy":
        ttl = settings.consent_ttl_seconds
        return cls(timedelta(seconds=ttl) if ttl else None)

    def expires_at(self, record: ConsentRecord) -> datetime | None:
        if self.ttl is None:
            return None
        return record.created_at + self.ttl

    @staticmethod
    def is_expired(expires_at: datetime | None, now: datetime) -> bool:
        return expires_at is not None and expires_at <= now
