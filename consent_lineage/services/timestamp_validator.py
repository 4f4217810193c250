"""
Timestamp Validator

Enforces ordering and freshness rules on the lineage timestamps of a
consent record. Pure over the record and the reference clock; used at
every stage transition on both the client and the server.
"""

import logging
from datetime import datetime, timedelta

from consent_lineage.config import settings
from consent_lineage.exceptions import InvalidTimestampError
from consent_lineage.schemas.consent import ConsentRecord
from consent_lineage.utils.timestamps import Clock, SystemClock, format_rfc3339

logger = logging.getLogger(__name__)

DEFAULT_SKEW_TOLERANCE = timedelta(seconds=settings.clock_skew_tolerance_seconds)


class TimestampValidator:
    """Validates monotonicity and clock skew of a record's timestamps."""

    def __init__(self, clock: Clock | None = None, skew_tolerance: timedelta = DEFAULT_SKEW_TOLERANCE):
        if skew_tolerance < timedelta(0):
            raise ValueError("skew_tolerance must not be negative")
        self.clock = clock or SystemClock()
        self.skew_tolerance = skew_tolerance

    def validate(self, record: ConsentRecord, now: datetime | None = None) -> None:
        """
        Check a record against the ordering and freshness rules.

        Args:
            record: The record to check
            now: Reference time; defaults to the validator's clock

        Raises:
            InvalidTimestampError: on the first violated rule
        """
        reference = now or self.clock.now()

        # No stage may lie further ahead than the tolerated skew
        latest_allowed = reference + self.skew_tolerance
        for name, value in record.timeline():
            if value > latest_allowed:
                raise InvalidTimestampError(
                    f"{name} is in the future beyond the allowed clock skew",
                    field=name,
                    details={
                        name: format_rfc3339(value),
                        "reference_time": format_rfc3339(reference),
                        "skew_tolerance_seconds": int(self.skew_tolerance.total_seconds()),
                    },
                )

        # Each present stage must not precede the latest earlier stage
        previous_name, previous_value = "created_at", record.created_at
        for name, value in record.timeline()[1:]:
            if value < previous_value:
                raise InvalidTimestampError(
                    f"{name} is earlier than {previous_name}",
                    field=name,
                    details={name: format_rfc3339(value), previous_name: format_rfc3339(previous_value)},
                )
            previous_name, previous_value = name, value

        if record.expires_at is not None and record.expires_at <= record.created_at:
            raise InvalidTimestampError(
                "expires_at must be later than created_at",
                field="expires_at",
                details={
                    "expires_at": format_rfc3339(record.expires_at),
                    "created_at": format_rfc3339(record.created_at),
                },
            )

    def is_valid(self, record: ConsentRecord, now: datetime | None = None) -> bool:
        try:
            self.validate(record, now)
        except InvalidTimestampError as e:
            logger.debug(f"Timestamp validation failed for {record.subject_id}: {e.message}")
            return False
        return True
