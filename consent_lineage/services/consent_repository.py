import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consent_lineage.models.consent_record import AuthoritativeConsent
from consent_lineage.schemas.consent import ConsentRecord

logger = logging.getLogger(__name__)


class ConsentRepository:
    """Authoritative consent records, one per subject."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, subject_id: str) -> ConsentRecord | None:
        row = await self._get_row(subject_id)
        return row.to_record() if row else None

    async def save(self, record: ConsentRecord) -> ConsentRecord:
        """
        Insert or replace the authoritative record of a subject.

        Callers must hold the subject's lock; the row is flushed, not
        committed, so it joins the caller's transaction.
        """
        row = await self._get_row(record.subject_id)
        if row is None:
            row = AuthoritativeConsent(subject_id=record.subject_id)
            row.apply(record)
            self.db.add(row)
        else:
            row.apply(record)
        await self.db.flush()
        logger.debug(f"Saved authoritative consent for {record.subject_id} ({record.state.value})")
        return record

    async def _get_row(self, subject_id: str) -> AuthoritativeConsent | None:
        result = await self.db.execute(select(AuthoritativeConsent).where(AuthoritativeConsent.subject_id == subject_id))
        return result.scalars().first()
