"""
Persistence for the dedupe engine.

LeadStore reads and writes scraped_leads; DuplicateStore reads and writes
lead_duplicates. Database failures are logged with context and re-raised
as PersistenceError so the API never leaks driver messages.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import PersistenceError
from app.models import LeadDuplicate, ScrapedLead
from app.services.cluster_resolver import DuplicateMatch

logger = logging.getLogger(__name__)

REJECTED_STATUS = "rejected"


def _to_uuid(value) -> Optional[UUID]:
    """Safely convert to UUID; unparseable ids are dropped"""
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        logger.warning(f"Ignoring malformed lead id: {value!r}")
        return None


def _to_uuids(values: Iterable) -> List[UUID]:
    return [u for u in (_to_uuid(v) for v in values) if u is not None]


class LeadStore:
    """Read/write access to lead records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _scalars(self, stmt, context: str) -> List[ScrapedLead]:
        try:
            result = await self.db.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Lead store read failed ({context}): {e}", exc_info=True)
            raise PersistenceError(f"lead read failed: {context}") from e

    async def fetch_by_ids(self, lead_ids: Sequence) -> List[ScrapedLead]:
        ids = _to_uuids(lead_ids)
        if not ids:
            return []
        stmt = (
            select(ScrapedLead)
            .where(ScrapedLead.id.in_(ids))
            .order_by(ScrapedLead.created_at.asc())
        )
        return await self._scalars(stmt, f"{len(ids)} explicit ids")

    async def fetch_by_job(self, job_id) -> List[ScrapedLead]:
        job_uuid = _to_uuid(job_id)
        if job_uuid is None:
            return []
        stmt = (
            select(ScrapedLead)
            .where(ScrapedLead.job_id == job_uuid)
            .order_by(ScrapedLead.created_at.asc())
        )
        return await self._scalars(stmt, f"job {job_id}")

    async def fetch_domain_neighbours(
        self,
        domains: Sequence[str],
        exclude_ids: Sequence,
        limit: int
    ) -> List[ScrapedLead]:
        """Non-rejected leads on any of the given domains, outside the batch."""
        if not domains or limit <= 0:
            return []
        stmt = select(ScrapedLead).where(
            ScrapedLead.domain.in_(list(domains)),
            ScrapedLead.status != REJECTED_STATUS,
        )
        excluded = _to_uuids(exclude_ids)
        if excluded:
            stmt = stmt.where(ScrapedLead.id.not_in(excluded))
        stmt = stmt.order_by(ScrapedLead.created_at.asc()).limit(limit)
        return await self._scalars(stmt, f"neighbours of {len(domains)} domains")

    async def fetch_sweep(self, limit: int) -> List[ScrapedLead]:
        """Oldest non-rejected leads, up to limit."""
        if limit <= 0:
            return []
        stmt = (
            select(ScrapedLead)
            .where(ScrapedLead.status != REJECTED_STATUS)
            .order_by(ScrapedLead.created_at.asc())
            .limit(limit)
        )
        return await self._scalars(stmt, "full sweep")

    async def get(self, lead_id) -> Optional[ScrapedLead]:
        lead_uuid = _to_uuid(lead_id)
        if lead_uuid is None:
            return None
        try:
            return await self.db.get(ScrapedLead, lead_uuid)
        except SQLAlchemyError as e:
            logger.error(f"Lead store read failed (lead {lead_id}): {e}", exc_info=True)
            raise PersistenceError(f"lead read failed: {lead_id}") from e

    async def get_for_merge(self, lead_id) -> Optional[ScrapedLead]:
        """
        Re-read a lead from the database and lock its row until commit.

        The identity map may still hold the copy loaded with the working set;
        a merge must reconcile against what is stored now.
        """
        lead_uuid = _to_uuid(lead_id)
        if lead_uuid is None:
            return None
        try:
            return await self.db.get(
                ScrapedLead, lead_uuid, populate_existing=True, with_for_update=True
            )
        except SQLAlchemyError as e:
            logger.error(f"Lead store read failed (merge input {lead_id}): {e}", exc_info=True)
            raise PersistenceError(f"lead read failed: {lead_id}") from e

    async def commit(self) -> None:
        """Commit pending lead, relationship and audit writes as one unit."""
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Commit failed: {e}", exc_info=True)
            raise PersistenceError("commit failed") from e

    async def rollback(self) -> None:
        await self.db.rollback()


class DuplicateStore:
    """Read/write access to duplicate relationships."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(self, primary_id, duplicate_id) -> Optional[LeadDuplicate]:
        stmt = select(LeadDuplicate).where(
            LeadDuplicate.primary_lead_id == _to_uuid(primary_id),
            LeadDuplicate.duplicate_lead_id == _to_uuid(duplicate_id),
        ).limit(1).execution_options(populate_existing=True)
        try:
            result = await self.db.execute(stmt)
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error(
                f"Relationship lookup failed ({primary_id} <- {duplicate_id}): {e}", exc_info=True
            )
            raise PersistenceError("relationship lookup failed") from e

    async def record(self, match: DuplicateMatch) -> Tuple[LeadDuplicate, bool]:
        """
        Insert the relationship unless this exact (primary, duplicate) row exists.

        Check-then-insert: two overlapping runs can both insert. The extra
        row is tolerated rather than locked against.
        """
        existing = await self.find(match.primary_id, match.duplicate_id)
        if existing is not None:
            return existing, False

        row = LeadDuplicate(
            primary_lead_id=_to_uuid(match.primary_id),
            duplicate_lead_id=_to_uuid(match.duplicate_id),
            match_reason=match.match_reason.value,
            merged_at=None,
        )
        try:
            self.db.add(row)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                f"Relationship insert failed ({match.primary_id} <- {match.duplicate_id}): {e}",
                exc_info=True
            )
            raise PersistenceError("relationship insert failed") from e

        return row, True

    async def get(self, relationship_id) -> Optional[LeadDuplicate]:
        row_id = _to_uuid(relationship_id)
        if row_id is None:
            return None
        try:
            return await self.db.get(LeadDuplicate, row_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error(f"Relationship read failed ({relationship_id}): {e}", exc_info=True)
            raise PersistenceError("relationship read failed") from e

    async def get_for_merge(self, relationship_id) -> Optional[LeadDuplicate]:
        """Fresh copy of the row, locked until the merge transaction ends."""
        row_id = _to_uuid(relationship_id)
        if row_id is None:
            return None
        try:
            return await self.db.get(
                LeadDuplicate, row_id, populate_existing=True, with_for_update=True
            )
        except SQLAlchemyError as e:
            logger.error(f"Relationship read failed ({relationship_id}): {e}", exc_info=True)
            raise PersistenceError("relationship read failed") from e

    async def refresh(self, row: LeadDuplicate) -> LeadDuplicate:
        """Re-read merged_at right before a merge write."""
        try:
            await self.db.refresh(row, attribute_names=["merged_at"])
            return row
        except SQLAlchemyError as e:
            logger.error(f"Relationship refresh failed ({row.id}): {e}", exc_info=True)
            raise PersistenceError("relationship read failed") from e

    def _filtered(self, stmt, merged: Optional[bool]):
        if merged is True:
            stmt = stmt.where(LeadDuplicate.merged_at.is_not(None))
        elif merged is False:
            stmt = stmt.where(LeadDuplicate.merged_at.is_(None))
        return stmt

    async def list(self, merged: Optional[bool] = None, limit: int = 50, offset: int = 0) -> List[LeadDuplicate]:
        stmt = self._filtered(select(LeadDuplicate), merged)
        stmt = stmt.order_by(LeadDuplicate.created_at.desc()).offset(offset).limit(limit)
        try:
            result = await self.db.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Relationship listing failed: {e}", exc_info=True)
            raise PersistenceError("relationship listing failed") from e

    async def count(self, merged: Optional[bool] = None) -> int:
        stmt = self._filtered(select(func.count()).select_from(LeadDuplicate), merged)
        try:
            result = await self.db.execute(stmt)
            return result.scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Relationship count failed: {e}", exc_info=True)
            raise PersistenceError("relationship count failed") from e

    @staticmethod
    def mark_merged(row: LeadDuplicate) -> None:
        """Stamp completion; committed together with the merge writes."""
        row.merged_at = datetime.now(timezone.utc)
