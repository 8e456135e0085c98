"""
Lead Deduplication Routes
=========================
Run duplicate detection, review discovered pairs, merge one pair.

All endpoints require an admin bearer token.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import require_admin
from app.config import settings
from app.database import get_db
from app.errors import NotFoundError
from app.models import User
from app.schemas import (
    DedupeRequest,
    DedupeResponse,
    DuplicateListResponse,
    DuplicateRelationshipResponse,
    MergePairResponse,
)
from app.services.audit_service import AuditService
from app.services.dedupe_runner import DedupeRunner
from app.services.duplicate_store import DuplicateStore, LeadStore
from app.services.merge_engine import MergeEngine
from app.services.merge_lock import create_merge_lock

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/leads", tags=["Deduplication"])


# ============================================
# Dependencies
# ============================================

async def get_merge_lock():
    """Per-request merge lock; the Redis connection is opened lazily."""
    lock = create_merge_lock()
    await lock.initialize()
    try:
        yield lock
    finally:
        await lock.close()


def get_dedupe_runner(
    db: AsyncSession = Depends(get_db),
    merge_lock=Depends(get_merge_lock),
) -> DedupeRunner:
    lead_store = LeadStore(db)
    duplicate_store = DuplicateStore(db)
    merge_engine = MergeEngine(lead_store, duplicate_store, AuditService(db), merge_lock)
    return DedupeRunner(lead_store, duplicate_store, merge_engine)


# ============================================
# Endpoints
# ============================================

@router.post("/dedupe", response_model=DedupeResponse)
async def run_dedupe(
    request: Optional[DedupeRequest] = Body(None),
    current_user: User = Depends(require_admin),
    runner: DedupeRunner = Depends(get_dedupe_runner),
):
    """
    Detect duplicate leads and record each pair once.

    - **lead_ids**: check this batch, plus existing leads on the same domains
    - **job_id**: check every lead from one scrape/import job
    - neither: sweep all non-rejected leads
    - **auto_merge**: also fold each duplicate into its primary
    """
    request = request or DedupeRequest()
    logger.info(
        f"Dedupe requested by {current_user.email}: job_id={request.job_id}, "
        f"lead_ids={len(request.lead_ids or [])}, auto_merge={request.auto_merge}"
    )

    summary = await runner.run(
        job_id=request.job_id,
        lead_ids=request.lead_ids,
        auto_merge=request.auto_merge,
        user=current_user,
    )
    return summary.to_dict()


@router.get("/duplicates", response_model=DuplicateListResponse)
async def list_duplicates(
    merged: Optional[bool] = Query(None, description="true: merged only, false: pending only"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=settings.DUPLICATES_PAGE_SIZE_MAX),
    current_user: User = Depends(require_admin),
    runner: DedupeRunner = Depends(get_dedupe_runner),
):
    """List recorded duplicate relationships, newest first."""
    store = runner.duplicate_store
    total = await store.count(merged=merged)
    rows = await store.list(merged=merged, limit=page_size, offset=(page - 1) * page_size)

    return DuplicateListResponse(
        duplicates=[DuplicateRelationshipResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size if total > 0 else 0,
    )


@router.post("/duplicates/{relationship_id}/merge", response_model=MergePairResponse)
async def merge_duplicate(
    relationship_id: str,
    current_user: User = Depends(require_admin),
    runner: DedupeRunner = Depends(get_dedupe_runner),
):
    """Fold one recorded duplicate into its primary (manual review action)."""
    relationship = await runner.duplicate_store.get(relationship_id)
    if relationship is None:
        raise NotFoundError("Duplicate relationship not found")

    match = MergeEngine.match_for(relationship)
    outcome = await runner.merge_engine.merge_pair(match, relationship.id, user=current_user)

    logger.info(f"Manual merge {relationship_id} by {current_user.email}: {outcome.value}")
    return MergePairResponse(
        outcome=outcome.value,
        primary_id=match.primary_id,
        duplicate_id=match.duplicate_id,
    )
