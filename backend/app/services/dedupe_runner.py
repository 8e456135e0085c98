"""
Dedupe run orchestrator.

One run: assemble the working set, index it, resolve clusters into pairs,
record every pair, optionally merge, and report a summary.

Working-set modes:
1. lead_ids  - the explicit batch plus existing leads on the same domains
2. job_id    - every lead produced by one job
3. (neither) - full sweep of non-rejected leads
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.config import settings
from app.errors import PersistenceError
from app.models import ScrapedLead, User
from app.services.candidate_index import iter_candidate_clusters
from app.services.cluster_resolver import ClusterResolver, DuplicateMatch
from app.services.duplicate_store import DuplicateStore, LeadStore
from app.services.merge_engine import MergeEngine

logger = logging.getLogger(__name__)

_MAX_TIME = datetime.max.replace(tzinfo=timezone.utc)


class RunMode(str, Enum):
    EXPLICIT = "explicit"
    JOB = "job"
    SWEEP = "sweep"


@dataclass
class DedupeSummary:
    """Outcome of one run."""
    mode: RunMode
    leads_checked: int = 0
    duplicates_found: int = 0
    new_relationships: int = 0
    merged_count: int = 0
    merge_skipped: int = 0
    merge_failures: int = 0
    record_failures: int = 0
    duplicate_pairs: List[DuplicateMatch] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self):
        return {
            "success": True,
            "mode": self.mode.value,
            "leads_checked": self.leads_checked,
            "duplicates_found": self.duplicates_found,
            "new_relationships": self.new_relationships,
            "merged_count": self.merged_count,
            "merge_skipped": self.merge_skipped,
            "merge_failures": self.merge_failures,
            "record_failures": self.record_failures,
            "duplicate_pairs": [pair.to_dict() for pair in self.duplicate_pairs],
            "message": self.message,
        }


def _created_sort_key(lead: ScrapedLead):
    created = lead.created_at
    if created is None:
        return _MAX_TIME
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created


def order_working_set(leads: Sequence[ScrapedLead]) -> List[ScrapedLead]:
    """Drop repeated ids, then oldest first (undated last)."""
    unique: Dict[str, ScrapedLead] = {}
    for lead in leads:
        unique.setdefault(str(lead.id), lead)
    return sorted(unique.values(), key=_created_sort_key)


class DedupeRunner:
    """Drive one deduplication pass over a bounded working set."""

    def __init__(
        self,
        lead_store: LeadStore,
        duplicate_store: DuplicateStore,
        merge_engine: MergeEngine,
        cross_batch_limit: Optional[int] = None,
        sweep_limit: Optional[int] = None,
    ):
        self.lead_store = lead_store
        self.duplicate_store = duplicate_store
        self.merge_engine = merge_engine
        self.cross_batch_limit = (
            settings.DEDUPE_CROSS_BATCH_LIMIT if cross_batch_limit is None else cross_batch_limit
        )
        self.sweep_limit = settings.DEDUPE_FULL_SWEEP_LIMIT if sweep_limit is None else sweep_limit

    # ========================================================================
    # WORKING SET
    # ========================================================================

    async def assemble_working_set(
        self,
        job_id: Optional[str] = None,
        lead_ids: Optional[Sequence[str]] = None,
    ) -> Tuple[RunMode, List[ScrapedLead]]:
        if lead_ids:
            batch = await self.lead_store.fetch_by_ids(lead_ids)
            domains = sorted({lead.domain for lead in batch if lead.domain})

            neighbours: List[ScrapedLead] = []
            if domains:
                neighbours = await self.lead_store.fetch_domain_neighbours(
                    domains,
                    exclude_ids=[str(lead_id) for lead_id in lead_ids],
                    limit=self.cross_batch_limit,
                )
            if neighbours:
                logger.info(
                    f"Cross-job dedup: checking {len(batch)} new leads "
                    f"against {len(neighbours)} existing leads"
                )
            return RunMode.EXPLICIT, order_working_set(neighbours + batch)

        if job_id:
            return RunMode.JOB, order_working_set(await self.lead_store.fetch_by_job(job_id))

        return RunMode.SWEEP, order_working_set(await self.lead_store.fetch_sweep(self.sweep_limit))

    # ========================================================================
    # RUN
    # ========================================================================

    async def record_matches(
        self,
        matches: Sequence[DuplicateMatch],
        summary: DedupeSummary,
    ) -> Dict[Tuple[str, str], Any]:
        """Persist every match and return relationship ids; a failed insert is counted and skipped."""
        relationship_ids: Dict[Tuple[str, str], Any] = {}

        for match in matches:
            try:
                row, created = await self.duplicate_store.record(match)
            except PersistenceError as e:
                logger.error(
                    f"Could not record {match.duplicate_id} -> {match.primary_id}: {e.detail}"
                )
                summary.record_failures += 1
                continue

            relationship_ids[(match.primary_id, match.duplicate_id)] = row.id
            if created:
                summary.new_relationships += 1

        return relationship_ids

    async def run(
        self,
        job_id: Optional[str] = None,
        lead_ids: Optional[Sequence[str]] = None,
        auto_merge: bool = False,
        user: Optional[User] = None,
    ) -> DedupeSummary:
        mode, leads = await self.assemble_working_set(job_id=job_id, lead_ids=lead_ids)
        summary = DedupeSummary(mode=mode, leads_checked=len(leads))

        if not leads:
            summary.message = "No leads to check"
            logger.info(f"Dedupe run ({mode.value}): no leads to check")
            return summary

        logger.info(f"Checking {len(leads)} leads for duplicates ({mode.value})")

        resolver = ClusterResolver()
        matches = resolver.resolve_all(iter_candidate_clusters(leads))
        summary.duplicate_pairs = matches
        summary.duplicates_found = len(matches)
        logger.info(f"Found {len(matches)} duplicate pairs")

        relationship_ids = await self.record_matches(matches, summary)

        if auto_merge and matches:
            stats = await self.merge_engine.merge_all(matches, relationship_ids, user=user)
            summary.merged_count = stats.merged
            summary.merge_skipped = stats.skipped
            summary.merge_failures = stats.failed

        logger.info(
            f"Dedupe run ({mode.value}) complete: {summary.duplicates_found} pairs, "
            f"{summary.new_relationships} new, {summary.merged_count} merged, "
            f"{summary.merge_skipped} skipped, {summary.merge_failures} failed"
        )
        return summary
