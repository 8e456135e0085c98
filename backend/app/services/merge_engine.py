"""
Merge engine.

Folds a duplicate lead into its primary according to a declarative
per-field policy, then marks the duplicate terminal and stamps the
relationship as merged. Each pair is its own transaction; one bad pair
never stops the rest of a run.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from app.errors import PairMergeError
from app.models import LeadDuplicate, ScrapedLead, User
from app.services.audit_service import AuditService
from app.services.candidate_index import MatchReason
from app.services.cluster_resolver import DuplicateMatch
from app.services.duplicate_store import DuplicateStore, LeadStore
from app.services.merge_lock import MergeLock, NullMergeLock

logger = logging.getLogger(__name__)

VERIFIED = "verified"
MERGED_STATUS = "rejected"
MERGED_QC_FLAG = "merged"


# ============================================================================
# POLICY
# ============================================================================

class MergeStrategy(str, Enum):
    UNION = "union"                      # ordered set union, primary first
    PREFER_VERIFIED = "prefer_verified"  # duplicate wins if primary empty or only duplicate verified
    PREFER_NON_NULL = "prefer_non_null"  # duplicate fills an empty primary
    OVERLAY = "overlay"                  # shallow map merge, primary keys win
    MAX = "max"


@dataclass(frozen=True)
class FieldRule:
    field: str
    strategy: MergeStrategy
    status_field: Optional[str] = None
    companions: Tuple[str, ...] = ()


MERGE_POLICY: Tuple[FieldRule, ...] = (
    FieldRule("all_emails", MergeStrategy.UNION),
    FieldRule("all_phones", MergeStrategy.UNION),
    FieldRule("enrichment_providers_used", MergeStrategy.UNION),
    FieldRule(
        "best_email", MergeStrategy.PREFER_VERIFIED,
        status_field="email_validation_status",
        companions=("email_validation_status", "email_source_url"),
    ),
    FieldRule(
        "best_phone", MergeStrategy.PREFER_VERIFIED,
        status_field="phone_validation_status",
        companions=("phone_validation_status", "phone_source_url"),
    ),
    FieldRule("full_name", MergeStrategy.PREFER_NON_NULL, companions=("name_source_url",)),
    FieldRule("schema_data", MergeStrategy.OVERLAY),
    FieldRule("confidence_score", MergeStrategy.MAX),
)


# ============================================================================
# RECONCILERS
# ============================================================================

def _item_key(item: Any) -> Any:
    try:
        hash(item)
        return item
    except TypeError:
        return json.dumps(item, sort_keys=True, default=str)


def union_items(primary_items: Optional[Iterable], duplicate_items: Optional[Iterable]) -> List[Any]:
    """Primary's items in order, then the duplicate's unseen items."""
    merged: List[Any] = []
    seen = set()
    for item in list(primary_items or []) + list(duplicate_items or []):
        key = _item_key(item)
        if key in seen:
            continue
        seen.add(key)
        merged.append(item)
    return merged


def _union(rule: FieldRule, primary: ScrapedLead, duplicate: ScrapedLead) -> Dict[str, Any]:
    return {rule.field: union_items(getattr(primary, rule.field), getattr(duplicate, rule.field))}


def _prefer_verified(rule: FieldRule, primary: ScrapedLead, duplicate: ScrapedLead) -> Dict[str, Any]:
    primary_value = getattr(primary, rule.field)
    primary_status = getattr(primary, rule.status_field)
    duplicate_status = getattr(duplicate, rule.status_field)

    duplicate_only_verified = duplicate_status == VERIFIED and primary_status != VERIFIED
    if primary_value and not duplicate_only_verified:
        return {}

    updates = {rule.field: getattr(duplicate, rule.field) or primary_value}
    for companion in rule.companions:
        updates[companion] = getattr(duplicate, companion) or getattr(primary, companion)
    return updates


def _prefer_non_null(rule: FieldRule, primary: ScrapedLead, duplicate: ScrapedLead) -> Dict[str, Any]:
    if getattr(primary, rule.field) or not getattr(duplicate, rule.field):
        return {}

    updates = {rule.field: getattr(duplicate, rule.field)}
    for companion in rule.companions:
        updates[companion] = getattr(duplicate, companion)
    return updates


def _overlay(rule: FieldRule, primary: ScrapedLead, duplicate: ScrapedLead) -> Dict[str, Any]:
    primary_map = getattr(primary, rule.field)
    duplicate_map = getattr(duplicate, rule.field)
    return {rule.field: {
        **(duplicate_map if isinstance(duplicate_map, dict) else {}),
        **(primary_map if isinstance(primary_map, dict) else {}),
    }}


def _max(rule: FieldRule, primary: ScrapedLead, duplicate: ScrapedLead) -> Dict[str, Any]:
    return {rule.field: max(getattr(primary, rule.field) or 0, getattr(duplicate, rule.field) or 0)}


RECONCILERS: Dict[MergeStrategy, Callable[[FieldRule, ScrapedLead, ScrapedLead], Dict[str, Any]]] = {
    MergeStrategy.UNION: _union,
    MergeStrategy.PREFER_VERIFIED: _prefer_verified,
    MergeStrategy.PREFER_NON_NULL: _prefer_non_null,
    MergeStrategy.OVERLAY: _overlay,
    MergeStrategy.MAX: _max,
}


def reconcile(
    primary: ScrapedLead,
    duplicate: ScrapedLead,
    policy: Sequence[FieldRule] = MERGE_POLICY
) -> Dict[str, Any]:
    """Field values the primary should hold after absorbing the duplicate."""
    updates: Dict[str, Any] = {}
    for rule in policy:
        updates.update(RECONCILERS[rule.strategy](rule, primary, duplicate))
    return updates


def changed_fields(lead: ScrapedLead, updates: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in updates.items() if getattr(lead, key) != value}


def apply_updates(lead: ScrapedLead, updates: Dict[str, Any]) -> None:
    for key, value in updates.items():
        setattr(lead, key, value)


def mark_duplicate_merged(duplicate: ScrapedLead, primary_id) -> None:
    duplicate.status = MERGED_STATUS
    duplicate.qc_flag = MERGED_QC_FLAG
    duplicate.qc_notes = f"Merged into {primary_id}"


# ============================================================================
# ENGINE
# ============================================================================

class MergeOutcome(str, Enum):
    MERGED = "merged"
    ALREADY_MERGED = "already_merged"          # merged_at was already stamped
    DEFERRED = "deferred"                      # another run holds the primary's lock
    DUPLICATE_TERMINAL = "duplicate_terminal"  # duplicate was folded elsewhere earlier
    PRIMARY_TERMINAL = "primary_terminal"      # primary itself was folded away


@dataclass
class MergeStats:
    merged: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: Dict[Tuple[str, str], MergeOutcome] = field(default_factory=dict)


class MergeEngine:
    """Apply merges pair by pair."""

    def __init__(
        self,
        lead_store: LeadStore,
        duplicate_store: DuplicateStore,
        audit_service: AuditService,
        merge_lock: Optional[MergeLock] = None,
        policy: Sequence[FieldRule] = MERGE_POLICY,
    ):
        self.lead_store = lead_store
        self.duplicate_store = duplicate_store
        self.audit_service = audit_service
        self.merge_lock = merge_lock or NullMergeLock()
        self.policy = tuple(policy)

    @staticmethod
    def match_for(relationship: LeadDuplicate) -> DuplicateMatch:
        return DuplicateMatch(
            primary_id=str(relationship.primary_lead_id),
            duplicate_id=str(relationship.duplicate_lead_id),
            match_reason=MatchReason(relationship.match_reason),
        )

    async def merge_pair(
        self,
        match: DuplicateMatch,
        relationship_id=None,
        user: Optional[User] = None,
    ) -> MergeOutcome:
        """
        Fold match.duplicate_id into match.primary_id.

        Only ids cross into here: the relationship row and both leads are
        re-read inside the merge transaction. Raises PairMergeError if the
        pair cannot be reconciled; nothing is written in that case.
        """
        async with self.merge_lock.hold(match.primary_id) as held:
            if not held:
                logger.info(f"Merge into {match.primary_id} is running elsewhere; deferring {match.duplicate_id}")
                return MergeOutcome.DEFERRED

            try:
                return await self._merge_locked(match, relationship_id, user)
            except PairMergeError:
                await self.lead_store.rollback()
                raise
            except Exception as e:
                await self.lead_store.rollback()
                raise PairMergeError(match.primary_id, match.duplicate_id, str(e)) from e

    async def _load_relationship(self, match: DuplicateMatch, relationship_id) -> LeadDuplicate:
        relationship = None
        if relationship_id is not None:
            relationship = await self.duplicate_store.get_for_merge(relationship_id)
        if relationship is None:
            relationship = await self.duplicate_store.find(match.primary_id, match.duplicate_id)
        if relationship is None:
            relationship, _ = await self.duplicate_store.record(match)
        return relationship

    async def _merge_locked(
        self,
        match: DuplicateMatch,
        relationship_id,
        user: Optional[User],
    ) -> MergeOutcome:
        relationship = await self._load_relationship(match, relationship_id)
        if relationship.merged_at is not None:
            return MergeOutcome.ALREADY_MERGED

        primary = await self.lead_store.get_for_merge(match.primary_id)
        duplicate = await self.lead_store.get_for_merge(match.duplicate_id)
        if primary is None or duplicate is None:
            missing = match.primary_id if primary is None else match.duplicate_id
            raise PairMergeError(match.primary_id, match.duplicate_id, f"lead {missing} no longer exists")

        if duplicate.is_merged:
            logger.info(f"Lead {match.duplicate_id} was already merged ({duplicate.qc_notes}); skipping")
            return MergeOutcome.DUPLICATE_TERMINAL
        if primary.is_merged:
            logger.warning(f"Primary {match.primary_id} was merged away ({primary.qc_notes}); not merging into it")
            return MergeOutcome.PRIMARY_TERMINAL

        updates = changed_fields(primary, reconcile(primary, duplicate, self.policy))
        old_values = {key: getattr(primary, key) for key in updates}

        # Completion gate: another run may have finished this pair meanwhile
        await self.duplicate_store.refresh(relationship)
        if relationship.merged_at is not None:
            return MergeOutcome.ALREADY_MERGED

        apply_updates(primary, updates)
        mark_duplicate_merged(duplicate, match.primary_id)
        self.duplicate_store.mark_merged(relationship)
        self.audit_service.log_merge(
            primary, duplicate, match.match_reason.value, old_values, updates, user=user
        )
        await self.lead_store.commit()

        logger.info(
            f"Merged lead {match.duplicate_id} into {match.primary_id} "
            f"({match.match_reason.value}; {len(updates)} fields updated)"
        )
        return MergeOutcome.MERGED

    async def merge_all(
        self,
        matches: Iterable[DuplicateMatch],
        relationship_ids: Optional[Dict[Tuple[str, str], Any]] = None,
        user: Optional[User] = None,
    ) -> MergeStats:
        """Merge every pair; failures are counted, not raised."""
        relationship_ids = relationship_ids or {}
        stats = MergeStats()

        for match in matches:
            key = (match.primary_id, match.duplicate_id)
            try:
                outcome = await self.merge_pair(match, relationship_ids.get(key), user=user)
            except PairMergeError as e:
                logger.error(f"Merge failed: {e}", exc_info=True)
                stats.failed += 1
                continue

            stats.outcomes[key] = outcome
            if outcome == MergeOutcome.MERGED:
                stats.merged += 1
            else:
                stats.skipped += 1

        return stats
