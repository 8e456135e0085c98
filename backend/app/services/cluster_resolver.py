"""
Cluster resolver.

Ranks each candidate cluster, picks exactly one primary and pairs every
other member with it. A pair of leads is reported at most once per run,
under the first match reason that produced it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import cmp_to_key
from typing import Callable, Iterable, List, Sequence, Set, Tuple

from app.models import ScrapedLead
from app.services.candidate_index import CandidateCluster, MatchReason

logger = logging.getLogger(__name__)

Comparator = Callable[[ScrapedLead, ScrapedLead], int]


@dataclass(frozen=True)
class DuplicateMatch:
    """One resolved pairing: duplicate folds into primary."""
    primary_id: str
    duplicate_id: str
    match_reason: MatchReason

    @property
    def pair_key(self) -> Tuple[str, str]:
        return pair_key(self.primary_id, self.duplicate_id)

    def to_dict(self):
        return {
            "primary_id": self.primary_id,
            "duplicate_id": self.duplicate_id,
            "match_reason": self.match_reason.value,
        }


def pair_key(first_id, second_id) -> Tuple[str, str]:
    """Order-independent key for a pair of lead ids."""
    a, b = str(first_id), str(second_id)
    return (a, b) if a <= b else (b, a)


# ============================================================================
# RANKING
# ============================================================================

def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def by_active_state(a: ScrapedLead, b: ScrapedLead) -> int:
    """Leads already merged away rank below every active lead."""
    return _cmp(a.is_merged, b.is_merged)


def by_verification_tier(a: ScrapedLead, b: ScrapedLead) -> int:
    """Verified email or phone ranks first."""
    return _cmp(b.is_verified, a.is_verified)


def by_confidence(a: ScrapedLead, b: ScrapedLead) -> int:
    """Higher confidence ranks first."""
    return _cmp(b.confidence_score or 0, a.confidence_score or 0)


def by_recency(a: ScrapedLead, b: ScrapedLead) -> int:
    """Older record ranks first; a missing timestamp ranks last."""
    if a.created_at == b.created_at:
        return 0
    if a.created_at is None:
        return 1
    if b.created_at is None:
        return -1
    return _cmp(_as_timestamp(a.created_at), _as_timestamp(b.created_at))


def by_lead_id(a: ScrapedLead, b: ScrapedLead) -> int:
    return _cmp(str(a.id), str(b.id))


def _as_timestamp(value: datetime) -> float:
    # Naive datetimes are taken as UTC so mixed inputs still compare
    if value.tzinfo is None:
        return (value - datetime(1970, 1, 1)).total_seconds()
    return value.timestamp()


# Applied in sequence; the first non-zero result decides.
PRIMARY_RANKING: Tuple[Comparator, ...] = (
    by_active_state,
    by_verification_tier,
    by_confidence,
    by_recency,
    by_lead_id,
)


def compare_leads(a: ScrapedLead, b: ScrapedLead, ranking: Sequence[Comparator] = PRIMARY_RANKING) -> int:
    for comparator in ranking:
        result = comparator(a, b)
        if result:
            return result
    return 0


def rank_cluster(leads: Iterable[ScrapedLead], ranking: Sequence[Comparator] = PRIMARY_RANKING) -> List[ScrapedLead]:
    """Best candidate for primary first."""
    return sorted(leads, key=cmp_to_key(lambda a, b: compare_leads(a, b, ranking)))


# ============================================================================
# RESOLVER
# ============================================================================

class ClusterResolver:
    """
    Turn candidate clusters into (primary, duplicate, reason) matches.

    One resolver instance covers one run: it remembers which pairs it has
    already emitted so a pair found by both the email and the phone index
    is reported once.
    """

    def __init__(self, ranking: Sequence[Comparator] = PRIMARY_RANKING):
        self.ranking = tuple(ranking)
        self._processed: Set[Tuple[str, str]] = set()

    def resolve(self, cluster: CandidateCluster) -> List[DuplicateMatch]:
        if len(cluster.leads) < 2:
            return []

        ranked = rank_cluster(cluster.leads, self.ranking)
        primary = ranked[0]

        if primary.is_merged:
            logger.debug(
                f"Skipping {cluster.reason.value} cluster '{cluster.key}': every member already merged"
            )
            return []

        matches = []
        for duplicate in ranked[1:]:
            if str(duplicate.id) == str(primary.id):
                continue

            key = pair_key(primary.id, duplicate.id)
            if key in self._processed:
                continue
            self._processed.add(key)

            matches.append(DuplicateMatch(
                primary_id=str(primary.id),
                duplicate_id=str(duplicate.id),
                match_reason=cluster.reason,
            ))

        return matches

    def resolve_all(self, clusters: Iterable[CandidateCluster]) -> List[DuplicateMatch]:
        matches: List[DuplicateMatch] = []
        for cluster in clusters:
            matches.extend(self.resolve(cluster))
        return matches
