"""
Candidate indexer for lead deduplication.

Groups a working set of leads under four independent match keys and
yields every group with two or more members as a candidate cluster.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional

from app.models import ScrapedLead
from app.services.normalization import (
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_text,
)

logger = logging.getLogger(__name__)


class MatchReason(str, Enum):
    """Index type that produced a pairing. Declaration order is processing order."""
    EMAIL = "email"
    PHONE = "phone"
    DOMAIN_NAME = "domain_name"
    COMPANY_CITY_CONTACT = "company_city_contact"


@dataclass(frozen=True)
class CandidateCluster:
    """Leads that share one normalized key in one index."""
    reason: MatchReason
    key: str
    leads: List[ScrapedLead]

    def __len__(self):
        return len(self.leads)


@dataclass
class CandidateIndex:
    """Normalized key -> leads, one map per match reason."""
    buckets: Dict[MatchReason, Dict[str, List[ScrapedLead]]] = field(
        default_factory=lambda: {reason: {} for reason in MatchReason}
    )

    def add(self, reason: MatchReason, key: Optional[str], lead: ScrapedLead) -> None:
        if not key:
            return
        self.buckets[reason].setdefault(key, []).append(lead)

    def clusters(self) -> Iterator[CandidateCluster]:
        """Yield buckets of size >= 2, in reason order then key insertion order."""
        for reason in MatchReason:
            for key, leads in self.buckets[reason].items():
                if len(leads) > 1:
                    yield CandidateCluster(reason=reason, key=key, leads=list(leads))


# ============================================================================
# KEY BUILDERS
# ============================================================================

def email_key(lead: ScrapedLead) -> Optional[str]:
    return normalize_email(lead.best_email)


def phone_key(lead: ScrapedLead) -> Optional[str]:
    return normalize_phone(lead.best_phone)


def domain_name_key(lead: ScrapedLead) -> Optional[str]:
    name = normalize_name(lead.full_name)
    if not name:
        return None
    return f"{lead.domain}:{name}"


def company_location_key(lead: ScrapedLead) -> Optional[str]:
    """
    company + city + state + contact name, all lowercased.

    Requires a company name, at least one of city/state, and a contact name.
    """
    company = lead.company_name
    city = lead.city
    state = lead.state
    name = normalize_name(lead.full_name)

    if not company or not (city or state) or not name:
        return None

    return ":".join([
        normalize_text(company),
        normalize_text(city or ""),
        normalize_text(state or ""),
        name,
    ])


KEY_BUILDERS = {
    MatchReason.EMAIL: email_key,
    MatchReason.PHONE: phone_key,
    MatchReason.DOMAIN_NAME: domain_name_key,
    MatchReason.COMPANY_CITY_CONTACT: company_location_key,
}


def build_candidate_index(leads: Iterable[ScrapedLead]) -> CandidateIndex:
    """Index every lead under each key it has."""
    index = CandidateIndex()
    count = 0

    for lead in leads:
        count += 1
        for reason, build_key in KEY_BUILDERS.items():
            index.add(reason, build_key(lead), lead)

    logger.debug(
        f"Indexed {count} leads: "
        + ", ".join(f"{reason.value}={len(index.buckets[reason])}" for reason in MatchReason)
    )
    return index


def iter_candidate_clusters(leads: Iterable[ScrapedLead]) -> Iterator[CandidateCluster]:
    """Build the index and yield its candidate clusters."""
    return build_candidate_index(leads).clusters()
