# tests/fakes.py
"""In-memory stand-ins for the stores, the audit service and Redis."""

from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from redis.exceptions import ConnectionError as RedisConnectionError

from app.errors import PersistenceError
from app.models import LeadDuplicate, ScrapedLead
from app.services.duplicate_store import DuplicateStore, _to_uuid


class FakeLeadStore:
    """LeadStore over a dict, ordered the way the real queries order."""

    def __init__(self, leads: Optional[List[ScrapedLead]] = None):
        self.leads: Dict[str, ScrapedLead] = {}
        self.commits = 0
        self.rollbacks = 0
        self.fail_reads = False
        self.fail_commit = False
        self.calls: List[str] = []
        for lead in leads or []:
            self.add(lead)

    def add(self, lead: ScrapedLead) -> ScrapedLead:
        self.leads[str(lead.id)] = lead
        return lead

    def _ordered(self, leads):
        return sorted(leads, key=lambda lead: lead.created_at)

    def _check(self, call: str):
        self.calls.append(call)
        if self.fail_reads:
            raise PersistenceError(f"simulated read failure: {call}")

    async def fetch_by_ids(self, lead_ids):
        self._check("fetch_by_ids")
        wanted = {str(i) for i in lead_ids}
        return self._ordered(l for l in self.leads.values() if str(l.id) in wanted)

    async def fetch_by_job(self, job_id):
        self._check("fetch_by_job")
        return self._ordered(l for l in self.leads.values() if str(l.job_id) == str(job_id))

    async def fetch_domain_neighbours(self, domains, exclude_ids, limit):
        self._check("fetch_domain_neighbours")
        excluded = {str(i) for i in exclude_ids}
        found = [
            l for l in self.leads.values()
            if l.domain in domains and l.status != "rejected" and str(l.id) not in excluded
        ]
        return self._ordered(found)[:limit]

    async def fetch_sweep(self, limit):
        self._check("fetch_sweep")
        return self._ordered(l for l in self.leads.values() if l.status != "rejected")[:limit]

    async def get(self, lead_id):
        self._check("get")
        return self.leads.get(str(lead_id))

    async def get_for_merge(self, lead_id):
        self._check("get_for_merge")
        return self.leads.get(str(lead_id))

    async def commit(self):
        if self.fail_commit:
            raise PersistenceError("simulated commit failure")
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


class FakeDuplicateStore:
    """DuplicateStore over a list of LeadDuplicate rows."""

    def __init__(self):
        self.rows: List[LeadDuplicate] = []
        self.fail_record_for: set = set()
        self.refreshes = 0

    async def find(self, primary_id, duplicate_id):
        for row in self.rows:
            if str(row.primary_lead_id) == str(primary_id) and str(row.duplicate_lead_id) == str(duplicate_id):
                return row
        return None

    async def record(self, match):
        if match.duplicate_id in self.fail_record_for:
            raise PersistenceError("simulated insert failure")
        existing = await self.find(match.primary_id, match.duplicate_id)
        if existing is not None:
            return existing, False
        row = LeadDuplicate(
            id=uuid4(),
            primary_lead_id=_to_uuid(match.primary_id),
            duplicate_lead_id=_to_uuid(match.duplicate_id),
            match_reason=match.match_reason.value,
            merged_at=None,
            created_at=datetime.now(timezone.utc),
        )
        self.rows.append(row)
        return row, True

    async def get(self, relationship_id):
        for row in self.rows:
            if str(row.id) == str(relationship_id):
                return row
        return None

    async def get_for_merge(self, relationship_id):
        return await self.get(relationship_id)

    async def refresh(self, row):
        self.refreshes += 1
        return row

    def _filtered(self, merged):
        if merged is None:
            return list(self.rows)
        return [row for row in self.rows if (row.merged_at is not None) == merged]

    async def list(self, merged=None, limit=50, offset=0):
        rows = sorted(self._filtered(merged), key=lambda r: r.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def count(self, merged=None):
        return len(self._filtered(merged))

    mark_merged = staticmethod(DuplicateStore.mark_merged)


class FakeAuditService:
    def __init__(self):
        self.entries = []

    def log_merge(self, primary, duplicate, match_reason, old_values, new_values, user=None):
        entry = {
            "primary_id": str(primary.id),
            "duplicate_id": str(duplicate.id),
            "match_reason": match_reason,
            "old_values": old_values,
            "new_values": new_values,
            "user": user.email if user else None,
        }
        self.entries.append(entry)
        return entry


class FakeRedis:
    """Just enough of redis.asyncio for MergeLock."""

    def __init__(self, fail: bool = False):
        self.store: Dict[str, str] = {}
        self.fail = fail
        self.closed = False

    async def set(self, key, value, nx=False, ex=None):
        if self.fail:
            raise RedisConnectionError("redis down")
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.fail:
            raise RedisConnectionError("redis down")
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0

    async def aclose(self):
        self.closed = True

