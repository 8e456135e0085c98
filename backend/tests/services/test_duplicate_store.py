# tests/services/test_duplicate_store.py
"""
Tests for the SQLAlchemy-backed stores and the audit service

Coverage:
- Id coercion (malformed ids are dropped, not queried)
- Relationship recording is check-then-insert
- Merge inputs are re-read from the database and row-locked
- Database errors surface as PersistenceError with rollback
- Merge audit entries

Run with: pytest tests/services/test_duplicate_store.py -v
"""

import pytest
from uuid import UUID, uuid4
from unittest.mock import AsyncMock, MagicMock, Mock

from sqlalchemy.exc import OperationalError

from factories import make_lead

from app.errors import PersistenceError
from app.models import AuditLog, LeadDuplicate, ScrapedLead
from app.services.audit_service import AuditService
from app.services.candidate_index import MatchReason
from app.services.cluster_resolver import DuplicateMatch
from app.services.duplicate_store import DuplicateStore, LeadStore, _to_uuid, _to_uuids


def _db_error():
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.execute = AsyncMock()
    db.get = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    db.add = Mock()
    return db


def _scalars_result(rows):
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    result.scalars.return_value.first.return_value = rows[0] if rows else None
    return result


class TestIdCoercion:

    def test_uuid_passthrough(self):
        value = uuid4()
        assert _to_uuid(value) is value

    def test_string_parsed(self):
        assert _to_uuid("00000000-0000-0000-0000-000000000001") == UUID(int=1)

    def test_malformed_dropped(self):
        assert _to_uuids(["nope", None, str(UUID(int=2))]) == [UUID(int=2)]


class TestLeadStore:

    @pytest.mark.asyncio
    async def test_malformed_ids_skip_query(self, mock_db):
        store = LeadStore(mock_db)

        assert await store.fetch_by_ids(["not-a-uuid"]) == []
        assert await store.fetch_by_job("also-bad") == []
        mock_db.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_returns_rows(self, mock_db):
        lead = make_lead()
        mock_db.execute.return_value = _scalars_result([lead])

        leads = await LeadStore(mock_db).fetch_by_ids([str(lead.id)])

        assert leads == [lead]

    @pytest.mark.asyncio
    async def test_zero_limits_skip_query(self, mock_db):
        store = LeadStore(mock_db)

        assert await store.fetch_sweep(0) == []
        assert await store.fetch_domain_neighbours(["acme.com"], [], limit=0) == []
        assert await store.fetch_domain_neighbours([], [], limit=10) == []
        mock_db.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_read_error_wrapped(self, mock_db):
        mock_db.execute.side_effect = _db_error()

        with pytest.raises(PersistenceError) as exc_info:
            await LeadStore(mock_db).fetch_sweep(10)

        assert exc_info.value.message == "Deduplication run failed"
        assert "full sweep" in exc_info.value.detail
        assert isinstance(exc_info.value.__cause__, OperationalError)

    @pytest.mark.asyncio
    async def test_commit_error_rolls_back(self, mock_db):
        mock_db.commit.side_effect = _db_error()

        with pytest.raises(PersistenceError):
            await LeadStore(mock_db).commit()

        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_for_merge_rereads_and_locks(self, mock_db):
        lead = make_lead()
        mock_db.get.return_value = lead

        assert await LeadStore(mock_db).get_for_merge(str(lead.id)) is lead

        mock_db.get.assert_awaited_once_with(
            ScrapedLead, lead.id, populate_existing=True, with_for_update=True
        )

    @pytest.mark.asyncio
    async def test_get_for_merge_error_wrapped(self, mock_db):
        mock_db.get.side_effect = _db_error()

        with pytest.raises(PersistenceError):
            await LeadStore(mock_db).get_for_merge(str(uuid4()))


class TestDuplicateStore:

    def _match(self):
        return DuplicateMatch(str(uuid4()), str(uuid4()), MatchReason.PHONE)

    @pytest.mark.asyncio
    async def test_record_inserts_new_row(self, mock_db):
        mock_db.execute.return_value = _scalars_result([])
        match = self._match()

        row, created = await DuplicateStore(mock_db).record(match)

        assert created is True
        assert row.match_reason == "phone"
        assert row.merged_at is None
        assert str(row.primary_lead_id) == match.primary_id
        mock_db.add.assert_called_once_with(row)
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_returns_existing_row(self, mock_db):
        existing = LeadDuplicate(id=uuid4(), match_reason="phone")
        mock_db.execute.return_value = _scalars_result([existing])

        row, created = await DuplicateStore(mock_db).record(self._match())

        assert row is existing
        assert created is False
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_record_insert_failure(self, mock_db):
        mock_db.execute.return_value = _scalars_result([])
        mock_db.commit.side_effect = _db_error()

        with pytest.raises(PersistenceError):
            await DuplicateStore(mock_db).record(self._match())

        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_with_malformed_id(self, mock_db):
        assert await DuplicateStore(mock_db).get("123") is None
        mock_db.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_rereads_row(self, mock_db):
        row_id = uuid4()

        await DuplicateStore(mock_db).get(str(row_id))

        mock_db.get.assert_awaited_once_with(LeadDuplicate, row_id, populate_existing=True)

    @pytest.mark.asyncio
    async def test_get_for_merge_locks_row(self, mock_db):
        row_id = uuid4()

        await DuplicateStore(mock_db).get_for_merge(row_id)

        mock_db.get.assert_awaited_once_with(
            LeadDuplicate, row_id, populate_existing=True, with_for_update=True
        )

    @pytest.mark.asyncio
    async def test_refresh_reads_merged_at_only(self, mock_db):
        row = LeadDuplicate(id=uuid4())

        await DuplicateStore(mock_db).refresh(row)

        mock_db.refresh.assert_awaited_once_with(row, attribute_names=["merged_at"])

    @pytest.mark.asyncio
    async def test_count(self, mock_db):
        result = MagicMock()
        result.scalar.return_value = 7
        mock_db.execute.return_value = result

        assert await DuplicateStore(mock_db).count(merged=False) == 7

    def test_mark_merged(self):
        row = LeadDuplicate(merged_at=None)

        DuplicateStore.mark_merged(row)

        assert row.merged_at is not None
        assert row.merged_at.tzinfo is not None


class TestAuditService:

    def test_log_merge_stages_entry(self, mock_db, admin_user):
        primary, duplicate = make_lead(), make_lead()

        entry = AuditService(mock_db).log_merge(
            primary, duplicate, "email",
            old_values={"confidence_score": 40, "job_id": uuid4()},
            new_values={"confidence_score": 80},
            user=admin_user,
        )

        assert isinstance(entry, AuditLog)
        assert entry.action == "lead.merged"
        assert entry.resource_id == str(primary.id)
        assert entry.user_email == "admin@test.com"
        assert isinstance(entry.old_values["job_id"], str)
        assert entry.meta == {
            "duplicate_lead_id": str(duplicate.id),
            "match_reason": "email",
            "fields_updated": ["confidence_score"],
        }
        mock_db.add.assert_called_once_with(entry)
        mock_db.commit.assert_not_called()

    def test_system_merge_has_no_user(self, mock_db):
        entry = AuditService(mock_db).log_merge(make_lead(), make_lead(), "phone", {}, {})

        assert entry.user_id is None
        assert entry.old_values is None
