"""Audit logging for merges applied by the dedupe engine."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditLog, ScrapedLead, User

logger = logging.getLogger(__name__)


def _jsonable(values: Dict[str, Any]) -> Dict[str, Any]:
    """Audit columns are plain JSON; stringify anything else (UUIDs, datetimes)."""
    return {
        key: value if isinstance(value, (str, int, float, bool, list, dict, type(None))) else str(value)
        for key, value in values.items()
    }


class AuditService:
    """Service for creating audit log entries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def log_action(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        user: Optional[User] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Stage an audit log entry.

        Not committed here: the entry rides in the same transaction as the
        change it describes.
        """
        audit_log = AuditLog(
            user_id=user.id if user else None,
            user_email=user.email if user else None,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id else None,
            old_values=_jsonable(old_values) if old_values else None,
            new_values=_jsonable(new_values) if new_values else None,
            meta=meta,
        )
        self.db.add(audit_log)
        return audit_log

    def log_merge(
        self,
        primary: ScrapedLead,
        duplicate: ScrapedLead,
        match_reason: str,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
        user: Optional[User] = None,
    ) -> AuditLog:
        entry = self.log_action(
            action="lead.merged",
            resource_type="scraped_lead",
            resource_id=str(primary.id),
            user=user,
            old_values=old_values,
            new_values=new_values,
            meta={
                "duplicate_lead_id": str(duplicate.id),
                "match_reason": match_reason,
                "fields_updated": sorted(new_values.keys()),
            },
        )
        logger.info(
            f"Audit log staged: lead.merged {duplicate.id} -> {primary.id} "
            f"by {user.email if user else 'system'}"
        )
        return entry
