# backend/app/models.py
"""
SQLAlchemy ORM models for the lead deduplication engine.

Tables:
1. users            - principals and their role (authorization lookup)
2. scraped_leads    - lead records produced by scrape/import/enrichment jobs
3. lead_duplicates  - discovered (primary, duplicate) relationships
4. audit_logs       - trail of merges applied by the engine
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, Text, DateTime, JSON, Index, TIMESTAMP, ForeignKey,
    CheckConstraint
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base
from datetime import datetime
import uuid


# ============================================================================
# USER MODEL
# ============================================================================

class User(Base):
    """User account allowed to call the API."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(255))
    role = Column(String(50), nullable=False, default="client")
    is_active = Column(Boolean, default=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("role IN ('admin', 'client')", name="chk_user_role"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"


# ============================================================================
# LEAD MODEL
# ============================================================================

class ScrapedLead(Base):
    """
    Lead record - the unit of deduplication.

    Multiple jobs can produce records for the same business or contact;
    the dedupe engine links them through lead_duplicates and, when asked,
    folds duplicates into their primary.
    """
    __tablename__ = "scraped_leads"

    # ========================================================================
    # BASIC INFO
    # ========================================================================
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(UUID(as_uuid=True), index=True)  # Producing scrape/import job
    domain = Column(String(255), nullable=False, index=True)  # Web domain or opaque placeholder

    # ========================================================================
    # CONTACT INFO
    # ========================================================================
    best_email = Column(String(255), index=True)
    all_emails = Column(JSONB, default=list)
    email_validation_status = Column(String(50))  # unverified, likely_valid, verified, invalid
    email_source_url = Column(String(1000))

    best_phone = Column(String(50))
    all_phones = Column(JSONB, default=list)
    phone_validation_status = Column(String(50))
    phone_source_url = Column(String(1000))

    full_name = Column(String(255))
    name_source_url = Column(String(1000))

    # ========================================================================
    # NICHE FIELDS (company_name, city, state, ...)
    # ========================================================================
    schema_data = Column(JSONB, default=dict)

    # ========================================================================
    # QUALITY
    # ========================================================================
    confidence_score = Column(Integer, default=0)  # 0-100, set by enrichment
    enrichment_providers_used = Column(JSONB, default=list)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================
    status = Column(String(50), nullable=False, default="new")
    qc_flag = Column(String(50))  # "merged" once folded into another lead
    qc_notes = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 100)",
            name="chk_scraped_lead_confidence"
        ),
        Index("idx_scraped_leads_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<ScrapedLead(id={self.id}, domain='{self.domain}', email='{self.best_email}')>"

    @property
    def is_merged(self):
        """True once this lead has been folded into a primary"""
        return self.status == "rejected" and self.qc_flag == "merged"

    @property
    def is_verified(self):
        """True if either the email or the phone has been verified"""
        return self.email_validation_status == "verified" or self.phone_validation_status == "verified"

    @property
    def company_name(self):
        return (self.schema_data or {}).get("company_name")

    @property
    def city(self):
        return (self.schema_data or {}).get("city")

    @property
    def state(self):
        return (self.schema_data or {}).get("state")


# ============================================================================
# DUPLICATE RELATIONSHIP MODEL
# ============================================================================

class LeadDuplicate(Base):
    """
    A discovered duplicate pairing.

    Stored directionally: duplicate_lead_id folds into primary_lead_id.
    merged_at stays NULL until the merge engine has applied reconciliation.
    Rows are never deleted by the engine.
    """
    __tablename__ = "lead_duplicates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    primary_lead_id = Column(
        UUID(as_uuid=True), ForeignKey("scraped_leads.id", ondelete="CASCADE"), nullable=False
    )
    duplicate_lead_id = Column(
        UUID(as_uuid=True), ForeignKey("scraped_leads.id", ondelete="CASCADE"), nullable=False
    )
    match_reason = Column(String(50), nullable=False)
    merged_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    primary_lead = relationship("ScrapedLead", foreign_keys=[primary_lead_id])
    duplicate_lead = relationship("ScrapedLead", foreign_keys=[duplicate_lead_id])

    __table_args__ = (
        CheckConstraint(
            "match_reason IN ('email', 'phone', 'domain_name', 'company_city_contact')",
            name="chk_lead_duplicate_reason"
        ),
        # Not unique: concurrent runs may both insert the same pair
        Index("idx_lead_duplicates_pair", "primary_lead_id", "duplicate_lead_id"),
        Index("idx_lead_duplicates_merged", "merged_at"),
    )

    def __repr__(self):
        return (
            f"<LeadDuplicate(primary={self.primary_lead_id}, duplicate={self.duplicate_lead_id}, "
            f"reason='{self.match_reason}', merged_at={self.merged_at})>"
        )

    @property
    def is_merged(self):
        return self.merged_at is not None

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": str(self.id),
            "primary_id": str(self.primary_lead_id),
            "duplicate_id": str(self.duplicate_lead_id),
            "match_reason": self.match_reason,
            "merged_at": self.merged_at.isoformat() if self.merged_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================================================
# AUDIT LOG MODEL
# ============================================================================

class AuditLog(Base):
    """Audit log for merges and other engine actions."""
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    user_email = Column(String(255), nullable=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(50), nullable=False, index=True)
    resource_id = Column(String(100), nullable=True, index=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_action_created', 'action', 'created_at'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )
