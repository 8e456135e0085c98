"""
Pydantic schemas for the deduplication endpoints
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from uuid import UUID
from datetime import datetime


class DedupeRequest(BaseModel):
    """Run request. Neither job_id nor lead_ids means a full sweep."""
    job_id: Optional[str] = None
    lead_ids: Optional[List[str]] = None
    auto_merge: bool = False

    @field_validator('lead_ids')
    @classmethod
    def drop_blank_ids(cls, v):
        if v is None:
            return v
        seen = []
        for lead_id in v:
            lead_id = lead_id.strip()
            if lead_id and lead_id not in seen:
                seen.append(lead_id)
        return seen

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "lead_ids": ["5b0d7a8e-3c55-4b1e-9f0e-0d7a2f6c1e11"],
            "auto_merge": False
        }
    })


class DuplicatePair(BaseModel):
    """One resolved pairing: duplicate folds into primary."""
    primary_id: str
    duplicate_id: str
    match_reason: str


class DedupeResponse(BaseModel):
    """Summary of one run."""
    success: bool = True
    mode: str
    leads_checked: int
    duplicates_found: int
    new_relationships: int = 0
    merged_count: int = 0
    merge_skipped: int = 0
    merge_failures: int = 0
    record_failures: int = 0
    duplicate_pairs: List[DuplicatePair] = Field(default_factory=list)
    message: Optional[str] = None


class DuplicateRelationshipResponse(BaseModel):
    """Stored relationship row, as shown in the review panel."""
    id: UUID
    primary_id: UUID = Field(validation_alias="primary_lead_id")
    duplicate_id: UUID = Field(validation_alias="duplicate_lead_id")
    match_reason: str
    merged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class DuplicateListResponse(BaseModel):
    """Paginated relationship list."""
    success: bool = True
    duplicates: List[DuplicateRelationshipResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class MergePairResponse(BaseModel):
    """Result of merging one stored pair."""
    success: bool = True
    outcome: str
    primary_id: str
    duplicate_id: str
