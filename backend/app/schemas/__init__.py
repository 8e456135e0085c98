"""Pydantic schemas for request/response validation."""

from app.schemas.dedupe import (
    DedupeRequest,
    DedupeResponse,
    DuplicatePair,
    DuplicateRelationshipResponse,
    DuplicateListResponse,
    MergePairResponse,
)

__all__ = [
    "DedupeRequest",
    "DedupeResponse",
    "DuplicatePair",
    "DuplicateRelationshipResponse",
    "DuplicateListResponse",
    "MergePairResponse",
]
