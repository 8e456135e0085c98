"""Error types and handlers for deduplication API responses."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def build_error_payload(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


class DedupeError(Exception):
    """Base error; carries the HTTP status and the message safe to show callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "Deduplication failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.public_message
        super().__init__(self.message)


class AuthenticationError(DedupeError):
    """Missing or invalid bearer credential."""

    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = "Authentication required"


class AuthorizationError(DedupeError):
    """Authenticated principal lacks the administrative role."""

    status_code = status.HTTP_403_FORBIDDEN
    public_message = "Admin access required"


class NotFoundError(DedupeError):
    status_code = status.HTTP_404_NOT_FOUND
    public_message = "Not found"


class PersistenceError(DedupeError):
    """A read or write against the lead or relationship store failed."""

    public_message = "Deduplication run failed"

    def __init__(self, message: str | None = None):
        # Internal detail stays in logs and __cause__; callers get the generic text
        super().__init__(message)
        self.message = self.public_message
        self.detail = message


class PairMergeError(DedupeError):
    """Reconciling one (primary, duplicate) pair failed; the run continues."""

    status_code = status.HTTP_409_CONFLICT
    public_message = "Merge could not be applied"

    def __init__(self, primary_id: Any, duplicate_id: Any, reason: str):
        super().__init__(self.public_message)
        self.primary_id = primary_id
        self.duplicate_id = duplicate_id
        self.reason = reason

    def __str__(self):
        return f"merge {self.duplicate_id} -> {self.primary_id} failed: {self.reason}"


async def dedupe_error_handler(request: Request, exc: DedupeError) -> JSONResponse:
    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_payload(exc.message),
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content=build_error_payload("Invalid request body"),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} raised {exc!r}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=build_error_payload(DedupeError.public_message),
    )
