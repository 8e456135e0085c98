"""Per-primary merge lock backed by Redis."""

import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class MergeLock:
    """
    Advisory lock so only one run merges into a given primary at a time.

    Redis being unreachable does not block merging: the lock logs a warning
    and grants, leaving the merged_at gate as the only guard.
    """

    def __init__(self, redis_client=None, ttl_seconds: Optional[int] = None):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or settings.DEDUPE_MERGE_LOCK_TTL_SECONDS

    async def initialize(self):
        """Initialize Redis connection."""
        if not self.redis_client:
            self.redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            logger.info("Redis connection initialized for merge locking")

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None

    @staticmethod
    def lock_key(primary_id) -> str:
        return f"dedupe:merge-lock:{primary_id}"

    async def acquire(self, primary_id) -> Optional[str]:
        """Return an ownership token, or None if another run holds the lock."""
        token = secrets.token_hex(16)
        if not self.redis_client:
            return token

        try:
            acquired = await self.redis_client.set(
                self.lock_key(primary_id), token, nx=True, ex=self.ttl_seconds
            )
        except RedisError as e:
            logger.warning(f"Merge lock unavailable for {primary_id}, proceeding unlocked: {e}")
            return token

        return token if acquired else None

    async def release(self, primary_id, token: str) -> None:
        if not self.redis_client:
            return
        try:
            await self.redis_client.eval(_RELEASE_SCRIPT, 1, self.lock_key(primary_id), token)
        except RedisError as e:
            # Key expires on its own after ttl_seconds
            logger.warning(f"Failed to release merge lock for {primary_id}: {e}")

    @asynccontextmanager
    async def hold(self, primary_id) -> AsyncIterator[bool]:
        """Yield True while holding the lock, False if it is taken."""
        token = await self.acquire(primary_id)
        if token is None:
            yield False
            return
        try:
            yield True
        finally:
            await self.release(primary_id, token)


class NullMergeLock(MergeLock):
    """Always grants; used when merge locking is disabled."""

    def __init__(self):
        super().__init__(redis_client=None, ttl_seconds=1)

    async def initialize(self):
        return None


def create_merge_lock() -> MergeLock:
    if settings.DEDUPE_MERGE_LOCK_ENABLED:
        return MergeLock()
    return NullMergeLock()
