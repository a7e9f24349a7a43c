"""Distributed record locking using Redis.

Serializes payment processing per billing record (and event handling per
webhook event id) across workers:
- SET NX EX acquisition with an owner token
- Owner-checked release and TTL extension in a WATCH/MULTI transaction
- Automatic expiry so a crashed worker never wedges a record
"""

import uuid
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from payguard.db.redis import redis_key


class RecordLock:
    """Short-lived exclusive locks keyed by ``namespace`` and entity id."""

    DEFAULT_TTL = 900  # 15 minutes, covers a full retry chain at default backoff

    def __init__(self, redis: Redis, namespace: str = "billing", ttl: int | None = None):
        self.redis = redis
        self.namespace = namespace
        self.ttl = ttl or self.DEFAULT_TTL

    def _lock_key(self, entity_id: object) -> str:
        return redis_key("lock", self.namespace, str(entity_id))

    async def _if_owner(self, key: str, owner: str, apply: Callable[[Pipeline], object]) -> bool:
        """Queue ``apply`` in a MULTI that only commits if ``owner`` still holds ``key``.

        WATCH aborts the transaction when the key changes (expires, or is taken
        by someone else) between the ownership read and EXEC.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                if not (current and current.startswith(f"{owner}|")):
                    return False
                pipe.multi()
                apply(pipe)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def acquire(self, entity_id: object, owner: str, ttl: int | None = None) -> bool:
        """Attempt to acquire the lock.

        Returns:
            True if acquired (or already held by ``owner``), False otherwise
        """
        key = self._lock_key(entity_id)
        ttl = ttl or self.ttl

        lock_value = f"{owner}|{datetime.now(UTC).isoformat()}"
        if await self.redis.set(key, lock_value, nx=True, ex=ttl):
            return True

        # Re-entrant for the same owner
        return await self._if_owner(key, owner, lambda pipe: pipe.expire(key, ttl))

    async def release(self, entity_id: object, owner: str) -> bool:
        """Release the lock if ``owner`` holds it."""
        key = self._lock_key(entity_id)
        return await self._if_owner(key, owner, lambda pipe: pipe.delete(key))

    async def extend(self, entity_id: object, owner: str, ttl: int | None = None) -> bool:
        """Push the expiry out again; called between retry attempts."""
        key = self._lock_key(entity_id)
        ttl = ttl or self.ttl
        return await self._if_owner(key, owner, lambda pipe: pipe.expire(key, ttl))

    async def is_locked(self, entity_id: object) -> dict | None:
        """Lock info dict if locked, None otherwise."""
        key = self._lock_key(entity_id)
        current = await self.redis.get(key)
        if not current:
            return None

        owner, _, locked_at = current.partition("|")
        return {
            "entity_id": str(entity_id),
            "owner": owner,
            "locked_at": locked_at or None,
            "expires_in": await self.redis.ttl(key),
        }

    @asynccontextmanager
    async def hold(
        self,
        entity_id: object,
        owner: str | None = None,
        ttl: int | None = None,
    ) -> AsyncGenerator[bool, None]:
        """Context manager around acquire/release.

        Yields:
            True if the lock was acquired. The body must check it.

        Example:
            async with record_lock.hold(record_id) as acquired:
                if not acquired:
                    return in_progress
        """
        owner = owner or uuid.uuid4().hex
        acquired = False
        try:
            acquired = await self.acquire(entity_id, owner, ttl)
            yield acquired
        finally:
            if acquired:
                await self.release(entity_id, owner)
