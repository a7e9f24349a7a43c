"""Attempt ledger: sliding-window rate limits and the recent payment attempt log.

All state lives in Redis sorted sets scored by epoch seconds:
- payguard:ratelimit:{scope}:{id}  one member per counted attempt
- payguard:attempts:{user_id}      one JSON member per logged attempt
- payguard:location:{user_id}      established country code (plain string)
"""

import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

import structlog
from redis.asyncio import Redis

from payguard.db.redis import redis_key
from payguard.domain.risk import PaymentAttempt

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WindowHit:
    """Result of counting one attempt against a sliding window."""

    allowed: bool
    count: int
    ceiling: int
    key: str
    member: str


class AttemptLedger:
    """Counts attempts per user / per origin and keeps a short attempt history."""

    def __init__(
        self,
        redis: Redis,
        window_seconds: int = 3600,
        log_retention_seconds: int = 7 * 24 * 3600,
        location_ttl_seconds: int = 90 * 24 * 3600,
    ):
        self.redis = redis
        self.window_seconds = window_seconds
        self.log_retention_seconds = log_retention_seconds
        self.location_ttl_seconds = location_ttl_seconds

    # ------------------------------------------------------------------
    # Sliding-window rate limits
    # ------------------------------------------------------------------

    async def hit(self, scope: str, identifier: str, ceiling: int, now: datetime | None = None) -> WindowHit:
        """Count one attempt, then read the window back.

        The bump, trim and count run in one MULTI so concurrent callers each
        see a distinct count. A bump that lands over the ceiling is removed
        again, so rejected attempts do not extend the lockout.
        """
        now = now or datetime.now(UTC)
        ts = now.timestamp()
        key = redis_key("ratelimit", scope, identifier)
        member = f"{ts:.6f}:{uuid.uuid4().hex}"

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, ts - self.window_seconds)
            pipe.zadd(key, {member: ts})
            pipe.zcard(key)
            pipe.expire(key, self.window_seconds)
            _, _, count, _ = await pipe.execute()

        if count > ceiling:
            await self.redis.zrem(key, member)
            return WindowHit(allowed=False, count=count - 1, ceiling=ceiling, key=key, member=member)

        return WindowHit(allowed=True, count=count, ceiling=ceiling, key=key, member=member)

    async def rollback(self, hit: WindowHit) -> None:
        """Undo a counted attempt (used when a later ceiling rejects the request)."""
        if hit.allowed:
            await self.redis.zrem(hit.key, hit.member)

    async def window_count(self, scope: str, identifier: str, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        key = redis_key("ratelimit", scope, identifier)
        return await self.redis.zcount(key, now.timestamp() - self.window_seconds, "+inf")

    # ------------------------------------------------------------------
    # Attempt log
    # ------------------------------------------------------------------

    async def record_attempt(self, attempt: PaymentAttempt) -> None:
        key = redis_key("attempts", attempt.user_id)
        ts = attempt.at.timestamp()
        entry = json.dumps(
            {
                "id": uuid.uuid4().hex,
                "amount": str(attempt.amount),
                "success": attempt.success,
                "origin": attempt.origin_ip,
                "error": attempt.error_message,
                "at": attempt.at.isoformat(),
            }
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {entry: ts})
            pipe.zremrangebyscore(key, 0, ts - self.log_retention_seconds)
            pipe.expire(key, self.log_retention_seconds)
            await pipe.execute()

    async def attempts_between(self, user_id: str, start: datetime, end: datetime) -> list[PaymentAttempt]:
        """Logged attempts with ``start <= at <= end``, oldest first."""
        key = redis_key("attempts", user_id)
        raw = await self.redis.zrangebyscore(key, start.timestamp(), end.timestamp())
        return [self._decode(user_id, entry) for entry in raw]

    async def recent_attempts(self, user_id: str, now: datetime | None = None) -> list[PaymentAttempt]:
        """Attempts inside the rate-limit window (the last hour by default)."""
        now = now or datetime.now(UTC)
        start = datetime.fromtimestamp(now.timestamp() - self.window_seconds, UTC)
        return await self.attempts_between(user_id, start, now)

    @staticmethod
    def _decode(user_id: str, entry: str) -> PaymentAttempt:
        data = json.loads(entry)
        return PaymentAttempt(
            user_id=user_id,
            amount=Decimal(data["amount"]),
            success=data["success"],
            at=datetime.fromisoformat(data["at"]),
            origin_ip=data.get("origin"),
            error_message=data.get("error"),
        )

    # ------------------------------------------------------------------
    # Established location
    # ------------------------------------------------------------------

    async def get_location(self, user_id: str) -> str | None:
        return await self.redis.get(redis_key("location", user_id))

    async def set_location(self, user_id: str, country: str) -> None:
        await self.redis.set(redis_key("location", user_id), country, ex=self.location_ttl_seconds)
        logger.debug("user_location_established", user_id=user_id, country=country)
