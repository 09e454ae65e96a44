"""Redis token-bucket limiter for citizen-facing payment endpoints."""

from time import time

import redis
from fastapi import HTTPException

from civicpay.common.logging import logger


class TokenBucketLimiter:
    """Capacity equals refill rate per minute; one bucket per caller key."""

    def __init__(self, rdb: redis.Redis, limit_per_minute: int, prefix: str = "tokenbucket") -> None:
        self.rdb = rdb
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix

    def enforce(self, caller: str) -> None:
        """Consume one token or raise 429; Redis outages fail open."""

        try:
            allowed = self._take(caller)
        except redis.RedisError as exc:
            logger.warning("rate_limit_unavailable caller=%s error=%s", caller, exc)
            return
        if not allowed:
            raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")

    def _take(self, caller: str) -> bool:
        key = f"{self.prefix}:{caller}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0

        values = self.rdb.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(capacity, tokens + elapsed * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.rdb.expire(key, 120)
        return allowed
