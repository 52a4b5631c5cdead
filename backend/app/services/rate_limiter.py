"""
Fixed-window rate limiting backed by Redis counters.

Key: rate:{scope}:{sha256(client_key)}
INCR and PEXPIRE NX run in one transaction; the counter disappears with the window.
A broken store fails closed (503) instead of letting traffic through.
"""
from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as aioredis

from app.errors import RateLimitExceeded, RateLimiterUnavailable
from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)

_redis_client: aioredis.Redis | None = None


def _get_redis() -> aioredis.Redis:
    """Get or create a shared async Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_client


class RateLimitStore(Protocol):
    async def increment(self, key: str, window_ms: int) -> int: ...

    async def ttl_ms(self, key: str) -> int: ...


class RedisRateLimitStore:
    def __init__(self, client: aioredis.Redis | None = None):
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client or _get_redis()

    async def increment(self, key: str, window_ms: int) -> int:
        # One MULTI/EXEC: a counter never exists without an expiry
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.pexpire(key, window_ms, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def ttl_ms(self, key: str) -> int:
        return int(await self.client.pttl(key))


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_ms: int
    label: str
    unavailable_label: str


def rate_limit_key(scope: str, client_key: str) -> str:
    normalized = (client_key or "").strip() or "unknown"
    return f"rate:{scope}:{hashlib.sha256(normalized.encode('utf-8')).hexdigest()}"


class FixedWindowRateLimiter:
    def __init__(self, store: RateLimitStore, rule: RateLimitRule, scope: str):
        self.store = store
        self.rule = rule
        self.scope = scope

    async def check(self, client_key: str) -> None:
        key = rate_limit_key(self.scope, client_key)
        try:
            count = await self.store.increment(key, self.rule.window_ms)
        except Exception as exc:
            logger.error(f"[rate-limit] Failed to check bucket {self.scope}: {exc}")
            raise RateLimiterUnavailable(
                f"{self.rule.unavailable_label} rate limiter is temporarily unavailable."
            ) from exc
        if count <= self.rule.max_requests:
            return

        try:
            ttl_ms = await self.store.ttl_ms(key)
        except Exception:
            ttl_ms = -1
        retry_after = math.ceil((ttl_ms if ttl_ms > 0 else self.rule.window_ms) / 1000)
        logger.warning(f"[rate-limit] {self.scope} limit exceeded ({count}/{self.rule.max_requests})")
        raise RateLimitExceeded(f"Too many {self.rule.label}. Try again in {retry_after} seconds.", retry_after)


def ai_settings_test_limiter(store: RateLimitStore, settings: Settings | None = None) -> FixedWindowRateLimiter:
    settings = settings or get_settings()
    rule = RateLimitRule(
        max_requests=max(settings.ai_settings_test_rate_limit, 1),
        window_ms=max(settings.ai_settings_test_rate_window_ms, 1000),
        label="AI connection test requests",
        unavailable_label="AI connection test",
    )
    return FixedWindowRateLimiter(store, rule, "ai-settings:test")


def auth_limiter(store: RateLimitStore, operation: str, settings: Settings | None = None) -> FixedWindowRateLimiter:
    settings = settings or get_settings()
    per_minute = {
        "login": settings.auth_rate_limit_login_per_minute,
        "refresh": settings.auth_rate_limit_refresh_per_minute,
        "logout": settings.auth_rate_limit_logout_per_minute,
    }
    if operation not in per_minute:
        raise ValueError(f"Unknown auth rate-limit operation: {operation}")
    rule = RateLimitRule(
        max_requests=max(per_minute[operation], 1),
        window_ms=60_000,
        label=f"auth {operation} requests",
        unavailable_label="Auth",
    )
    return FixedWindowRateLimiter(store, rule, f"auth:{operation}")
