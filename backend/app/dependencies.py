"""
Shared FastAPI dependencies: queue publisher, providers, storage, limiter store.

Long-lived clients are built once per process; per-request services get the
request session injected by the route.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import Request

from .services.ai_queue import AiQueue
from .services.llm_provider import RoutingLLMProvider, build_llm_provider
from .services.object_storage import LocalObjectStorage
from .services.rate_limiter import RateLimitStore, RedisRateLimitStore


def get_ai_queue() -> AiQueue:
    from .worker.celery_app import celery_app
    return AiQueue(celery_app)


@lru_cache(maxsize=1)
def get_llm_provider() -> RoutingLLMProvider:
    return build_llm_provider()


@lru_cache(maxsize=1)
def get_storage() -> LocalObjectStorage:
    return LocalObjectStorage()


@lru_cache(maxsize=1)
def get_rate_limit_store() -> RateLimitStore:
    return RedisRateLimitStore()


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
