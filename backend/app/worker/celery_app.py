"""
Celery application for AI generation jobs.

Broker/backend: Redis (REDIS_URL env).
Default queue: ai-generation. Dead letters go to ai-generation-dlq, which
default workers do not consume.
"""
from celery import Celery

from app.services.ai_queue import AI_GENERATION_QUEUE
from app.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "creator_flow",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=max(settings.worker_concurrency, 1),
    task_time_limit=15 * 60,
    task_soft_time_limit=10 * 60,
    task_default_queue=AI_GENERATION_QUEUE,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    result_expires=24 * 3600,
)

celery_app.autodiscover_tasks(["app.worker"])
