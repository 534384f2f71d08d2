from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis

from landing.artifacts import build_artifact_store
from landing.config import Settings, load_settings
from landing.errors import QueueError
from landing.llm_client import build_llm_client
from landing.pipeline import GenerationPipeline, GenerationRequest
from landing.ratelimit import RateLimiter
from landing.redis_ratelimit import RedisRateLimiter
from landing.sessions import SessionStore
from landing.taskqueue import build_task_queue

log = logging.getLogger(__name__)


@dataclass
class Services:
    """Client handles for one process; built at startup and closed on shutdown."""

    settings: Settings
    llm: Any
    sessions: Any
    artifacts: Any
    queue: Optional[Any]
    pipeline: GenerationPipeline
    rate_limiter: Any

    def close(self) -> None:
        if self.queue is not None:
            try:
                self.queue.close()
            except Exception:
                log.warning("services.close: queue close failed", exc_info=True)
        self.sessions.close()
        log.info("services.close: done")

    def __enter__(self) -> "Services":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_rate_limiter(settings: Settings, max_requests: int, window_seconds: int):
    if settings.queue_configured:
        return RedisRateLimiter(
            settings.redis_url,
            window_seconds=window_seconds,
            max_requests=max_requests,
            namespace=settings.queue_name,
        )
    return RateLimiter(max_requests, window_seconds)


def build_services(
    settings: Optional[Settings] = None,
    *,
    llm: Any = None,
    sessions: Any = None,
    artifacts: Any = None,
    queue: Any = None,
    rate_limiter: Any = None,
) -> Services:
    """Wire every collaborator from settings; any handle passed in is used as-is."""
    settings = settings or load_settings()
    if sessions is None:
        sessions = SessionStore(settings.database_url)
        sessions.init()
    if llm is None:
        llm = build_llm_client(settings)
    if artifacts is None:
        artifacts = build_artifact_store(settings)
    if queue is None:
        queue = build_task_queue(settings)
    if rate_limiter is None:
        rate_limiter = build_rate_limiter(settings, settings.rate_max_requests, settings.rate_window_seconds)
    pipeline = GenerationPipeline(llm, artifacts, sessions, default_model=settings.llm_model)
    log.info("services.build: %s", settings.masked())
    return Services(
        settings=settings,
        llm=llm,
        sessions=sessions,
        artifacts=artifacts,
        queue=queue,
        pipeline=pipeline,
        rate_limiter=rate_limiter,
    )


def enqueue_generation(services: Services, request: GenerationRequest) -> None:
    """Hand a freshly created session to the task queue.

    If the queue refuses it the session is marked failed (so it can be resubmitted
    under the same id) and QueueError is raised.
    """
    try:
        services.queue.enqueue(request.session_id, request.to_payload())
    except (QueueError, redis.RedisError) as exc:
        message = exc.message if isinstance(exc, QueueError) else f"task queue unavailable: {exc}"
        log.error("queue.enqueue: session=%s refused: %s", request.session_id, message)
        services.pipeline.record_failure(request.session_id, message)
        if isinstance(exc, QueueError):
            raise
        raise QueueError(message) from exc
