"""Liveness, readiness and per-service health for load balancers and monitoring."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from landing import __version__
from landing.errors import QueueError

log = logging.getLogger(__name__)

router = APIRouter()

_STARTED = time.time()


def _uptime() -> float:
    return round(time.time() - _STARTED, 3)


def _queue_status(queue) -> Dict[str, Any]:
    if queue is None:
        return {"configured": False, "ok": True}
    ok = queue.ping()
    status: Dict[str, Any] = {"configured": True, "backend": queue.backend, "ok": ok}
    if ok:
        try:
            status["counts"] = queue.job_counts()
        except QueueError as exc:
            log.warning("health.queue: counts unavailable: %s", exc.message)
            status["ok"] = False
    return status


@router.get("/health")
def liveness() -> Dict[str, Any]:
    return {"status": "ok", "uptime": _uptime(), "version": __version__}


@router.get("/health/ready")
def readiness(request: Request):
    services = request.app.state.services
    checks = {
        "database": services.sessions.ping(),
        "queue": services.queue.ping() if services.queue is not None else True,
    }
    ready = all(checks.values())
    if not ready:
        log.warning("health.ready: not ready checks=%s", checks)
    body = {"status": "ready" if ready else "not_ready", "checks": checks}
    return JSONResponse(body, status_code=200 if ready else 503)


@router.get("/health/detailed")
def detailed(request: Request):
    """Per-service status; 503 when any configured dependency is unreachable."""
    services = request.app.state.services
    settings = services.settings
    database_ok = services.sessions.ping()
    queue = _queue_status(services.queue)
    artifacts_ok = services.artifacts.ping()
    body = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": _uptime(),
        "version": __version__,
        "services": {
            "database": {"ok": database_ok},
            "queue": queue,
            "artifacts": {"backend": services.artifacts.backend, "ok": artifacts_ok},
            "llm": {
                "configured": settings.llm_configured,
                "provider": services.llm.provider,
                "model": settings.llm_model,
            },
        },
    }
    healthy = database_ok and queue["ok"] and artifacts_ok
    body["status"] = "healthy" if healthy else "degraded"
    return JSONResponse(body, status_code=200 if healthy else 503)
