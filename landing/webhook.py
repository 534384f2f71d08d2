"""Signed webhook receiver.

Deliveries carry ``X-Hub-Signature-256: sha256=<hex HMAC-SHA256 of the raw body>``.
A verified delivery is acknowledged straight away and handled in a background
task. ``landing.generate`` events start a generation; anything else is logged.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from landing.config import configure_logging
from landing.errors import LandingError
from landing.pipeline import GenerationRequest, new_session_id
from landing.services import Services, build_services, enqueue_generation

log = logging.getLogger(__name__)

GENERATE_EVENT = "landing.generate"


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    if not secret or not header:
        return False
    return hmac.compare_digest(header.strip().encode("utf-8"), sign(secret, body).encode("utf-8"))


def handle_event(services: Services, event: str, payload: Dict[str, Any], delivery_id: str, session_id: str = "") -> None:
    """Background handler; errors are logged, never raised (the delivery was already acknowledged)."""
    log.info("webhook.event: event=%s delivery=%s", event, delivery_id)
    if event != GENERATE_EVENT:
        for field in ("action", "repository", "sender"):
            if field in payload:
                log.info("webhook.event: delivery=%s %s=%s", delivery_id, field, payload[field])
        return

    try:
        request = GenerationRequest(
            session_id=session_id or new_session_id(),
            brief=str(payload.get("brief") or "").strip(),
            page_type=str(payload.get("page_type") or "").strip() or services.settings.default_page_type,
            model=str(payload.get("model") or "").strip() or services.settings.llm_model,
        )
        services.sessions.create(request.session_id, request.to_payload())
        if services.queue is not None:
            enqueue_generation(services, request)
            log.info("webhook.generate: queued session=%s delivery=%s", request.session_id, delivery_id)
            return
        services.pipeline.run(request)
    except LandingError as exc:
        log.warning("webhook.generate: delivery=%s failed: %s", delivery_id, exc.message)
    except Exception:
        log.exception("webhook.generate: delivery=%s unexpected error", delivery_id)


def create_webhook_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            configure_logging()
            app.state.services = build_services()
        if not app.state.services.settings.webhook_secret:
            log.error("webhook.start: WEBHOOK_SECRET is not set; every delivery will be refused")
        try:
            yield
        finally:
            if owned:
                app.state.services.close()
                app.state.services = None

    app = FastAPI(title="Landing Generator webhook", lifespan=lifespan)
    app.state.services = services

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/webhook")
    async def webhook(request: Request, background_tasks: BackgroundTasks):
        svc: Services = request.app.state.services
        secret = svc.settings.webhook_secret
        if not secret:
            return JSONResponse(status_code=503, content={"error": "webhook secret not configured"})

        body = await request.body()
        if not verify_signature(secret, body, request.headers.get("x-hub-signature-256")):
            log.warning("webhook.verify: invalid signature from %s", request.client.host if request.client else "?")
            return JSONResponse(status_code=401, content={"error": "Invalid signature"})

        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "invalid JSON body"})
        if not isinstance(payload, dict):
            payload = {"body": payload}

        event = request.headers.get("x-event-type") or request.headers.get("x-github-event") or "unknown"
        delivery_id = request.headers.get("x-github-delivery") or request.headers.get("x-delivery-id") or "-"
        ack: Dict[str, Any] = {"received": True}
        session_id = ""
        if event == GENERATE_EVENT:
            session_id = str(payload.get("sessionId") or "").strip() or new_session_id()
            ack["sessionId"] = session_id
        background_tasks.add_task(handle_event, svc, event, payload, delivery_id, session_id)
        return ack

    return app


app = create_webhook_app()
