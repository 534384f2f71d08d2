from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from landing.auth import require_token
from landing.config import configure_logging, load_settings
from landing.errors import LandingError, NotFoundError, ValidationError
from landing.export import export_filename, export_session
from landing.health import router as health_router
from landing.pipeline import GenerationRequest, new_session_id
from landing.services import Services, build_services, enqueue_generation

log = logging.getLogger(__name__)

_ARTIFACT_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".json": "application/json; charset=utf-8",
}


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Empty is accepted here and rejected with a 400 below
    brief: str = Field("", description="Text brief for the landing page")
    page_type: Optional[str] = Field(default=None, description="Page type; defaults to DEFAULT_PAGE_TYPE")
    model: Optional[str] = Field(default=None, description="Optional model name override")
    run_async: bool = Field(default=False, alias="async", description="Queue the job and return immediately")
    sessionId: Optional[str] = Field(default=None, description="Client-chosen session id")
    token: Optional[str] = Field(default=None, description="Access token (header or query also accepted)")


def _services(request: Request) -> Services:
    return request.app.state.services


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "anon"


def _safe_rate_check(services: Services, bucket: str, key: str) -> Tuple[bool, int, int]:
    """
    Return (allowed, remaining, reset_ts). If the limiter backend is unavailable
    the request is let through.
    """
    try:
        return services.rate_limiter.check_and_increment(bucket, key)
    except Exception as exc:
        log.warning("rate_limit: limiter unavailable, allowing request: %r", exc)
        return True, 9999, int(time.time()) + 60


def _rate_limit_headers(remaining: int, reset_ts: int, *, limited: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_ts),
    }
    if limited:
        wait_seconds = max(0, reset_ts - int(time.time()))
        headers["Retry-After"] = str(wait_seconds)
    return headers


def _rate_limit_payload(reset_ts: int) -> Dict[str, Any]:
    wait_seconds = max(0, reset_ts - int(time.time()))
    return {
        "error": "rate limit exceeded",
        "reset": reset_ts,
        "retry_after_seconds": wait_seconds,
        "message": f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
    }


def _session_id_for(req: GenerateRequest) -> str:
    if req.sessionId is None:
        return new_session_id()
    return req.sessionId.strip()


def generate(req: GenerateRequest, request: Request) -> JSONResponse:
    services = _services(request)
    settings = services.settings
    require_token(settings.allowed_token, request, req.token)

    allowed, remaining, reset_ts = _safe_rate_check(services, "gen", _client_key(request))
    if not allowed:
        log.info("rate_limit: denied client=%s", _client_key(request))
        return JSONResponse(
            status_code=429,
            content=_rate_limit_payload(reset_ts),
            headers=_rate_limit_headers(remaining, reset_ts, limited=True),
        )
    headers = _rate_limit_headers(remaining, reset_ts)

    brief = (req.brief or "").strip()
    if not brief:
        raise ValidationError("brief is required")
    gen = GenerationRequest(
        session_id=_session_id_for(req),
        brief=brief,
        page_type=(req.page_type or "").strip() or settings.default_page_type,
        model=(req.model or "").strip() or settings.llm_model,
    )
    services.sessions.create(gen.session_id, gen.to_payload())

    if req.run_async:
        if services.queue is not None:
            enqueue_generation(services, gen)
            log.info("generate.async: queued session=%s", gen.session_id)
            return JSONResponse(
                {
                    "sessionId": gen.session_id,
                    "status": "queued",
                    "message": f"Landing generation queued. Poll GET /api/status/{gen.session_id}",
                },
                headers=headers,
            )
        log.warning("generate.async: no task queue configured, running session=%s inline", gen.session_id)

    result = services.pipeline.run(gen)
    return JSONResponse({"sessionId": gen.session_id, "status": "completed", **result}, headers=headers)


def session_status(session_id: str, request: Request) -> Dict[str, Any]:
    services = _services(request)
    require_token(services.settings.allowed_token, request)
    session = services.sessions.get(session_id)
    if session is None:
        raise NotFoundError("session not found")
    session.pop("payload", None)
    if services.queue is not None:
        job = services.queue.get_job(session_id)
        if job is not None:
            session["job"] = job.to_dict()
    return session


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the HTTP app. Injected services are used as-is and left open on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            configure_logging()
            app.state.services = build_services()
        try:
            yield
        finally:
            if owned:
                app.state.services.close()
                app.state.services = None

    app = FastAPI(title="Landing Generator", lifespan=lifespan)
    app.state.services = services

    origins = services.settings.allow_origins if services is not None else load_settings().allow_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.time()
        request.state.request_id = rid
        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            dur_ms = int((time.time() - start) * 1000)
            log.info(
                "http.request: rid=%s method=%s path=%s status=%s dur_ms=%d",
                rid,
                request.method,
                request.url.path,
                getattr(response, "status_code", "?"),
                dur_ms,
            )

    @app.exception_handler(LandingError)
    async def landing_error_handler(request: Request, exc: LandingError):
        if exc.status_code >= 500:
            log.error("http.error: path=%s %s: %s", request.url.path, exc.__class__.__name__, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"error": "invalid request", "details": details})

    app.include_router(health_router)

    @app.get("/llm/status")
    def llm_status_endpoint(request: Request) -> Dict[str, Any]:
        svc = _services(request)
        status = dict(svc.llm.status())
        status["model"] = svc.settings.llm_model
        status["mock"] = svc.settings.llm_mock
        return status

    @app.post("/generate")
    def generate_endpoint(req: GenerateRequest, request: Request):
        return generate(req, request)

    @app.post("/api/generate")
    def api_generate_endpoint(req: GenerateRequest, request: Request):
        return generate(req, request)

    @app.get("/status/{session_id}")
    def status_endpoint(session_id: str, request: Request) -> Dict[str, Any]:
        return session_status(session_id, request)

    @app.get("/api/status/{session_id}")
    def api_status_endpoint(session_id: str, request: Request) -> Dict[str, Any]:
        return session_status(session_id, request)

    @app.get("/export")
    def export_endpoint(request: Request, sessionId: str = Query("", description="Session to export")):
        svc = _services(request)
        require_token(svc.settings.allowed_token, request)
        data = export_session(svc.sessions, svc.artifacts, sessionId.strip())
        return Response(
            content=data,
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{export_filename(sessionId.strip())}"'},
        )

    @app.get("/artifacts/{key:path}")
    def artifact_endpoint(key: str, request: Request):
        """Serves locally stored artifacts; S3 artifacts are fetched through presigned URLs."""
        svc = _services(request)
        if svc.artifacts.backend != "local":
            raise NotFoundError("artifact not found")
        if ".." in key.split("/"):
            raise NotFoundError("artifact not found")
        body = svc.artifacts.get(key)
        if body is None:
            raise NotFoundError("artifact not found")
        suffix = key[key.rfind(".") :] if "." in key else ""
        return Response(content=body, media_type=_ARTIFACT_TYPES.get(suffix, "application/octet-stream"))

    return app


app = create_app()
