from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from landing.artifacts import store_landing
from landing.config import DEFAULT_MODEL, DEFAULT_PAGE_TYPE
from landing.content import normalize_content
from landing.errors import LandingError, SessionStoreError, ValidationError
from landing.llm_parsing import parse_model_output
from landing.llm_prompts import build_prompt
from landing.render import render_landing_html

log = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class PipelineStage(str, Enum):
    RECEIVED = "received"
    GENERATING = "generating"
    RENDERING = "rendering"
    STORING = "storing"
    DONE = "done"
    FAILED = "failed"


def new_session_id() -> str:
    return f"session-{int(time.time() * 1000)}-{secrets.token_hex(8)}"


@dataclass(frozen=True)
class GenerationRequest:
    session_id: str
    brief: str
    page_type: str = DEFAULT_PAGE_TYPE
    model: str = DEFAULT_MODEL

    def __post_init__(self) -> None:
        if not isinstance(self.brief, str) or not self.brief.strip():
            raise ValidationError("brief is required")
        if not isinstance(self.session_id, str) or not SESSION_ID_RE.match(self.session_id):
            raise ValidationError("sessionId must be 1-128 characters of letters, digits, '.', '_' or '-'")

    @classmethod
    def from_payload(cls, session_id: str, payload: Dict[str, Any], default_model: str = DEFAULT_MODEL) -> "GenerationRequest":
        """Build from a stored session/job payload (`brief`, `page_type`, `model`)."""
        return cls(
            session_id=session_id,
            brief=str(payload.get("brief") or ""),
            page_type=str(payload.get("page_type") or DEFAULT_PAGE_TYPE),
            model=str(payload.get("model") or default_model),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"brief": self.brief, "page_type": self.page_type, "model": self.model}


class GenerationPipeline:
    """prompt -> LLM -> parse -> normalise -> render -> store, recording the session as it goes.

    Shared by the HTTP handlers, the webhook receiver and the queue worker. Any
    failure marks the session failed and is re-raised; retrying is left to the
    caller (the queue's redelivery).
    """

    def __init__(self, llm, artifacts, sessions, default_model: str = DEFAULT_MODEL) -> None:
        self.llm = llm
        self.artifacts = artifacts
        self.sessions = sessions
        self.default_model = default_model

    def run(self, request: GenerationRequest) -> Dict[str, Any]:
        sid = request.session_id
        model = request.model or self.default_model
        stage = PipelineStage.RECEIVED
        started = time.time()
        try:
            self.sessions.mark_processing(sid)

            stage = PipelineStage.GENERATING
            prompt = build_prompt(request.brief, request.page_type)
            text = self.llm.complete(prompt, model)
            content = normalize_content(parse_model_output(text))

            stage = PipelineStage.RENDERING
            html = render_landing_html(content)

            stage = PipelineStage.STORING
            artifacts = store_landing(self.artifacts, sid, content, html)
            result = {"content": content, "artifacts": artifacts}
            self.sessions.mark_completed(sid, result)
        except LandingError as exc:
            log.warning("pipeline.failed: session=%s stage=%s error=%s", sid, stage.value, exc.message)
            self.record_failure(sid, exc.message)
            raise
        except Exception as exc:
            log.exception("pipeline.failed: session=%s stage=%s unexpected error", sid, stage.value)
            self.record_failure(sid, str(exc) or exc.__class__.__name__)
            raise

        log.info(
            "pipeline.done: session=%s model=%s page_type=%s elapsed_ms=%d",
            sid,
            model,
            request.page_type,
            int((time.time() - started) * 1000),
        )
        return result

    def record_failure(self, session_id: str, message: str) -> None:
        try:
            self.sessions.mark_failed(session_id, message)
        except SessionStoreError as exc:
            # Never mask the pipeline error with a bookkeeping one
            log.error("pipeline.failed: could not record failure for session=%s: %s", session_id, exc.message)
