from __future__ import annotations

import io
import json
import logging
import zipfile
from typing import Any, Dict, Optional, Tuple

from landing.errors import NotFoundError
from landing.render import render_landing_html

log = logging.getLogger(__name__)


def export_filename(session_id: str) -> str:
    return f"landing-{session_id}.zip"


def build_export_zip(content: Dict[str, Any], html: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("landing.html", html)
        zf.writestr("landing.json", json.dumps(content, ensure_ascii=False, indent=2))
    return buf.getvalue()


def _stored_artifacts(store, artifacts: Dict[str, Any]) -> Optional[Tuple[Dict[str, Any], str]]:
    json_key = artifacts.get("json_key")
    html_key = artifacts.get("html_key")
    if not json_key or not html_key:
        return None
    raw_json = store.get(json_key)
    raw_html = store.get(html_key)
    if raw_json is None or raw_html is None:
        return None
    try:
        content = json.loads(raw_json.decode("utf-8"))
    except ValueError:
        return None
    if not isinstance(content, dict):
        return None
    return content, raw_html.decode("utf-8")


def export_session(sessions, store, session_id: str) -> bytes:
    """ZIP the stored landing of a completed session.

    Uses the stored artifacts when they are still there, otherwise re-renders the
    content recorded on the session.
    """
    session = sessions.get(session_id) if session_id else None
    result = (session or {}).get("result")
    if not isinstance(result, dict) or not isinstance(result.get("content"), dict):
        raise NotFoundError(f"no stored result for session {session_id}")

    stored = _stored_artifacts(store, result.get("artifacts") or {})
    if stored is None:
        log.info("export: artifacts missing for session=%s, re-rendering", session_id)
        content = result["content"]
        stored = (content, render_landing_html(content))
    return build_export_zip(*stored)
