from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterator, Optional

from landing.errors import MalformedModelOutput

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*([\s\S]*?)```")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _sanitize(candidate: str) -> str:
    s = _TRAILING_COMMA_RE.sub(r"\1", candidate)
    return s.replace("“", '"').replace("”", '"').replace("’", "'")


def _load_object(candidate: Optional[str], sanitize: bool = True) -> Optional[Dict[str, Any]]:
    """Parse `candidate` into a JSON object; None when it is not one."""
    if not candidate or not candidate.strip():
        return None
    attempts = [candidate]
    if sanitize:
        cleaned = _sanitize(candidate)
        if cleaned != candidate:
            attempts.append(cleaned)
    for text in attempts:
        try:
            value = json.loads(text)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


def _fenced_candidates(text: str) -> Iterator[str]:
    m = _FENCED_JSON_RE.search(text)
    if m:
        yield m.group(1)
    m2 = _FENCED_ANY_RE.search(text)
    if m2:
        yield m2.group(1)


def _brace_span(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def parse_model_output(text: str) -> Dict[str, Any]:
    """Extract the landing JSON object from raw model text.

    Strategy, first match wins:
    - the whole text as strict JSON;
    - a fenced block: ```json ...``` first, then any ``` ... ```;
    - the span from the first '{' to the last '}'.
    Fenced and brace candidates get one retry after removing trailing commas and
    normalizing smart quotes. Raises MalformedModelOutput when nothing parses to an object.
    """
    t = (text or "").strip()

    doc = _load_object(t, sanitize=False)
    if doc is not None:
        return doc

    for candidate in _fenced_candidates(t):
        doc = _load_object(candidate)
        if doc is not None:
            return doc

    doc = _load_object(_brace_span(t))
    if doc is not None:
        return doc

    raise MalformedModelOutput(t)
