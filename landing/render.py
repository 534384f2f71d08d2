from __future__ import annotations

from typing import Any, Dict, List

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape

# Autoescaping covers & < > " ' for every interpolated value; content comes from
# an LLM fed with user input, so nothing is ever marked safe.
_env = Environment(
    loader=PackageLoader("landing", "templates"),
    autoescape=select_autoescape(["html", "xml"], default_for_string=True),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _block(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _items(value: Any, *keys: str) -> List[Dict[str, str]]:
    """Non-list values count as absent; non-dict entries are skipped."""
    if not isinstance(value, list):
        return []
    out: List[Dict[str, str]] = []
    for item in value:
        if isinstance(item, dict):
            out.append({k: _text(item.get(k)) for k in keys})
    return out


def render_landing_html(content: Dict[str, Any], lang: str = "ru") -> str:
    """Render LandingContent into a standalone HTML document."""
    content = _block(content)
    hero = _block(content.get("hero"))
    seo = _block(content.get("seo"))
    tpl = _env.get_template("landing.html")
    return tpl.render(
        lang=_text(lang) or "ru",
        page_title=_text(seo.get("title")) or "Landing",
        description=_text(seo.get("description")),
        hero={k: _text(hero.get(k)) for k in ("title", "subtitle", "cta")},
        benefits=_items(content.get("benefits"), "title", "text"),
        process=_items(content.get("process"), "step_title", "step_text"),
        faq=_items(content.get("faq"), "q", "a"),
    )
