from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, field_validator


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value)
    return ""


class _Block(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> str:
        return _as_text(v)


class Hero(_Block):
    title: str = ""
    subtitle: str = ""
    cta: str = ""


class Benefit(_Block):
    title: str = ""
    text: str = ""


class ProcessStep(_Block):
    step_title: str = ""
    step_text: str = ""


class FaqItem(_Block):
    q: str = ""
    a: str = ""


class Seo(_Block):
    title: str = ""
    description: str = ""


def _dict_or_empty(v: Any) -> Dict[str, Any]:
    return v if isinstance(v, dict) else {}


def _dict_items(v: Any) -> List[Dict[str, Any]]:
    if not isinstance(v, list):
        return []
    return [item for item in v if isinstance(item, dict)]


class LandingContent(BaseModel):
    """The JSON contract the model is asked to produce.

    Every field is optional. Wrong-typed values fall back to empty ones instead of
    failing, and unknown top-level keys are kept as extras.
    """

    model_config = ConfigDict(extra="allow")

    hero: Hero = Hero()
    benefits: List[Benefit] = []
    process: List[ProcessStep] = []
    faq: List[FaqItem] = []
    seo: Seo = Seo()

    @field_validator("hero", "seo", mode="before")
    @classmethod
    def _objects(cls, v: Any) -> Dict[str, Any]:
        return _dict_or_empty(v)

    @field_validator("benefits", "process", "faq", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> List[Dict[str, Any]]:
        return _dict_items(v)


def normalize_content(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a parsed model object and return it with every LandingContent field present."""
    return LandingContent.model_validate(doc).model_dump()
