from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import requests

from landing.config import Settings
from landing.errors import ProviderError, ProviderTimeout
from landing.llm_prompts import Prompt

log = logging.getLogger(__name__)


def _extract_text(data: Any) -> str:
    """Pull the completion text out of a chat-completions (or legacy completions) body."""
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    first = choices[0]
    message = first.get("message") or {}
    text = message.get("content") if isinstance(message, dict) else None
    if not text:
        text = first.get("text")
    return text if isinstance(text, str) else ""


class LLMClient:
    """Opaque text completion against an OpenAI-compatible /chat/completions endpoint."""

    provider = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        temperature: float = 0.6,
        max_tokens: int = 900,
        json_mode: bool = True,
    ) -> None:
        self.api_key = api_key
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.json_mode = json_mode

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_secs,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )

    def status(self) -> Dict[str, Any]:
        return {"provider": self.provider, "endpoint": self.endpoint, "has_token": bool(self.api_key)}

    def _post(self, body: Dict[str, Any]) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            return requests.post(self.endpoint, headers=headers, json=body, timeout=self.timeout)
        except requests.Timeout as exc:
            log.warning("llm.request: timeout after %ss: %r", self.timeout, exc)
            raise ProviderTimeout(f"LLM provider timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            log.warning("llm.request: transport error: %r", exc)
            raise ProviderError(f"LLM provider unreachable: {exc}") from exc

    def complete(self, prompt: Prompt, model: str) -> str:
        """Return the raw completion text; raises ProviderError/ProviderTimeout."""
        if not self.api_key:
            raise ProviderError("LLM provider not configured: OPENAI_API_KEY is not set")
        body: Dict[str, Any] = {
            "model": model,
            "messages": prompt.as_messages(),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.json_mode:
            body["response_format"] = {"type": "json_object"}

        resp = self._post(body)
        if resp.status_code == 400 and "response_format" in body:
            # Some models reject JSON mode; retry once without it
            log.info("llm.request: HTTP 400 with json mode, retrying without response_format model=%s", model)
            body = {k: v for k, v in body.items() if k != "response_format"}
            resp = self._post(body)

        if not 200 <= resp.status_code < 300:
            text = resp.text or ""
            log.warning("llm.request: HTTP %s: %s", resp.status_code, text[:400])
            raise ProviderError(f"LLM provider error: HTTP {resp.status_code}", status=resp.status_code, body=text)

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("LLM provider returned a non-JSON body", status=resp.status_code, body=resp.text or "") from exc

        text = _extract_text(data)
        if not text:
            raise ProviderError("LLM provider returned an empty completion", status=resp.status_code, body=json.dumps(data)[:400])
        return text


MOCK_LANDING: Dict[str, Any] = {
    "hero": {
        "title": "Legal support for your investment",
        "subtitle": "Due diligence, structuring and deal support",
        "cta": "Get a consultation",
    },
    "benefits": [
        {"title": "Experience", "text": "Hundreds of closed transactions."},
        {"title": "Transparency", "text": "Fixed fees agreed up front."},
    ],
    "process": [
        {"step_title": "Brief", "step_text": "We study your situation."},
        {"step_title": "Plan", "step_text": "We propose a deal structure."},
        {"step_title": "Close", "step_text": "We support the signing."},
    ],
    "faq": [{"q": "How long does it take?", "a": "Usually two to four weeks."}],
    "seo": {"title": "Investment lawyers", "description": "Legal support for investors."},
}


class StubLLMClient:
    """Canned completions for LLM_MOCK runs; never touches the network."""

    provider = "mock"

    def __init__(self, reply: Optional[str] = None) -> None:
        self.reply = reply
        self.calls = 0

    def status(self) -> Dict[str, Any]:
        return {"provider": self.provider, "endpoint": None, "has_token": True}

    def complete(self, prompt: Prompt, model: str) -> str:
        self.calls += 1
        if self.reply is not None:
            return self.reply
        return json.dumps(MOCK_LANDING, ensure_ascii=False)


def build_llm_client(settings: Settings):
    if settings.llm_mock:
        log.info("llm: LLM_MOCK enabled, using canned completions")
        return StubLLMClient()
    if not settings.openai_api_key:
        log.warning("llm: OPENAI_API_KEY not set; generation requests will fail")
    return LLMClient.from_settings(settings)
