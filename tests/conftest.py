import json

import pytest
from fastapi.testclient import TestClient

from landing.artifacts import LocalArtifactStore
from landing.config import Settings
from landing.main import create_app
from landing.ratelimit import RateLimiter
from landing.services import build_services
from landing.sessions import SessionStore
from landing.taskqueue import MemoryTaskQueue

VALID_CONTENT = {
    "hero": {"title": "Invest safely", "subtitle": "Deal support", "cta": "Call us"},
    "benefits": [{"title": "Fast", "text": "Two weeks"}, {"title": "Clear", "text": "Fixed fee"}],
    "process": [{"step_title": "Brief", "step_text": "We listen"}],
    "faq": [{"q": "Price?", "a": "Fixed."}],
    "seo": {"title": "Investment lawyers", "description": "Legal support"},
}
VALID_REPLY = json.dumps(VALID_CONTENT)


class ScriptedLLM:
    """Returns queued replies in order (the last one repeats); exceptions are raised."""

    provider = "scripted"

    def __init__(self, *replies):
        self.replies = list(replies) or [VALID_REPLY]
        self.calls = []

    def status(self):
        return {"provider": self.provider, "endpoint": None, "has_token": True}

    def complete(self, prompt, model):
        self.calls.append((prompt, model))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        artifact_dir=str(tmp_path / "artifacts"),
        rate_max_requests=100,
        rate_window_seconds=60,
    )


@pytest.fixture()
def session_store():
    store = SessionStore("sqlite://")
    store.init()
    yield store
    store.close()


@pytest.fixture()
def artifact_store(tmp_path):
    return LocalArtifactStore(str(tmp_path / "artifacts"), "/artifacts")


@pytest.fixture()
def memory_queue():
    return MemoryTaskQueue(attempts=3, backoff_seconds=0)


@pytest.fixture()
def llm():
    return ScriptedLLM()


@pytest.fixture()
def make_services(settings, session_store, artifact_store):
    def _make(llm=None, queue=None, rate_limiter=None, **overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        return build_services(
            settings,
            llm=llm or ScriptedLLM(),
            sessions=session_store,
            artifacts=artifact_store,
            queue=queue,
            rate_limiter=rate_limiter or RateLimiter(settings.rate_max_requests, settings.rate_window_seconds),
        )

    return _make


@pytest.fixture()
def services(make_services, llm):
    return make_services(llm=llm)


@pytest.fixture()
def client(services):
    return TestClient(create_app(services))
