from landing.artifacts import LocalArtifactStore
from landing.config import Settings
from landing.llm_client import LLMClient, StubLLMClient
from landing.ratelimit import RateLimiter
from landing.services import build_services
from landing.worker import build_worker, main


def test_build_services_from_settings(tmp_path):
    settings = Settings(database_url="sqlite://", artifact_dir=str(tmp_path), worker_rate_max=5)
    with build_services(settings) as services:
        assert isinstance(services.llm, LLMClient)
        assert isinstance(services.artifacts, LocalArtifactStore)
        assert isinstance(services.rate_limiter, RateLimiter)
        assert services.queue is None
        assert services.sessions.ping() is True
        assert services.pipeline.default_model == "gpt-4o-mini"
        worker = build_worker(services)
        assert worker.concurrency == 2
        assert worker.rate_limiter.max_requests == 5


def test_mock_mode_uses_stub(tmp_path):
    settings = Settings(database_url="sqlite://", artifact_dir=str(tmp_path), llm_mock=True)
    with build_services(settings) as services:
        assert isinstance(services.llm, StubLLMClient)


def test_worker_cli_needs_redis(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    assert main([]) == 2
