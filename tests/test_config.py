from landing.config import Settings, load_settings


def test_defaults(monkeypatch):
    keys = (
        "OPENAI_API_KEY", "OPENAI_KEY", "LLM_MOCK", "MOCK_OPENAI",
        "REDIS_URL", "S3_BUCKET", "ALLOW_ORIGINS", "DEFAULT_PAGE_TYPE",
    )
    for key in keys:
        monkeypatch.delenv(key, raising=False)
    s = load_settings()
    assert s.llm_model == "gpt-4o-mini"
    assert s.default_page_type == "invest"
    assert s.llm_temperature == 0.6
    assert s.llm_max_tokens == 900
    assert s.queue_name == "landing-generation"
    assert s.queue_attempts == 3
    assert s.queue_lease_seconds == 300
    assert s.worker_concurrency == 2
    assert s.allow_origins == ["*"]
    assert not s.queue_configured and not s.s3_configured and not s.llm_configured


def test_env_overrides_and_aliases(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_KEY", "sk-legacy")
    monkeypatch.setenv("MOCK_OPENAI", "yes")
    monkeypatch.setenv("WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("OPENAI_BASE_URL", "https://proxy.example/v1/")
    s = load_settings()
    assert s.openai_api_key == "sk-legacy"
    assert s.llm_mock is True
    assert s.worker_concurrency == 4
    assert s.allow_origins == ["https://a.example", "https://b.example"]
    assert s.openai_base_url == "https://proxy.example/v1"


def test_bad_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("LLM_MAX_TOKENS", "lots")
    monkeypatch.setenv("LLM_TIMEOUT_SECS", "soon")
    s = load_settings()
    assert s.llm_max_tokens == 900
    assert s.llm_timeout_secs == 60.0


def test_masked_hides_key():
    masked = Settings(openai_api_key="sk-abcdefghijkl").masked()
    assert masked["llm_key"].endswith("ijkl")
    assert "sk-abc" not in masked["llm_key"]
