from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

log = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_PAGE_TYPE = "invest"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


def env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in _TRUTHY


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("config: ignoring non-integer %s=%r", name, raw)
        return default


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("config: ignoring non-numeric %s=%r", name, raw)
        return default


def env_str(name: str, default: str = "", *aliases: str) -> str:
    for key in (name,) + aliases:
        val = (os.getenv(key, "") or "").strip()
        if val:
            return val
    return default


@dataclass
class Settings:
    """Process configuration, read once at startup and passed to the clients that need it."""

    # LLM provider (OpenAI-compatible chat completions)
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    llm_model: str = DEFAULT_MODEL
    llm_timeout_secs: float = 60.0
    llm_temperature: float = 0.6
    llm_max_tokens: int = 900
    llm_mock: bool = False

    default_page_type: str = DEFAULT_PAGE_TYPE
    allowed_token: str = ""

    # Session store
    database_url: str = ""

    # Task queue / worker
    redis_url: str = ""
    queue_name: str = "landing-generation"
    queue_attempts: int = 3
    queue_backoff_seconds: float = 2.0
    queue_retention_seconds: int = 86400
    queue_lease_seconds: int = 300
    worker_concurrency: int = 2
    worker_rate_max: int = 10
    worker_rate_window_seconds: int = 60

    # Artifact store
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_endpoint_url: str = ""
    s3_url_expires: int = 3600
    artifact_dir: str = "cache/artifacts"
    artifact_base_url: str = "/artifacts"

    # HTTP layer
    rate_max_requests: int = 30
    rate_window_seconds: int = 3600
    allow_origins: List[str] = field(default_factory=lambda: ["*"])
    webhook_secret: str = ""

    @property
    def llm_configured(self) -> bool:
        return self.llm_mock or bool(self.openai_api_key)

    @property
    def s3_configured(self) -> bool:
        return bool(self.s3_bucket)

    @property
    def queue_configured(self) -> bool:
        return bool(self.redis_url)

    def masked(self) -> dict:
        """Startup summary safe to log."""
        key = self.openai_api_key
        return {
            "llm_model": self.llm_model,
            "llm_key": ("*" * 8 + key[-4:]) if key else "NOT SET",
            "llm_mock": self.llm_mock,
            "database": "configured" if self.database_url else "sqlite (default)",
            "queue": "redis" if self.redis_url else "in-process",
            "artifacts": f"s3://{self.s3_bucket}" if self.s3_bucket else self.artifact_dir,
            "auth": "token" if self.allowed_token else "open",
        }


def load_settings() -> Settings:
    origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
    return Settings(
        openai_api_key=env_str("OPENAI_API_KEY", "", "OPENAI_KEY"),
        openai_base_url=env_str("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL).rstrip("/"),
        llm_model=env_str("LLM_MODEL", DEFAULT_MODEL),
        llm_timeout_secs=env_float("LLM_TIMEOUT_SECS", 60.0),
        llm_temperature=env_float("LLM_TEMPERATURE", 0.6),
        llm_max_tokens=env_int("LLM_MAX_TOKENS", 900),
        llm_mock=env_flag("LLM_MOCK") or env_flag("MOCK_OPENAI"),
        default_page_type=env_str("DEFAULT_PAGE_TYPE", DEFAULT_PAGE_TYPE),
        allowed_token=env_str("ALLOWED_TOKEN"),
        database_url=env_str("DATABASE_URL"),
        redis_url=env_str("REDIS_URL"),
        queue_name=env_str("QUEUE_NAME", "landing-generation"),
        queue_attempts=max(1, env_int("QUEUE_ATTEMPTS", 3)),
        queue_backoff_seconds=env_float("QUEUE_BACKOFF_SECONDS", 2.0),
        queue_retention_seconds=env_int("QUEUE_RETENTION_SECONDS", 86400),
        queue_lease_seconds=max(1, env_int("QUEUE_LEASE_SECONDS", 300)),
        worker_concurrency=max(1, env_int("WORKER_CONCURRENCY", 2)),
        worker_rate_max=env_int("WORKER_RATE_MAX", 10),
        worker_rate_window_seconds=max(1, env_int("WORKER_RATE_WINDOW_SECONDS", 60)),
        s3_bucket=env_str("S3_BUCKET"),
        s3_region=env_str("S3_REGION", "us-east-1"),
        s3_access_key_id=env_str("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=env_str("S3_SECRET_ACCESS_KEY"),
        s3_endpoint_url=env_str("S3_ENDPOINT_URL"),
        s3_url_expires=env_int("S3_URL_EXPIRES", 3600),
        artifact_dir=env_str("ARTIFACT_DIR", "cache/artifacts"),
        artifact_base_url=env_str("ARTIFACT_BASE_URL", "/artifacts").rstrip("/"),
        rate_max_requests=env_int("RATE_MAX_REQUESTS", 30),
        rate_window_seconds=max(1, env_int("RATE_WINDOW_SECONDS", 3600)),
        allow_origins=origins or ["*"],
        webhook_secret=env_str("WEBHOOK_SECRET"),
    )


def configure_logging(level: Optional[str] = None) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
