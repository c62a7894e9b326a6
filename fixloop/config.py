"""Centralized configuration via environment variables.

Every tunable knob lives here. Override via FIXLOOP_* env vars.
"""

import os
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .url_utils import ensure_redis_protocol, ensure_url_protocol


def _build_info() -> str:
    """Short git SHA and build timestamp, logged at startup."""
    sha = os.environ.get("FIXLOOP_GIT_SHA", "dev")[:12]
    ts = os.environ.get("FIXLOOP_BUILD_TIMESTAMP", "dev")
    return f"{sha}@{ts}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FIXLOOP_")

    # Reasoning provider (any OpenAI-compatible chat endpoint)
    advisor_model_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    advisor_model_name: str = "gemini-1.5-flash"
    advisor_api_key: str = ""
    advisor_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    advisor_max_tokens: int = 4096
    advisor_timeout_seconds: float = 60.0
    # Provider-side 429s: retried with exponential backoff before surfacing "retry later"
    advisor_quota_retries: int = Field(default=2, ge=0)
    advisor_quota_backoff_seconds: float = 1.0

    @field_validator("advisor_model_url", mode="before")
    @classmethod
    def normalize_url_protocol(cls, v: str) -> str:
        return ensure_url_protocol(v) if isinstance(v, str) else v

    # Rate limiting (fixed window per caller identity)
    rate_limit_max_requests: int = Field(default=3, ge=1)
    rate_limit_window_seconds: int = Field(default=3600, ge=1)
    # Counter store: empty = in-process store (single replica / dev only)
    redis_url: str = ""
    redis_socket_timeout_seconds: float = 2.0

    @field_validator("redis_url", mode="before")
    @classmethod
    def normalize_redis_protocol(cls, v: str) -> str:
        return ensure_redis_protocol(v) if isinstance(v, str) else v

    # Sandbox (V8 isolate per invocation)
    sandbox_timeout_ms: int = Field(default=5000, ge=1)
    sandbox_memory_limit_mb: int = Field(default=16, ge=1)
    sandbox_max_output_bytes: int = 100 * 1024
    sandbox_max_concurrency: int = Field(default=4, ge=1)

    # Validator hard limits and soft heuristics
    max_code_length: int = 10_000
    max_code_lines: int = 500
    long_line_threshold: int = 200
    base64_run_threshold: int = 50

    # Streaming
    stream_queue_size: int = Field(default=64, ge=1)
    stream_flush_timeout_seconds: float = 10.0

    # Guardrail strictness for streamed fixes
    guardrail_profile: Literal["strict", "minimal"] = "strict"

    # Server
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    admin_token: str = ""
    trust_forwarded_headers: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "info"

    @field_validator("log_level", mode="before")
    @classmethod
    def lowercase_log_level(cls, v: str) -> str:
        return v.lower() if isinstance(v, str) else v

    @property
    def build_version(self) -> str:
        """Identifier of the running build, e.g. ``abc123@2026-01-01``."""
        return _build_info()


settings = Settings()
