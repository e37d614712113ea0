"""Global configuration via pydantic-settings."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────
    app_name: str = "KPI Trace"
    debug: bool = False
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # ── Trace storage ────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./data/kpitrace.db"
    trace_backend: Literal["sql", "jsonl"] = "sql"
    data_dir: str = "./data"

    # ── LLM ──────────────────────────────────────────
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    llm_default_model: str = "gpt-4o-mini"
    llm_timeout: int = 60  # Per-request LLM call timeout in seconds
    llm_requests_per_minute: int = 10
    llm_token_limit: int = 50000

    # ── Replay ───────────────────────────────────────
    replay_event_delay_ms: int = 100
    replay_call_timeout: float = 30.0

    # ── Rating / validation ──────────────────────────
    rating_baseline_cost: float = 0.001
    validation_tolerance: float = 0.01

    # ── CORS ──────────────────────────────────────────
    cors_origins: str = "*"

    model_config = {"env_prefix": "KPITRACE_", "env_file": ".env"}


settings = Settings()
