"""Schemas for analysis runs, replays and session aggregates."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from kpitrace.schemas.trace import CamelModel, Rating


class AnalyzeRequest(CamelModel):
    """Client sends raw CSV text; file upload handling lives outside this service."""

    csv_content: str
    file_name: str = "upload.csv"
    model: str | None = None  # None = settings.llm_default_model


class AnalysisResult(CamelModel):
    session_id: str
    kpis: dict[str, Any]
    valid: bool
    rating: Rating | None = None


class ReplayRequest(CamelModel):
    # Seconds allowed for each model re-invocation; None = settings.replay_call_timeout
    timeout: float | None = Field(default=None, gt=0)


class ReplayOutcome(CamelModel):
    session_id: str
    original_session_id: str
    is_deterministic: bool
    variance_detected: bool
    variance: float = 0.0
    replayed_events: int = 0
    replay_errors: int = 0


class SessionStats(CamelModel):
    total_sessions: int = 0
    avg_cost: float = 0.0
    avg_latency: float = 0.0
    reproducibility_rate: float = 0.0
    avg_rating: float = 0.0


class ModelRecommendation(CamelModel):
    model: str
    reason: str
    score: int


class ModelInfo(CamelModel):
    key: str
    model: str
    temperature: float
    max_tokens: int
    cost_per_1k_input: float
    cost_per_1k_output: float
