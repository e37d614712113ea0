"""Trace data model — events, sessions and ratings shared by every component.

Events and sessions serialize with camelCase keys (``sessionId``, ``eventId`` ...),
which is also the line format of the JSONL trace log.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Span pairing convention: "<name>_start" is closed by "<name>_end"
SPAN_START_SUFFIX = "_start"
SPAN_END_SUFFIX = "_end"


class EventType(str, Enum):
    START = "start"
    PARSE = "parse"
    LLM_CALL = "llm_call"
    VALIDATION = "validation"
    OUTPUT = "output"
    ERROR = "error"


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int | None = None


class Compliance(BaseModel):
    deterministic: bool
    no_pii: bool = True
    within_token_limit: bool = True


class EventMetadata(BaseModel):
    """Well-known metadata fields; anything else is kept as an extra."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    duration_ms: float | None = None
    # Model-call events
    model: str | None = None
    temperature: float | None = None
    tokens: TokenUsage | None = None
    cost: float | None = None
    compliance: Compliance | None = None
    # Replayed events
    replayed: bool | None = None
    original_event_id: str | None = Field(default=None, alias="originalEventId")
    variance: float | None = None
    replay_error: bool | None = Field(default=None, alias="replayError")

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventRecord(CamelModel):
    """One immutable record of something that happened during a run."""

    session_id: str
    event_id: str
    parent_id: str | None = None
    timestamp: datetime
    type: EventType
    name: str
    input: Any = None
    output: Any = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def is_span_start(self) -> bool:
        return self.name.endswith(SPAN_START_SUFFIX)

    @property
    def is_model_output(self) -> bool:
        """True for the llm_call event that carries the model's answer.

        Opening events of a model-call span only hold the prompt, so they are
        never re-invoked on replay.
        """
        return self.type == EventType.LLM_CALL and not self.is_span_start

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json_line(cls, line: str) -> EventRecord:
        return cls.model_validate_json(line)


class RatingBreakdown(BaseModel):
    speed: int
    cost: int
    reproducibility: int
    accuracy: int


class Rating(CamelModel):
    stars: int
    breakdown: RatingBreakdown
    cost_multiplier: float
    recommendation: str


class SessionRecord(CamelModel):
    """The unit of replay and aggregation."""

    session_id: str
    created_at: datetime
    status: SessionStatus = SessionStatus.RUNNING
    model: str
    temperature: float | None = None
    parent_session_id: str | None = None
    file_name: str | None = None
    file_hash: str | None = None
    # Aggregates set at finalization
    kpis: dict[str, Any] | None = None
    valid: bool | None = None
    cost: float | None = None
    latency: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    rating: Rating | None = None
    event_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_replay(self) -> bool:
        return self.parent_session_id is not None


class SessionAggregates(BaseModel):
    """Fields frozen onto a session when it reaches a terminal status."""

    kpis: dict[str, Any] | None = None
    valid: bool | None = None
    cost: float | None = None
    latency: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    rating: Rating | None = None
