"""Trace session and event tables — the SQL form of a recorded run."""

from __future__ import annotations

import uuid
from typing import Any
from datetime import datetime, timezone

from sqlalchemy import String, Text, Boolean, Integer, DateTime, JSON, Float, Index
from sqlalchemy.orm import Mapped, mapped_column

from kpitrace.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TraceSession(Base):
    """One analysis or replay run, with its summary aggregates."""

    __tablename__ = "trace_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    # Status: running | completed | failed
    status: Mapped[str] = mapped_column(String(16), default="running", index=True)
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Set only on sessions produced by replay
    parent_session_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    # Aggregates written at finalization
    kpis: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    valid: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    latency: Mapped[float | None] = mapped_column(Float, nullable=True)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rating: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    event_count: Mapped[int] = mapped_column(Integer, default=0)


class TraceEvent(Base):
    """A single immutable event appended to a session's log."""

    __tablename__ = "trace_events"
    __table_args__ = (Index("ix_trace_events_session_seq", "session_id", "seq", unique=True),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Append position within the session; defines event order
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # start | parse | llm_call | validation | output | error
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    input: Mapped[Any] = mapped_column(JSON, nullable=True)
    output: Mapped[Any] = mapped_column(JSON, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
