"""Span tracker — start/end event pairs with measured durations."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from kpitrace.engine.errors import StaleSpan
from kpitrace.engine.recorder import TraceRecorder
from kpitrace.schemas.trace import SPAN_END_SUFFIX, SPAN_START_SUFFIX, EventType


@dataclass
class _OpenSpan:
    event_type: EventType
    name: str
    started: float


@dataclass
class SpanHandle:
    """Filled in by the body of ``SpanTracker.span``; written on the closing event."""
    span_id: str
    output: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)


def end_name(start_name: str) -> str:
    if start_name.endswith(SPAN_START_SUFFIX):
        return start_name[: -len(SPAN_START_SUFFIX)] + SPAN_END_SUFFIX
    return start_name + SPAN_END_SUFFIX


class SpanTracker:
    """Open and close spans on top of a recorder.

    Spans are one level deep and may close in any order. A span that is never
    closed only lacks its end event; it does not hold up finalization.
    """

    def __init__(self, recorder: TraceRecorder):
        self.recorder = recorder
        self._open: dict[str, _OpenSpan] = {}

    @property
    def open_spans(self) -> list[str]:
        return list(self._open)

    async def start_span(self, event_type: EventType | str, name: str, input_data: Any = None) -> str:
        """Record the opening event and return its id, which is the span id."""
        event_type = EventType(event_type)
        start_name = f"{name}{SPAN_START_SUFFIX}"
        span_id = await self.recorder.record(event_type, start_name, input_data=input_data)
        self._open[span_id] = _OpenSpan(event_type, start_name, time.perf_counter())
        return span_id

    async def end_span(
        self,
        span_id: str,
        output: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Record the closing event of an open span and return its event id.

        Raises StaleSpan if ``span_id`` is not open in this tracker; nothing is
        recorded in that case. If the closing append fails the span stays open
        and may be ended again.
        """
        span = self._open.pop(span_id, None)
        if span is None:
            raise StaleSpan(span_id)

        duration_ms = (time.perf_counter() - span.started) * 1000
        try:
            return await self.recorder.record(
                span.event_type,
                end_name(span.name),
                output_data=output,
                metadata={**(metadata or {}), "duration_ms": round(duration_ms, 3)},
                parent_id=span_id,
            )
        except Exception:
            self._open[span_id] = span
            raise

    @asynccontextmanager
    async def span(
        self, event_type: EventType | str, name: str, input_data: Any = None,
    ) -> AsyncIterator[SpanHandle]:
        """Wrap a block in a span. If the block raises, the span stays open."""
        span_id = await self.start_span(event_type, name, input_data)
        handle = SpanHandle(span_id=span_id)
        yield handle
        await self.end_span(span_id, handle.output, handle.metadata)
