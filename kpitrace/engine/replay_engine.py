"""Replay engine — re-run a recorded session into a new derived session.

Deterministic sessions (temperature == 0) are reproduced verbatim. For any other
temperature every model-output event is re-invoked against the model-call
collaborator and the drift of the new answer is measured as EBITDA variance.

State per replay:
  LOADING_ORIGINAL → CREATING_DERIVED_SESSION → REPLAYING_EVENTS → VALIDATING
  → FINALIZING → DONE, with FAILED reachable from every state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kpitrace.config import settings
from kpitrace.engine.analysis_runner import model_call_metadata, parse_kpi_content
from kpitrace.engine.errors import ModelCallErrorKind, ModelCallFailure, SessionConfigError, TraceError
from kpitrace.engine.llm_adapter import ModelCaller, get_llm_adapter
from kpitrace.engine.rating import rate, validate_kpis, variance
from kpitrace.engine.recorder import TraceRecorder
from kpitrace.engine.trace_store import TraceStore
from kpitrace.schemas.analysis import ReplayOutcome
from kpitrace.schemas.trace import EventRecord, SessionAggregates, SessionRecord, SessionStatus

logger = logging.getLogger(__name__)

# Written by each replay about its own run; never inherited from the source event
REPLAY_METADATA_KEYS = frozenset({"replayed", "originalEventId", "variance", "replayError", "replayErrorKind"})


class ReplayState(str, Enum):
    LOADING_ORIGINAL = "loading_original"
    CREATING_DERIVED_SESSION = "creating_derived_session"
    REPLAYING_EVENTS = "replaying_events"
    VALIDATING = "validating"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class _ReplayRun:
    original: SessionRecord
    recorder: TraceRecorder
    is_deterministic: bool
    final_kpis: dict[str, Any] | None
    state: ReplayState = ReplayState.CREATING_DERIVED_SESSION
    # original event id -> derived event id
    id_map: dict[str, str] = field(default_factory=dict)
    fresh_calls: int = 0
    fresh_cost: float = 0.0
    fresh_latency: float = 0.0
    fresh_input_tokens: int = 0
    fresh_output_tokens: int = 0
    replay_errors: int = 0


def _recorded_kpis(events: list[EventRecord]) -> dict[str, Any] | None:
    """The last model answer found in an event log."""
    for event in reversed(events):
        if event.is_model_output and isinstance(event.output, dict):
            return event.output
    return None


def _prompt_for(event: EventRecord, by_id: dict[str, EventRecord]) -> str:
    """The prompt that produced ``event``, from its own input or its span opener."""
    candidates = [event.input]
    if event.parent_id and event.parent_id in by_id:
        candidates.append(by_id[event.parent_id].input)
    for candidate in candidates:
        if isinstance(candidate, dict) and isinstance(candidate.get("prompt"), str):
            return candidate["prompt"]
        if isinstance(candidate, str) and candidate:
            return candidate
    return json.dumps(event.input or {}, ensure_ascii=False, default=str)


class ReplayEngine:
    """Reproduce or re-derive a recorded session."""

    def __init__(
        self,
        store: TraceStore,
        caller: ModelCaller | None = None,
        *,
        call_timeout: float | None = None,
        event_delay_ms: int | None = None,
    ):
        self.store = store
        self.caller = caller or get_llm_adapter()
        self.call_timeout = call_timeout if call_timeout is not None else settings.replay_call_timeout
        self.event_delay_ms = event_delay_ms if event_delay_ms is not None else settings.replay_event_delay_ms

    def _enter(self, run_id: str, state: ReplayState, run: _ReplayRun | None = None):
        logger.debug(f"Replay of {run_id}: {state.value}")
        if run is not None:
            run.state = state

    async def replay(self, session_id: str, *, timeout: float | None = None) -> ReplayOutcome:
        """Replay ``session_id`` and return the derived session's id and variance verdict.

        Args:
            session_id: The recorded session to replay.
            timeout: Seconds allowed per model re-invocation; overrides the engine default.

        Raises:
            NotFound: the session does not exist.
            SessionConfigError: the session is still running or has no temperature.
        """
        call_timeout = timeout if timeout is not None else self.call_timeout

        # 1. Load the original
        self._enter(session_id, ReplayState.LOADING_ORIGINAL)
        original, events = await self.store.load_session(session_id)
        if original.status == SessionStatus.RUNNING:
            raise SessionConfigError(f"Session '{session_id}' is still running")
        if original.temperature is None:
            raise SessionConfigError(f"Session '{session_id}' has no temperature recorded")

        # 2. Derived session
        self._enter(session_id, ReplayState.CREATING_DERIVED_SESSION)
        recorder = await TraceRecorder.create(
            self.store,
            model=original.model,
            temperature=original.temperature,
            parent_session_id=original.session_id,
            file_name=original.file_name,
            file_hash=original.file_hash,
        )

        # 3. One strategy for the whole replay
        original_kpis = original.kpis or _recorded_kpis(events)
        run = _ReplayRun(
            original=original,
            recorder=recorder,
            is_deterministic=original.temperature == 0,
            final_kpis=original_kpis,
        )

        try:
            # 4. Events in original order
            self._enter(session_id, ReplayState.REPLAYING_EVENTS, run)
            by_id = {e.event_id: e for e in events}
            for i, event in enumerate(events):
                await self._replay_event(run, event, by_id, call_timeout)
                if self.event_delay_ms > 0 and i < len(events) - 1:
                    await asyncio.sleep(self.event_delay_ms / 1000)

            # 5. Validate and rate
            self._enter(session_id, ReplayState.VALIDATING, run)
            aggregates = self._aggregates(run)

            # 6. Finalize
            self._enter(session_id, ReplayState.FINALIZING, run)
            await recorder.finalize(SessionStatus.COMPLETED, aggregates)
        except Exception as e:
            logger.error(f"Replay of {session_id} failed in state {run.state.value}: {e}", exc_info=True)
            self._enter(session_id, ReplayState.FAILED, run)
            try:
                await recorder.finalize(SessionStatus.FAILED)
            except TraceError as fin_err:
                logger.error(f"Could not mark replay session {recorder.session_id} failed: {fin_err}")
            raise

        self._enter(session_id, ReplayState.DONE, run)
        drift = variance(original_kpis, run.final_kpis)
        return ReplayOutcome(
            session_id=recorder.session_id,
            original_session_id=original.session_id,
            is_deterministic=run.is_deterministic,
            variance_detected=not run.is_deterministic and drift > 0,
            variance=drift,
            replayed_events=len(recorder.events),
            replay_errors=run.replay_errors,
        )

    async def _replay_event(
        self,
        run: _ReplayRun,
        event: EventRecord,
        by_id: dict[str, EventRecord],
        call_timeout: float | None,
    ):
        metadata = {k: v for k, v in event.metadata.as_dict().items() if k not in REPLAY_METADATA_KEYS}
        metadata.update(replayed=True, originalEventId=event.event_id)
        parent_id = run.id_map.get(event.parent_id) if event.parent_id else None
        output = event.output

        if event.is_model_output and not run.is_deterministic:
            try:
                result = await asyncio.wait_for(
                    self.caller.call(
                        _prompt_for(event, by_id),
                        run.original.model,
                        temperature=run.original.temperature,
                    ),
                    timeout=call_timeout,
                )
                new_kpis = parse_kpi_content(result.content)
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    kind = ModelCallErrorKind.TIMEOUT
                elif isinstance(e, ModelCallFailure):
                    kind = e.kind
                else:
                    kind = ModelCallErrorKind.UNKNOWN
                logger.warning(
                    f"Replay of event {event.event_id} fell back to the recorded output ({kind.value}): {e}"
                )
                metadata["replayError"] = True
                metadata["replayErrorKind"] = kind.value
                run.replay_errors += 1
            else:
                original_output = event.output if isinstance(event.output, dict) else None
                metadata.update(model_call_metadata(result))
                metadata["duration_ms"] = result.latency_ms
                metadata["variance"] = variance(original_output, new_kpis)
                output = new_kpis

                run.final_kpis = new_kpis
                run.fresh_calls += 1
                run.fresh_cost += result.cost
                run.fresh_latency += result.latency_ms
                run.fresh_input_tokens += result.input_tokens
                run.fresh_output_tokens += result.output_tokens

        new_id = await run.recorder.record(
            event.type,
            event.name,
            input_data=event.input,
            output_data=output,
            metadata=metadata,
            parent_id=parent_id,
        )
        run.id_map[event.event_id] = new_id

    def _aggregates(self, run: _ReplayRun) -> SessionAggregates:
        original = run.original
        if run.fresh_calls:
            cost, latency = run.fresh_cost, run.fresh_latency
            input_tokens, output_tokens = run.fresh_input_tokens, run.fresh_output_tokens
        else:
            cost, latency = original.cost or 0.0, original.latency or 0.0
            input_tokens, output_tokens = original.input_tokens, original.output_tokens

        valid = validate_kpis(run.final_kpis)
        return SessionAggregates(
            kpis=run.final_kpis,
            valid=valid,
            cost=cost,
            latency=latency,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            rating=rate(latency, cost, original.temperature, valid),
        )
