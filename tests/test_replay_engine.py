"""Replay engine tests: deterministic reproduction, re-invocation and fallbacks."""

from __future__ import annotations

import pytest

from kpitrace.engine.analysis_runner import AnalysisRunner
from kpitrace.engine.errors import ModelCallErrorKind, ModelCallFailure, NotFound, SessionConfigError
from kpitrace.engine.recorder import TraceRecorder
from kpitrace.engine.replay_engine import ReplayEngine
from kpitrace.schemas.trace import EventType, SessionStatus

from tests.stubs import KPIS, SAMPLE_CSV, SHIFTED_KPIS, ExplodingCaller, StubCaller


def _engine(store, caller) -> ReplayEngine:
    return ReplayEngine(store, caller, event_delay_ms=0)


async def _derived(store, original_id: str):
    sessions = [s for s in await store.get_sessions() if s.parent_session_id == original_id]
    assert len(sessions) == 1
    return sessions[0]


# ═══════════════════════════════════════════════════════════════
# 1. Deterministic sessions
# ═══════════════════════════════════════════════════════════════

class TestDeterministicReplay:
    async def test_reproduces_outputs_without_model_calls(self, store, make_session):
        original_id = await make_session(temperature=0)

        outcome = await _engine(store, ExplodingCaller()).replay(original_id)

        assert outcome.is_deterministic is True
        assert outcome.variance_detected is False
        assert outcome.variance == 0
        assert outcome.replayed_events == 5
        assert outcome.replay_errors == 0
        assert outcome.original_session_id == original_id
        assert outcome.session_id != original_id

        original_events = await store.get_events(original_id)
        derived_events = await store.get_events(outcome.session_id)
        assert [e.name for e in derived_events] == [e.name for e in original_events]
        assert [e.output for e in derived_events] == [e.output for e in original_events]
        for before, after in zip(original_events, derived_events):
            assert after.metadata.replayed is True
            assert after.metadata.original_event_id == before.event_id

    async def test_derived_session_summary(self, store, make_session):
        original_id = await make_session(temperature=0)
        outcome = await _engine(store, ExplodingCaller()).replay(original_id)

        derived = await store.get_session(outcome.session_id)
        assert derived.status == SessionStatus.COMPLETED
        assert derived.parent_session_id == original_id
        assert derived.is_replay
        assert derived.temperature == 0
        assert derived.kpis == KPIS
        assert derived.valid is True
        # No fresh model calls: cost and latency carried over
        assert derived.cost == pytest.approx(0.0005)
        assert derived.latency == pytest.approx(1250)
        assert derived.rating.stars == 5
        assert derived.event_count == 5

        # The original is left untouched
        original = await store.get_session(original_id)
        assert original.event_count == 5
        assert original.parent_session_id is None

    async def test_parent_links_point_into_derived_session(self, store):
        result = await AnalysisRunner(store, StubCaller()).run(SAMPLE_CSV, "q.csv", "gpt-4o-mini")
        outcome = await _engine(store, ExplodingCaller()).replay(result.session_id)

        derived_events = await store.get_events(outcome.session_id)
        derived_ids = {e.event_id for e in derived_events}
        linked = [e for e in derived_events if e.parent_id]
        assert [e.name for e in linked] == ["csv_parse_end", "extract_kpis_end", "validate_kpis_end"]
        for event in linked:
            assert event.parent_id in derived_ids
        assert outcome.replayed_events == 8


# ═══════════════════════════════════════════════════════════════
# 2. Non-deterministic sessions
# ═══════════════════════════════════════════════════════════════

class TestNonDeterministicReplay:
    async def test_variance_measured_against_original(self, store):
        result = await AnalysisRunner(store, StubCaller([KPIS])).run(SAMPLE_CSV, "q.csv", "gpt-4o-mini-creative")
        caller = StubCaller([SHIFTED_KPIS])

        outcome = await _engine(store, caller).replay(result.session_id)

        assert outcome.is_deterministic is False
        assert outcome.variance == pytest.approx(10.0)
        assert outcome.variance_detected is True
        assert outcome.replay_errors == 0

        # One re-invocation, same prompt, same model and temperature
        assert len(caller.calls) == 1
        prompt, model_key, temperature = caller.calls[0]
        assert "Extract financial KPIs" in prompt
        assert model_key == "gpt-4o-mini-creative"
        assert temperature == 0.7

        replayed = [e for e in await store.get_events(outcome.session_id) if e.is_model_output]
        assert len(replayed) == 1
        assert replayed[0].output == SHIFTED_KPIS
        assert replayed[0].metadata.variance == pytest.approx(10.0)
        assert replayed[0].metadata.compliance.deterministic is False

        derived = await store.get_session(outcome.session_id)
        assert derived.kpis == SHIFTED_KPIS
        assert derived.valid is False
        assert derived.rating.recommendation == "use temperature=0"

    async def test_same_answer_is_no_variance(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        outcome = await _engine(store, StubCaller([KPIS])).replay(original_id)
        assert outcome.variance == 0
        assert outcome.variance_detected is False

    async def test_fresh_costs_replace_recorded_ones(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        outcome = await _engine(store, StubCaller([KPIS], cost=0.0009, latency_ms=420.0)).replay(original_id)
        derived = await store.get_session(outcome.session_id)
        assert derived.cost == pytest.approx(0.0009)
        assert derived.latency == pytest.approx(420.0)

    async def test_only_model_output_events_reinvoked(self, store):
        result = await AnalysisRunner(store, StubCaller()).run(SAMPLE_CSV, "q.csv", "gpt-4o-mini-creative")
        caller = StubCaller([KPIS])
        await _engine(store, caller).replay(result.session_id)
        # extract_kpis_start only carries the prompt
        assert len(caller.calls) == 1


# ═══════════════════════════════════════════════════════════════
# 3. Model call failures fall back to the recorded output
# ═══════════════════════════════════════════════════════════════

class TestReplayFallback:
    async def test_failure_keeps_original_output(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        caller = StubCaller(fail_with=ModelCallFailure(ModelCallErrorKind.RATE_LIMITED, "slow down"))

        outcome = await _engine(store, caller).replay(original_id)

        assert outcome.replayed_events == 5
        assert outcome.replay_errors == 1
        assert outcome.variance == 0
        derived = await store.get_session(outcome.session_id)
        assert derived.status == SessionStatus.COMPLETED

        events = await store.get_events(outcome.session_id)
        assert len(events) == 5
        llm = next(e for e in events if e.type == EventType.LLM_CALL)
        assert llm.output == KPIS
        assert llm.metadata.replay_error is True
        assert llm.metadata.as_dict()["replayErrorKind"] == "rate_limited"

    async def test_timeout_falls_back(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        outcome = await _engine(store, StubCaller(delay=1.0)).replay(original_id, timeout=0.05)

        assert outcome.replay_errors == 1
        llm = next(e for e in await store.get_events(outcome.session_id) if e.is_model_output)
        assert llm.metadata.as_dict()["replayErrorKind"] == "timeout"

    async def test_invalid_json_falls_back(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        outcome = await _engine(store, StubCaller(content="not json")).replay(original_id)

        llm = next(e for e in await store.get_events(outcome.session_id) if e.is_model_output)
        assert llm.output == KPIS
        assert llm.metadata.as_dict()["replayErrorKind"] == "unknown"

    async def test_recorded_costs_kept_when_every_call_failed(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        caller = StubCaller(fail_with=ModelCallFailure(ModelCallErrorKind.UNAVAILABLE, "down"))
        outcome = await _engine(store, caller).replay(original_id)
        derived = await store.get_session(outcome.session_id)
        assert derived.cost == pytest.approx(0.0005)
        assert derived.latency == pytest.approx(1250)


# ═══════════════════════════════════════════════════════════════
# 4. Rejected and failed replays
# ═══════════════════════════════════════════════════════════════

class TestReplayErrors:
    async def test_unknown_session(self, store):
        with pytest.raises(NotFound):
            await _engine(store, ExplodingCaller()).replay("no-such-session")
        assert await store.get_sessions() == []

    async def test_running_session_rejected(self, store):
        recorder = await TraceRecorder.create(store, model="gpt-4o-mini", temperature=0)
        await recorder.record(EventType.START, "analysis_start")

        with pytest.raises(SessionConfigError):
            await _engine(store, ExplodingCaller()).replay(recorder.session_id)
        assert len(await store.get_sessions()) == 1

    async def test_internal_failure_marks_derived_session_failed(self, store, make_session, monkeypatch):
        original_id = await make_session(temperature=0)
        engine = _engine(store, ExplodingCaller())

        def _broken(run):
            raise RuntimeError("rating blew up")

        monkeypatch.setattr(engine, "_aggregates", _broken)
        with pytest.raises(RuntimeError):
            await engine.replay(original_id)

        derived = await _derived(store, original_id)
        assert derived.status == SessionStatus.FAILED
        assert derived.event_count == 5

    async def test_replay_of_replay(self, store, make_session):
        original_id = await make_session(temperature=0)
        engine = _engine(store, ExplodingCaller())
        first = await engine.replay(original_id)
        second = await engine.replay(first.session_id)

        derived = await store.get_session(second.session_id)
        assert derived.parent_session_id == first.session_id
        assert [e.output for e in await store.get_events(second.session_id)] == [
            e.output for e in await store.get_events(original_id)
        ]


# ═══════════════════════════════════════════════════════════════
# 5. Replaying a replay
# ═══════════════════════════════════════════════════════════════

async def _model_output(store, session_id: str):
    return next(e for e in await store.get_events(session_id) if e.is_model_output)


class TestReplayOfReplayMetadata:
    async def test_fresh_answer_clears_inherited_fallback(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        failing = StubCaller(fail_with=ModelCallFailure(ModelCallErrorKind.RATE_LIMITED, "slow down"))
        first = await _engine(store, failing).replay(original_id)
        first_llm = await _model_output(store, first.session_id)
        assert first_llm.metadata.replay_error is True

        second = await _engine(store, StubCaller([SHIFTED_KPIS])).replay(first.session_id)

        assert second.replay_errors == 0
        llm = await _model_output(store, second.session_id)
        assert llm.output == SHIFTED_KPIS
        assert llm.metadata.replay_error is None
        assert "replayErrorKind" not in llm.metadata.as_dict()
        assert llm.metadata.variance == pytest.approx(10.0)
        assert llm.metadata.duration_ms == pytest.approx(300.0)
        assert llm.metadata.original_event_id == first_llm.event_id

    async def test_fallback_drops_inherited_variance(self, store, make_session):
        original_id = await make_session(temperature=0.7)
        first = await _engine(store, StubCaller([SHIFTED_KPIS])).replay(original_id)
        first_llm = await _model_output(store, first.session_id)
        assert first_llm.metadata.variance == pytest.approx(10.0)

        failing = StubCaller(fail_with=ModelCallFailure(ModelCallErrorKind.UNAVAILABLE, "down"))
        second = await _engine(store, failing).replay(first.session_id)

        assert second.replay_errors == 1
        assert second.variance == 0
        llm = await _model_output(store, second.session_id)
        assert llm.output == SHIFTED_KPIS
        assert llm.metadata.replay_error is True
        assert llm.metadata.as_dict()["replayErrorKind"] == "unavailable"
        assert llm.metadata.variance is None
        assert llm.metadata.original_event_id == first_llm.event_id

    async def test_no_event_inherits_fallback_flags(self, store):
        result = await AnalysisRunner(store, StubCaller()).run(SAMPLE_CSV, "q.csv", "gpt-4o-mini-creative")
        failing = StubCaller(fail_with=ModelCallFailure(ModelCallErrorKind.TIMEOUT, "slow"))
        first = await _engine(store, failing).replay(result.session_id)

        second = await _engine(store, StubCaller([KPIS])).replay(first.session_id)
        for event in await store.get_events(second.session_id):
            meta = event.metadata.as_dict()
            assert meta["replayed"] is True
            assert "replayError" not in meta
            assert "replayErrorKind" not in meta
