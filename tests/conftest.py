"""Shared fixtures: trace stores on both backends and a seeded session factory."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kpitrace.db import init_db
from kpitrace.engine.recorder import TraceRecorder
from kpitrace.engine.trace_store import JsonlTraceStore, SqlTraceStore
from kpitrace.schemas.trace import EventType, SessionAggregates, SessionStatus

from tests.stubs import KPIS


@pytest.fixture
def jsonl_store(tmp_path):
    return JsonlTraceStore(tmp_path / "data")


async def _sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'trace.db'}")
    await init_db(engine)
    return engine, SqlTraceStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


@pytest.fixture
async def sql_store(tmp_path):
    engine, store = await _sql_store(tmp_path)
    yield store
    await engine.dispose()


@pytest.fixture(params=["jsonl", "sql"])
async def store(request, tmp_path):
    """Each test using this runs once per backend."""
    if request.param == "jsonl":
        yield JsonlTraceStore(tmp_path / "data")
        return
    engine, sql = await _sql_store(tmp_path)
    yield sql
    await engine.dispose()


@pytest.fixture
def make_session(store):
    """Seed a finished five-event session: start, parse, llm_call, validation, output."""

    async def _make(temperature: float = 0.7, kpis: dict | None = None) -> str:
        kpis = kpis or KPIS
        recorder = await TraceRecorder.create(store, model="gpt-4o-mini", temperature=temperature)
        await recorder.record(EventType.START, "analysis_start", input_data={"filename": "q.csv", "rows": 4})
        await recorder.record(
            EventType.PARSE, "csv_parse",
            output_data={"rows": 4, "columns": ["Quarter", "Revenue"]}, metadata={"duration_ms": 45},
        )
        await recorder.record(
            EventType.LLM_CALL, "extract_kpis",
            input_data={"prompt": "Extract financial KPIs from CSV data with 4 rows"},
            output_data=kpis,
            metadata={
                "model": "gpt-4o-mini",
                "temperature": temperature,
                "tokens": {"input": 450, "output": 120},
                "duration_ms": 1250,
                "compliance": {"deterministic": temperature == 0, "no_pii": True, "within_token_limit": True},
            },
        )
        await recorder.record(EventType.VALIDATION, "validate_kpis", output_data={"valid": True})
        await recorder.record(EventType.OUTPUT, "report_generated", output_data={"summary": kpis})
        await recorder.finalize(
            SessionStatus.COMPLETED,
            SessionAggregates(kpis=kpis, valid=True, cost=0.0005, latency=1250, input_tokens=450, output_tokens=120),
        )
        return recorder.session_id

    return _make
