"""Sessions API — analysis runs, trace inspection and replay."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from kpitrace.engine.analysis_runner import AnalysisRunner
from kpitrace.engine.errors import ModelCallFailure, NotFound, SessionConfigError, WriteFailure, WriterConflict
from kpitrace.engine.llm_adapter import ModelCaller, get_llm_adapter
from kpitrace.engine.rating import recommend_model, summarize_sessions
from kpitrace.engine.replay_engine import ReplayEngine
from kpitrace.engine.trace_store import TraceStore, get_trace_store
from kpitrace.schemas.analysis import (
    AnalysisResult,
    AnalyzeRequest,
    ModelRecommendation,
    ReplayOutcome,
    ReplayRequest,
    SessionStats,
)
from kpitrace.schemas.trace import EventRecord, SessionRecord

router = APIRouter()
logger = logging.getLogger(__name__)


def get_model_caller() -> ModelCaller:
    return get_llm_adapter()


@router.get("/", response_model=list[SessionRecord])
async def list_sessions(file_hash: str | None = None, store: TraceStore = Depends(get_trace_store)):
    """All sessions, newest first. Pass ``file_hash`` to compare runs over one input."""
    return await store.get_sessions(file_hash=file_hash)


@router.get("/stats", response_model=SessionStats)
async def session_stats(store: TraceStore = Depends(get_trace_store)):
    return summarize_sessions(await store.get_sessions())


@router.get("/recommendation", response_model=ModelRecommendation)
async def model_recommendation(store: TraceStore = Depends(get_trace_store)):
    return recommend_model(await store.get_sessions())


@router.get("/{session_id}", response_model=SessionRecord)
async def get_session(session_id: str, store: TraceStore = Depends(get_trace_store)):
    session = await store.get_session(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


@router.get("/{session_id}/events", response_model=list[EventRecord])
async def get_session_events(session_id: str, store: TraceStore = Depends(get_trace_store)):
    """Full event log of a session in append order."""
    try:
        _, events = await store.load_session(session_id)
    except NotFound:
        raise HTTPException(404, "Session not found")
    return events


@router.post("/analyze", response_model=AnalysisResult, status_code=201)
async def analyze(
    body: AnalyzeRequest,
    store: TraceStore = Depends(get_trace_store),
    caller: ModelCaller = Depends(get_model_caller),
):
    runner = AnalysisRunner(store, caller)
    try:
        return await runner.run(body.csv_content, file_name=body.file_name, model_key=body.model)
    except SessionConfigError as e:
        raise HTTPException(400, str(e))
    except ModelCallFailure as e:
        raise HTTPException(502, str(e))
    except WriteFailure as e:
        raise HTTPException(500, str(e))


@router.post("/{session_id}/replay", response_model=ReplayOutcome, status_code=201)
async def replay_session(
    session_id: str,
    body: ReplayRequest | None = None,
    store: TraceStore = Depends(get_trace_store),
    caller: ModelCaller = Depends(get_model_caller),
):
    engine = ReplayEngine(store, caller)
    try:
        return await engine.replay(session_id, timeout=body.timeout if body else None)
    except NotFound:
        raise HTTPException(404, "Session not found")
    except SessionConfigError as e:
        raise HTTPException(400, str(e))
    except WriterConflict as e:
        raise HTTPException(409, str(e))
    except WriteFailure as e:
        raise HTTPException(500, str(e))
