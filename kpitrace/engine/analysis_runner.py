"""Analysis runner — traced KPI extraction over one CSV input.

Pipeline: analysis_start → csv_parse → extract_kpis (model call) → validate_kpis → report_generated
"""

from __future__ import annotations

import csv
import hashlib
import io
import json
import logging
from typing import Any

from kpitrace.config import settings
from kpitrace.engine.errors import ModelCallErrorKind, ModelCallFailure, TraceError
from kpitrace.engine.llm_adapter import ModelCaller, ModelCallResult, get_llm_adapter, get_model_config
from kpitrace.engine.rating import KPI_FIELDS, check_ebitda, rate
from kpitrace.engine.recorder import TraceRecorder
from kpitrace.engine.span_tracker import SpanTracker
from kpitrace.engine.trace_store import TraceStore
from kpitrace.schemas.analysis import AnalysisResult
from kpitrace.schemas.trace import EventType, SessionAggregates, SessionStatus

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Extract financial KPIs from this CSV data.
Return JSON with: revenue, cogs, opex, ebitda, year_over_year_growth
Data: {data}"""

# Rows of the CSV sent to the model
PROMPT_SAMPLE_ROWS = 5


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def parse_csv(content: str) -> list[dict[str, str]]:
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    return [dict(row) for row in reader]


def build_prompt(records: list[dict[str, str]]) -> str:
    return EXTRACTION_PROMPT.format(data=json.dumps(records[:PROMPT_SAMPLE_ROWS], ensure_ascii=False))


def parse_kpi_content(content: str) -> dict[str, Any]:
    """Decode the model's JSON answer into a KPI record."""
    try:
        kpis = json.loads(content or "{}")
    except json.JSONDecodeError as e:
        raise ModelCallFailure(ModelCallErrorKind.UNKNOWN, f"Model returned invalid JSON: {e}") from e
    if not isinstance(kpis, dict):
        raise ModelCallFailure(ModelCallErrorKind.UNKNOWN, "Model returned JSON that is not an object")
    return kpis


def model_call_metadata(result: ModelCallResult, token_limit: int | None = None) -> dict[str, Any]:
    limit = token_limit if token_limit is not None else settings.llm_token_limit
    return {
        "model": result.model,
        "temperature": result.temperature,
        "tokens": {
            "input": result.input_tokens,
            "output": result.output_tokens,
            "total": result.total_tokens,
        },
        "cost": result.cost,
        "latency_ms": result.latency_ms,
        "compliance": {
            "deterministic": result.temperature == 0,
            "no_pii": True,
            "within_token_limit": result.total_tokens <= limit,
        },
    }


class AnalysisRunner:
    """Run one traced extraction and finalize its session."""

    def __init__(self, store: TraceStore, caller: ModelCaller | None = None):
        self.store = store
        self.caller = caller or get_llm_adapter()

    async def run(
        self,
        csv_content: str,
        file_name: str = "upload.csv",
        model_key: str | None = None,
        session_id: str | None = None,
    ) -> AnalysisResult:
        model_key = model_key or settings.llm_default_model
        config = get_model_config(model_key)

        recorder = await TraceRecorder.create(
            self.store,
            model=model_key,
            temperature=config.temperature,
            session_id=session_id,
            file_name=file_name,
            file_hash=hash_content(csv_content),
        )
        spans = SpanTracker(recorder)

        try:
            await recorder.record(
                EventType.START, "analysis_start",
                input_data={"file": file_name, "size": len(csv_content)},
            )

            async with spans.span(EventType.PARSE, "csv_parse") as span:
                records = parse_csv(csv_content)
                span.output = {
                    "rows": len(records),
                    "columns": list(records[0].keys()) if records else [],
                    "sample": records[0] if records else None,
                }

            prompt = build_prompt(records)
            async with spans.span(EventType.LLM_CALL, "extract_kpis", {"prompt": prompt, "model": model_key}) as span:
                result = await self.caller.call(prompt, model_key, temperature=config.temperature)
                kpis = parse_kpi_content(result.content)
                span.output = kpis
                span.metadata = model_call_metadata(result)

            async with spans.span(
                EventType.VALIDATION, "validate_kpis", {k: kpis.get(k) for k in KPI_FIELDS},
            ) as span:
                check = check_ebitda(kpis)
                span.output = check
            valid = check["valid"]

            await recorder.record(
                EventType.OUTPUT, "report_generated", output_data={"kpis": kpis, "valid": valid},
            )

            rating = rate(result.latency_ms, result.cost, result.temperature, valid)
            await recorder.finalize(
                SessionStatus.COMPLETED,
                SessionAggregates(
                    kpis=kpis,
                    valid=valid,
                    cost=result.cost,
                    latency=result.latency_ms,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                    rating=rating,
                ),
            )
        except Exception as e:
            logger.error(f"Analysis {recorder.session_id} failed: {e}", exc_info=True)
            await self._fail(recorder, e)
            raise

        return AnalysisResult(session_id=recorder.session_id, kpis=kpis, valid=valid, rating=rating)

    async def _fail(self, recorder: TraceRecorder, exc: Exception):
        """Leave the partial trace inspectable and mark the session failed."""
        if not recorder.finalized:
            try:
                await recorder.record(
                    EventType.ERROR, "analysis_error",
                    output_data={"error": str(exc), "error_type": type(exc).__name__},
                )
            except TraceError as rec_err:
                logger.warning(f"Could not record error event for {recorder.session_id}: {rec_err}")
        try:
            await recorder.finalize(SessionStatus.FAILED)
        except TraceError as fin_err:
            logger.error(f"Could not mark session {recorder.session_id} failed: {fin_err}")
