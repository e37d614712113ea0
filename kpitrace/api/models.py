"""Model catalog API."""

from __future__ import annotations

from fastapi import APIRouter

from kpitrace.engine.llm_adapter import MODELS
from kpitrace.schemas.analysis import ModelInfo

router = APIRouter()


@router.get("/", response_model=list[ModelInfo])
async def list_models():
    return [
        ModelInfo(
            key=key,
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            cost_per_1k_input=cfg.cost_per_1k_input,
            cost_per_1k_output=cfg.cost_per_1k_output,
        )
        for key, cfg in MODELS.items()
    ]
