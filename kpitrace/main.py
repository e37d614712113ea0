"""FastAPI application entry point."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kpitrace.config import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if settings.trace_backend == "jsonl":
        os.makedirs(os.path.join(settings.data_dir, "sessions"), exist_ok=True)
        yield
        return

    from kpitrace.db import engine, init_db

    await init_db(engine)
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(",") if settings.cors_origins != "*" else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register routers ────────────────────────────────
from kpitrace.api.sessions import router as sessions_router
from kpitrace.api.models import router as models_router

prefix = settings.api_prefix

app.include_router(sessions_router, prefix=prefix + "/sessions", tags=["sessions"])
app.include_router(models_router, prefix=prefix + "/models", tags=["models"])


@app.get("/health")
async def health():
    return {"status": "ok", "version": "0.1.0"}
