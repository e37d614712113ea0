"""Database engine, base model and schema bootstrap for the SQL trace store."""

from __future__ import annotations

import logging
import os

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from kpitrace.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.database_url, echo=settings.debug)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def _ensure_sqlite_dir(url: str):
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or not parsed.database or parsed.database == ":memory:":
        return
    directory = os.path.dirname(parsed.database)
    if directory:
        os.makedirs(directory, exist_ok=True)


async def init_db(bind: AsyncEngine | None = None):
    """Create the trace tables if they are missing."""
    import kpitrace.models  # noqa: F401 – register all models

    bind = bind or engine
    _ensure_sqlite_dir(str(bind.url))
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Trace tables ready on {bind.url.render_as_string(hide_password=True)}")
