"""Trace stores — durable homes for sessions and their event logs.

Provides:
- TraceStore: the async persistence contract used by the recorder and replay engine.
- SqlTraceStore: SQLAlchemy-backed store (trace_sessions / trace_events tables).
- JsonlTraceStore: file-backed store, one append-only ``sessions/<id>.jsonl`` per
  session plus an ``index.json`` of session summaries.
- get_trace_store(): process-wide store selected by ``settings.trace_backend``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kpitrace.config import settings
from kpitrace.engine.errors import NotFound, WriteFailure, WriterConflict
from kpitrace.models.trace import TraceEvent, TraceSession
from kpitrace.schemas.trace import (
    EventMetadata,
    EventRecord,
    Rating,
    SessionAggregates,
    SessionRecord,
    SessionStatus,
)

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TraceStore(ABC):
    """Persistence contract for sessions and their ordered event logs.

    The store also tracks which sessions currently have a recorder attached,
    so a session log never gets two concurrent writers.
    """

    def __init__(self):
        self._writers: set[str] = set()
        self._writers_lock = threading.Lock()

    def claim_writer(self, session_id: str):
        with self._writers_lock:
            if session_id in self._writers:
                raise WriterConflict(session_id)
            self._writers.add(session_id)

    def release_writer(self, session_id: str):
        with self._writers_lock:
            self._writers.discard(session_id)

    @abstractmethod
    async def create_session(self, session: SessionRecord) -> SessionRecord: ...

    @abstractmethod
    async def update_session(self, session_id: str, **fields: Any) -> None: ...

    @abstractmethod
    async def finalize_session(
        self, session_id: str, status: SessionStatus, aggregates: SessionAggregates,
    ) -> bool:
        """Move a running session to a terminal status.

        Returns False (and changes nothing) if the session is already terminal.
        """

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionRecord | None: ...

    @abstractmethod
    async def get_sessions(self, file_hash: str | None = None) -> list[SessionRecord]:
        """All sessions, newest first, optionally only those over one input file."""

    @abstractmethod
    async def create_event(self, event: EventRecord, seq: int) -> None: ...

    @abstractmethod
    async def get_events(self, session_id: str) -> list[EventRecord]:
        """Events of one session in append order."""

    async def load_session(self, session_id: str) -> tuple[SessionRecord, list[EventRecord]]:
        session = await self.get_session(session_id)
        if session is None:
            raise NotFound("Session", session_id)
        return session, await self.get_events(session_id)


# ── SQL store ───────────────────────────────────────────────────


def _session_from_row(row: TraceSession) -> SessionRecord:
    return SessionRecord(
        session_id=row.id,
        created_at=_as_utc(row.created_at),
        status=SessionStatus(row.status),
        model=row.model,
        temperature=row.temperature,
        parent_session_id=row.parent_session_id,
        file_name=row.file_name,
        file_hash=row.file_hash,
        kpis=row.kpis,
        valid=row.valid,
        cost=row.cost,
        latency=row.latency,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        rating=Rating.model_validate(row.rating) if row.rating else None,
        event_count=row.event_count or 0,
    )


def _event_from_row(row: TraceEvent) -> EventRecord:
    return EventRecord(
        session_id=row.session_id,
        event_id=row.id,
        parent_id=row.parent_id,
        timestamp=_as_utc(row.timestamp),
        type=row.event_type,
        name=row.name,
        input=row.input,
        output=row.output,
        metadata=EventMetadata.model_validate(row.metadata_ or {}),
    )


def _aggregate_columns(aggregates: SessionAggregates) -> dict[str, Any]:
    values = aggregates.model_dump(exclude={"rating"})
    values["rating"] = (
        aggregates.rating.model_dump(mode="json", by_alias=True) if aggregates.rating else None
    )
    return values


class SqlTraceStore(TraceStore):
    """Store sessions and events through SQLAlchemy's async ORM."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__()
        self._session_factory = session_factory

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        row = TraceSession(
            id=session.session_id,
            created_at=session.created_at,
            status=session.status.value,
            model=session.model,
            temperature=session.temperature,
            parent_session_id=session.parent_session_id,
            file_name=session.file_name,
            file_hash=session.file_hash,
            event_count=session.event_count,
        )
        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to create session {session.session_id}: {e}")
            raise WriteFailure(session.session_id, str(e)) from e
        return session

    async def update_session(self, session_id: str, **fields: Any) -> None:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(TraceSession).where(TraceSession.id == session_id).values(**fields)
                )
                updated = result.rowcount
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update session {session_id}: {e}")
            raise WriteFailure(session_id, str(e)) from e
        if updated == 0:
            raise NotFound("Session", session_id)

    async def finalize_session(
        self, session_id: str, status: SessionStatus, aggregates: SessionAggregates,
    ) -> bool:
        # Compare-and-set on status: only a running session may transition
        stmt = (
            update(TraceSession)
            .where(TraceSession.id == session_id, TraceSession.status == SessionStatus.RUNNING.value)
            .values(status=status.value, **_aggregate_columns(aggregates))
        )
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                changed = result.rowcount == 1
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to finalize session {session_id}: {e}")
            raise WriteFailure(session_id, str(e)) from e
        return changed

    async def get_session(self, session_id: str) -> SessionRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(select(TraceSession).where(TraceSession.id == session_id))
            row = result.scalar_one_or_none()
        return _session_from_row(row) if row else None

    async def get_sessions(self, file_hash: str | None = None) -> list[SessionRecord]:
        stmt = select(TraceSession)
        if file_hash:
            stmt = stmt.where(TraceSession.file_hash == file_hash)
        stmt = stmt.order_by(TraceSession.created_at.desc())
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            rows = result.scalars().all()
        return [_session_from_row(r) for r in rows]

    async def create_event(self, event: EventRecord, seq: int) -> None:
        row = TraceEvent(
            id=event.event_id,
            session_id=event.session_id,
            seq=seq,
            parent_id=event.parent_id,
            timestamp=event.timestamp,
            event_type=event.type.value,
            name=event.name,
            input=event.input,
            output=event.output,
            metadata_=event.metadata.as_dict(),
        )
        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error(f"Failed to append event {event.event_id} to session {event.session_id}: {e}")
            raise WriteFailure(event.session_id, str(e)) from e

    async def get_events(self, session_id: str) -> list[EventRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(TraceEvent)
                .where(TraceEvent.session_id == session_id)
                .order_by(TraceEvent.seq)
            )
            rows = result.scalars().all()
        return [_event_from_row(r) for r in rows]


# ── JSONL store ─────────────────────────────────────────────────


class JsonlTraceStore(TraceStore):
    """File-backed store: newline-delimited JSON events plus a session index."""

    def __init__(self, data_dir: str | os.PathLike):
        super().__init__()
        self.root = Path(data_dir)
        self.sessions_dir = self.root / "sessions"
        self.index_path = self.root / "index.json"
        # Serializes read-modify-write cycles on index.json
        self._index_lock = asyncio.Lock()

    def _log_path(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id):
            raise NotFound("Session", session_id)
        return self.sessions_dir / f"{session_id}.jsonl"

    # ── index helpers (run in worker threads) ──

    def _read_index(self) -> list[dict]:
        if not self.index_path.exists():
            return []
        content = self.index_path.read_text(encoding="utf-8")
        return json.loads(content) if content.strip() else []

    def _write_index(self, entries: list[dict]):
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = self.index_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.index_path)

    @staticmethod
    def _dump_session(session: SessionRecord) -> dict:
        return session.model_dump(mode="json", by_alias=True)

    async def _mutate_index(self, session_id: str, mutate) -> Any:
        """Apply ``mutate(entries)`` to the index under the lock and persist it."""
        async with self._index_lock:
            try:
                entries = await asyncio.to_thread(self._read_index)
                result = mutate(entries)
                await asyncio.to_thread(self._write_index, entries)
            except (OSError, ValueError) as e:
                logger.error(f"Index write failed for session {session_id}: {e}")
                raise WriteFailure(session_id, str(e)) from e
        return result

    @staticmethod
    def _find(entries: list[dict], session_id: str) -> int:
        for i, entry in enumerate(entries):
            if entry.get("sessionId") == session_id:
                return i
        raise NotFound("Session", session_id)

    # ── sessions ──

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        path = self._log_path(session.session_id)

        def _add(entries: list[dict]):
            if any(e.get("sessionId") == session.session_id for e in entries):
                raise ValueError("session already exists")
            entries.append(self._dump_session(session))

        await self._mutate_index(session.session_id, _add)
        try:
            await asyncio.to_thread(self._touch, path)
        except OSError as e:
            raise WriteFailure(session.session_id, str(e)) from e
        return session

    def _touch(self, path: Path):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)

    async def update_session(self, session_id: str, **fields: Any) -> None:
        def _update(entries: list[dict]):
            i = self._find(entries, session_id)
            current = SessionRecord.model_validate(entries[i])
            entries[i] = self._dump_session(current.model_copy(update=fields))

        await self._mutate_index(session_id, _update)

    async def finalize_session(
        self, session_id: str, status: SessionStatus, aggregates: SessionAggregates,
    ) -> bool:
        def _finalize(entries: list[dict]) -> bool:
            i = self._find(entries, session_id)
            current = SessionRecord.model_validate(entries[i])
            if current.is_terminal:
                return False
            updated = current.model_copy(update={"status": status, **dict(aggregates)})
            entries[i] = self._dump_session(updated)
            return True

        return await self._mutate_index(session_id, _finalize)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        entries = await asyncio.to_thread(self._read_index)
        for entry in entries:
            if entry.get("sessionId") == session_id:
                return SessionRecord.model_validate(entry)
        return None

    async def get_sessions(self, file_hash: str | None = None) -> list[SessionRecord]:
        entries = await asyncio.to_thread(self._read_index)
        sessions = [SessionRecord.model_validate(e) for e in entries]
        if file_hash:
            sessions = [s for s in sessions if s.file_hash == file_hash]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    # ── events ──

    def _append_line(self, path: Path, line: str):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8", newline="\n") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def create_event(self, event: EventRecord, seq: int) -> None:
        # File order is the event order; seq is implied by the line position
        path = self._log_path(event.session_id)
        try:
            line = event.to_json_line()
            await asyncio.to_thread(self._append_line, path, line)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to append event {event.event_id} to {path}: {e}")
            raise WriteFailure(event.session_id, str(e)) from e

    def _read_lines(self, path: Path) -> list[str]:
        if not path.exists():
            return []
        # Only "\n" ends a record; payloads may hold unescaped U+2028, U+2029 or U+0085
        with open(path, encoding="utf-8", newline="\n") as f:
            return [line for line in f.read().split("\n") if line.strip()]

    async def get_events(self, session_id: str) -> list[EventRecord]:
        lines = await asyncio.to_thread(self._read_lines, self._log_path(session_id))
        return [EventRecord.from_json_line(line) for line in lines]


# ── Process-wide store ──────────────────────────────────────────

_default_store: TraceStore | None = None
_store_lock = threading.Lock()


def get_trace_store() -> TraceStore:
    global _default_store
    if _default_store is None:
        with _store_lock:
            if _default_store is None:
                if settings.trace_backend == "jsonl":
                    _default_store = JsonlTraceStore(settings.data_dir)
                else:
                    from kpitrace.db import async_session
                    _default_store = SqlTraceStore(async_session)
    return _default_store
