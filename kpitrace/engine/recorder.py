"""Trace recorder — appends events to one session's log and keeps its summary in sync."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from kpitrace.engine.errors import SessionClosed, SessionConfigError
from kpitrace.engine.trace_store import TraceStore
from kpitrace.schemas.trace import (
    EventMetadata,
    EventRecord,
    EventType,
    SessionAggregates,
    SessionRecord,
    SessionStatus,
)

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return str(uuid.uuid4())


class TraceRecorder:
    """Single writer of one session's event log.

    Appends are serialized by a per-recorder lock, so events land in the log in
    the order ``record`` was called even when several tasks share a recorder.
    Timestamps are stamped here and never go backwards within a session.
    """

    def __init__(self, store: TraceStore, session: SessionRecord):
        self.store = store
        self.session = session
        self._lock = asyncio.Lock()
        self._events: list[EventRecord] = []
        self._last_timestamp: datetime | None = None
        self._finalized = False

    @classmethod
    async def create(
        cls,
        store: TraceStore,
        *,
        model: str,
        temperature: float | None,
        session_id: str | None = None,
        parent_session_id: str | None = None,
        file_name: str | None = None,
        file_hash: str | None = None,
    ) -> TraceRecorder:
        """Create a running session in the store and bind a recorder to it."""
        if temperature is None:
            raise SessionConfigError(f"Temperature is not set for model '{model}'")

        session = SessionRecord(
            session_id=session_id or new_session_id(),
            created_at=datetime.now(timezone.utc),
            status=SessionStatus.RUNNING,
            model=model,
            temperature=temperature,
            parent_session_id=parent_session_id,
            file_name=file_name,
            file_hash=file_hash,
        )
        store.claim_writer(session.session_id)
        try:
            await store.create_session(session)
        except Exception:
            store.release_writer(session.session_id)
            raise
        return cls(store, session)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def events(self) -> list[EventRecord]:
        """Events durably written so far, in append order."""
        return list(self._events)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def get_event(self, event_id: str) -> EventRecord | None:
        for event in self._events:
            if event.event_id == event_id:
                return event
        return None

    def _stamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    async def record(
        self,
        event_type: EventType | str,
        name: str,
        *,
        input_data: Any = None,
        output_data: Any = None,
        metadata: EventMetadata | dict[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> str:
        """Append one event and return its id.

        Raises WriteFailure if the store rejects the append; the event is then
        not part of the session.
        """
        if isinstance(metadata, dict):
            metadata = EventMetadata.model_validate(metadata)

        async with self._lock:
            if self._finalized:
                raise SessionClosed(self.session_id)

            event = EventRecord(
                session_id=self.session_id,
                event_id=str(uuid.uuid4()),
                parent_id=parent_id,
                timestamp=self._stamp(),
                type=EventType(event_type),
                name=name,
                input=input_data,
                output=output_data,
                metadata=metadata or EventMetadata(),
            )
            seq = len(self._events)
            await self.store.create_event(event, seq)
            self._events.append(event)

            self.session.event_count = len(self._events)
            await self.store.update_session(self.session_id, event_count=self.session.event_count)

        return event.event_id

    async def finalize(
        self,
        status: SessionStatus | str,
        aggregates: SessionAggregates | None = None,
    ) -> bool:
        """Move the session to a terminal status and freeze its aggregates.

        Returns True if this call made the transition. A second call leaves the
        first terminal status in place.
        """
        status = SessionStatus(status)
        if status == SessionStatus.RUNNING:
            raise ValueError("finalize requires a terminal status")
        aggregates = aggregates or SessionAggregates()

        async with self._lock:
            if self._finalized:
                logger.debug(
                    f"Session {self.session_id} already finalized as "
                    f"{self.session.status.value}; ignoring {status.value}"
                )
                return False

            # WriteFailure propagates; the session stays running and may be finalized again
            changed = await self.store.finalize_session(self.session_id, status, aggregates)
            self._finalized = True
            self.store.release_writer(self.session_id)

            if not changed:
                logger.debug(f"Session {self.session_id} was already terminal in the store")
                return False

            self.session = self.session.model_copy(update={"status": status, **dict(aggregates)})
            return True
