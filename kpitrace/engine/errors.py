"""Error taxonomy for tracing, replay and model calls."""

from __future__ import annotations

from enum import Enum


class TraceError(Exception):
    """Base class for every error raised by the trace core."""


class NotFound(TraceError):
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


class WriteFailure(TraceError):
    """A durable append or session update did not complete."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(f"Write failed for session '{session_id}': {message}")


class SessionClosed(TraceError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' is finalized; its log is immutable")


class WriterConflict(TraceError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' already has an active recorder")


class SessionConfigError(TraceError):
    """Invalid run configuration, e.g. an unset temperature or unknown model key."""


class StaleSpan(TraceError):
    def __init__(self, span_id: str):
        self.span_id = span_id
        super().__init__(f"Span '{span_id}' is not open (already closed or unknown)")


class ModelCallErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    INPUT_TOO_LARGE = "input_too_large"
    UNKNOWN = "unknown"


class ModelCallFailure(TraceError):
    def __init__(self, kind: ModelCallErrorKind, message: str):
        self.kind = kind
        super().__init__(f"Model call failed ({kind.value}): {message}")
