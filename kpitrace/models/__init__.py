from kpitrace.models.trace import TraceSession, TraceEvent

__all__ = [
    "TraceSession",
    "TraceEvent",
]
