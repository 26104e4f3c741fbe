"""Per-call relay sessions"""
from .observer import CompositeObserver, LoggingObserver, SessionObserver
from .relay import SessionRelay
from .state import SessionContext, SessionRegistry, SessionState

__all__ = [
    "CompositeObserver",
    "LoggingObserver",
    "SessionObserver",
    "SessionRelay",
    "SessionContext",
    "SessionRegistry",
    "SessionState",
]
