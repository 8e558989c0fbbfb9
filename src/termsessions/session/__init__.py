"""Session layer: registry, manager and the event wire."""

from termsessions.session.manager import SessionManager
from termsessions.session.models import (
    CommandResult,
    SearchResult,
    ServiceResult,
    Session,
    SessionInfo,
    SessionStatus,
)
from termsessions.session.registry import SessionRegistry
from termsessions.session.wire import EventType, Wire, WireEvent

__all__ = [
    "CommandResult",
    "EventType",
    "SearchResult",
    "ServiceResult",
    "Session",
    "SessionInfo",
    "SessionManager",
    "SessionRegistry",
    "SessionStatus",
    "Wire",
    "WireEvent",
]
