"""Wire protocol — decouples session lifecycle from its observers.

The session manager emits typed events onto the wire.  The subscription
router (server side) and the reconnecting client (client side) both read
them from a subscriber queue, so neither ever iterates a listener list
that is being mutated under it.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    SESSION_CREATED = "session:created"
    SESSION_OUTPUT = "session:output"
    SESSION_EXIT = "session:exit"
    SESSION_INPUT = "session:input"
    SESSION_SIGNAL = "session:signal"
    COMMAND_START = "command:start"
    COMMAND_FINISHED = "command:finished"


@dataclass
class WireEvent:
    """An event on the wire.

    ``session_id`` tags the event for routing.  Untagged events are global
    and reach every observer.
    """

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


class Wire:
    """Async message bus: session manager -> subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def emit(
        self, event_type: EventType, session_id: str | None = None, **data: Any
    ) -> None:
        """Build and send an event; ``session_id`` is copied into the payload."""
        if session_id is not None:
            data = {"sessionId": session_id, **data}
        self.send(WireEvent(type=event_type, data=data, session_id=session_id))

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
