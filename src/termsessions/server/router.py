"""Subscription router — per-connection subscription state and event fan-out.

One dispatcher task reads the manager's Wire and copies each event into
the bounded outbound queue of every interested connection.  Responses go
through the same queue, so a connection sees messages in exactly the
order they were produced for it.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from termsessions.server.protocol import (
    SubscribeParams,
    UnsubscribeParams,
    encode,
    event_envelope,
)
from termsessions.session.manager import SessionManager
from termsessions.session.models import utcnow
from termsessions.session.wire import EventType, WireEvent

logger = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


@dataclass
class SubscriptionState:
    """What one connection wants to hear about."""

    session_ids: set[str] = field(default_factory=set)
    subscribe_all: bool = False
    replay_lines: int = 0

    def matches(self, session_id: str | None) -> bool:
        if session_id is None:
            return True
        return self.subscribe_all or session_id in self.session_ids

    def ack(self) -> dict[str, Any]:
        return {"sessionIds": sorted(self.session_ids), "all": self.subscribe_all}


class Connection:
    """One client connection: its subscription state and outbound channel.

    ``on_overflow`` is called once if the outbound queue fills up; the
    transport uses it to drop a consumer that cannot keep up.
    """

    def __init__(
        self,
        maxsize: int = 10_000,
        on_overflow: Callable[[Connection], None] | None = None,
    ) -> None:
        self.id = next(_connection_ids)
        self.state = SubscriptionState()
        self.outbound: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._on_overflow = on_overflow
        self.overflowed = False
        self.closed = False

    def push(self, message: dict[str, Any] | str) -> bool:
        """Queue a message for delivery. Returns False if it was dropped."""
        if self.closed or self.overflowed:
            return False
        frame = message if isinstance(message, str) else encode(message)
        try:
            self.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            self.overflowed = True
            logger.warning(
                "Connection %d outbound queue full (%d), dropping connection",
                self.id,
                self.outbound.maxsize,
            )
            if self._on_overflow is not None:
                self._on_overflow(self)
            return False
        return True

    def close(self) -> None:
        """Stop accepting messages and wake the writer."""
        if self.closed:
            return
        self.closed = True
        # Drop anything still queued so the sentinel always fits.
        while not self.outbound.empty():
            self.outbound.get_nowait()
        self.outbound.put_nowait(None)


class SubscriptionRouter:
    """Routes session events to the connections subscribed to them.

    Fan-out rule: an event tagged with a session id reaches every
    connection subscribed to all sessions or to that id.  Untagged events
    reach every connection.
    """

    def __init__(self, manager: SessionManager) -> None:
        self._manager = manager
        self._connections: dict[int, Connection] = {}
        self._queue: asyncio.Queue[WireEvent | None] | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._queue = self._manager.wire.subscribe()
        self._task = asyncio.create_task(self._dispatch_loop())

    async def stop(self) -> None:
        if self._queue is not None:
            self._manager.wire.unsubscribe(self._queue)
            self._queue = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for conn in list(self._connections.values()):
            conn.close()
        self._connections.clear()

    async def _dispatch_loop(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            if event is None:
                break
            self.publish(event)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register(self, conn: Connection) -> None:
        self._connections[conn.id] = conn
        logger.debug("Connection %d registered (%d open)", conn.id, len(self))

    def unregister(self, conn: Connection) -> None:
        """Forget a connection and its subscription state."""
        self._connections.pop(conn.id, None)
        conn.close()
        logger.debug("Connection %d unregistered (%d open)", conn.id, len(self))

    def __len__(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def publish(self, event: WireEvent) -> int:
        """Push ``event`` to every interested connection. Returns the count."""
        frame: str | None = None
        delivered = 0
        for conn in list(self._connections.values()):
            if not conn.state.matches(event.session_id):
                continue
            if frame is None:
                frame = encode(event_envelope(event))
            if conn.push(frame):
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Subscribe / unsubscribe
    # ------------------------------------------------------------------

    def subscribe(self, conn: Connection, params: SubscribeParams) -> dict[str, Any]:
        """Merge targets into the connection's state and backfill history.

        Backfilled lines are queued before this returns, so they precede
        the acknowledgment on the connection.
        """
        state = conn.state
        if params.wants_all():
            state.subscribe_all = True
        targets = params.targets()
        state.session_ids.update(targets)

        replay = params.replay if params.replay is not None else state.replay_lines
        if params.replay is not None:
            state.replay_lines = params.replay

        logger.debug(
            "Connection %d subscribe sessions=%s all=%s replay=%d",
            conn.id,
            sorted(state.session_ids),
            state.subscribe_all,
            replay,
        )
        if replay > 0:
            if state.subscribe_all:
                to_replay = [info.id for info in self._manager.list_sessions()]
            else:
                to_replay = list(dict.fromkeys(targets))
            for session_id in to_replay:
                self._backfill(conn, session_id, replay)
        return state.ack()

    def unsubscribe(self, conn: Connection, params: UnsubscribeParams) -> dict[str, Any]:
        state = conn.state
        if params.wants_all():
            state.subscribe_all = False
        for session_id in params.targets():
            state.session_ids.discard(session_id)
        return state.ack()

    def _backfill(self, conn: Connection, session_id: str, lines: int) -> None:
        if session_id not in self._manager.registry:
            return
        raw_lines = self._manager.get_output(session_id, lines, raw=True)
        clean_lines = self._manager.get_output(session_id, lines)
        logger.debug(
            "Backfill %d lines of %s to connection %d", len(clean_lines), session_id, conn.id
        )
        for raw, clean in zip(raw_lines, clean_lines):
            event = WireEvent(
                type=EventType.SESSION_OUTPUT,
                session_id=session_id,
                data={
                    "sessionId": session_id,
                    "chunk": f"{raw}\n",
                    "lines": [clean],
                    "timestamp": utcnow(),
                },
            )
            conn.push(event_envelope(event))
