"""Reconnecting RPC client for the session server.

The client keeps one websocket open through a supervisor task.  When the
connection drops it rejects every in-flight request with
``ConnectionLost`` and reconnects with exponential backoff; requests made
while disconnected wait (bounded by ``connect_timeout``) for the next
successful connection.

Server-pushed events are re-published on :attr:`SessionClient.wire`, the
same bus type the server uses internally::

    async with SessionClient("ws://localhost:3100") as client:
        events = client.wire.subscribe()
        await client.subscribe(session_id="build", replay=50)
        await client.create_session("build", cwd="/srv/app")
        result = await client.exec("build", "make")
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from typing import Any, Callable

import aiohttp
from aiohttp import WSMsgType
from tenacity import RetryCallState, wait_exponential

from termsessions.config import ClientConfig
from termsessions.errors import (
    ClientClosed,
    ConnectionLost,
    ConnectionTimeout,
    RemoteError,
    RequestTimeout,
)
from termsessions.server.protocol import Method, encode
from termsessions.session.wire import EventType, Wire, WireEvent

logger = logging.getLogger(__name__)

# Failures the supervisor retries; anything else is a bug and propagates.
_TRANSIENT = (aiohttp.ClientError, OSError, asyncio.TimeoutError)

_EVENT_TYPES = {t.value: t for t in EventType}


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


StateListener = Callable[[ConnectionState], None]


class SessionClient:
    """Websocket client with automatic reconnection and request correlation."""

    def __init__(
        self,
        url: str | None = None,
        config: ClientConfig | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        config = config or ClientConfig()
        if url is not None:
            config = config.model_copy(update={"url": url})
        self.config = config
        self.wire = Wire()

        self._http = http_session
        self._owns_http = http_session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[StateListener] = []
        self._pending: dict[str, tuple[str, asyncio.Future]] = {}
        self._connected = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._closed = False
        self._supervisor: asyncio.Task | None = None
        self._attempt = 0
        self._backoff = wait_exponential(
            multiplier=config.reconnect_base_delay,
            min=config.reconnect_base_delay,
            max=config.reconnect_max_delay,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    def reconnect_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect ``attempt`` (1-based).

        The first retry after a dropped connection waits the base delay;
        each consecutive failure doubles it, up to the configured cap.
        """
        # The wait strategy runs standalone: attempts span lost connections as
        # well as failed connects, and reset only once a connection is up.
        retry_state = RetryCallState(None, None, (), {})
        retry_state.attempt_number = attempt
        return self._backoff(retry_state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the connection supervisor without waiting for it to connect."""
        if self._closed:
            raise ClientClosed()
        if self._supervisor is not None:
            return
        if self._http is None:
            self._http = aiohttp.ClientSession()
        self._supervisor = asyncio.create_task(self._supervise())

    async def connect(self) -> None:
        """Start the client and wait until the first connection is up.

        Raises:
            ConnectionTimeout: not connected within ``connect_timeout``.
        """
        await self.start()
        await self._wait_connected()

    async def close(self) -> None:
        """Close for good: reject pending requests and stop reconnecting."""
        if self._closed:
            return
        self._closed = True
        self._closed_event.set()
        self._fail_pending(ClientClosed())

        if self._supervisor is not None:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Connection supervisor failed")
            self._supervisor = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        self._connected.clear()
        if self._owns_http and self._http is not None:
            await self._http.close()
        self._http = None

        self._set_state(ConnectionState.DISCONNECTED)
        self.wire.close()
        logger.info("Client closed")

    async def __aenter__(self) -> SessionClient:
        try:
            await self.connect()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Connection supervisor
    # ------------------------------------------------------------------

    async def _supervise(self) -> None:
        url = self.config.url
        while not self._closed:
            self._set_state(ConnectionState.CONNECTING)
            try:
                ws = await asyncio.wait_for(
                    self._open(url), self.config.connect_timeout
                )
            except _TRANSIENT as e:
                logger.debug("Connect to %s failed: %s", url, e)
            else:
                await self._run_connection(ws)
                if self._closed:
                    break
                logger.warning("Connection to %s lost", url)

            self._set_state(ConnectionState.DISCONNECTED)
            self._attempt += 1
            delay = self.reconnect_delay(self._attempt)
            self._set_state(ConnectionState.RECONNECTING)
            logger.debug("Reconnecting in %.1fs (attempt %d)", delay, self._attempt)
            await asyncio.sleep(delay)

    async def _open(self, url: str) -> aiohttp.ClientWebSocketResponse:
        return await self._http.ws_connect(url)

    async def _run_connection(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws
        self._attempt = 0
        self._set_state(ConnectionState.CONNECTED)
        self._connected.set()
        logger.info("Connected to %s", self.config.url)
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    try:
                        self._handle_message(msg.data)
                    except Exception:
                        logger.exception("Failed to handle message from server")
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Websocket error: %s", ws.exception())
                    break
        finally:
            self._ws = None
            self._connected.clear()
            self._fail_pending(ConnectionLost())
            if not ws.closed:
                await ws.close()

    async def _wait_connected(self) -> None:
        if self._connected.is_set():
            return
        waiters = [
            asyncio.ensure_future(self._connected.wait()),
            asyncio.ensure_future(self._closed_event.wait()),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.config.connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        if self._closed:
            raise ClientClosed()
        if not self._connected.is_set():
            raise ConnectionTimeout(self.config.connect_timeout)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _handle_message(self, data: str | bytes) -> None:
        try:
            message = json.loads(data)
        except ValueError:
            logger.warning("Dropping malformed message from server")
            return
        if not isinstance(message, dict):
            return

        if message.get("type") == "event":
            name = message.get("event")
            event_type = _EVENT_TYPES.get(name) if isinstance(name, str) else None
            if event_type is None:
                logger.debug("Ignoring unknown event %r", name)
                return
            payload = message.get("payload") or {}
            session_id = message.get("sessionId")
            if not isinstance(payload, dict) or (
                session_id is not None and not isinstance(session_id, str)
            ):
                logger.warning("Dropping malformed %s event from server", name)
                return
            self.wire.send(
                WireEvent(type=event_type, data=payload, session_id=session_id)
            )
            return

        entry = self._pending.pop(str(message.get("id")), None)
        if entry is None:
            logger.debug("Response for unknown request %r", message.get("id"))
            return
        method, future = entry
        if future.done():
            return
        if "error" in message:
            future.set_exception(RemoteError(method, str(message["error"])))
        else:
            future.set_result(message.get("result"))

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for _, future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def request(self, method: Method | str, params: dict[str, Any] | None = None) -> Any:
        """Send one RPC request and return its result.

        Raises:
            ClientClosed: the client was closed before or during the call.
            ConnectionTimeout: no connection came up within ``connect_timeout``.
            ConnectionLost: the connection dropped before the response arrived.
            RequestTimeout: no response within ``request_timeout``.
            RemoteError: the server answered with an error.
        """
        if self._closed:
            raise ClientClosed()
        if self._supervisor is None:
            await self.start()
        await self._wait_connected()

        ws = self._ws
        if ws is None or ws.closed:
            raise ConnectionLost()
        method = str(method)
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        try:
            await ws.send_str(
                encode({"id": request_id, "method": method, "params": params or {}})
            )
        except (ConnectionResetError, RuntimeError) as e:
            self._pending.pop(request_id, None)
            raise ConnectionLost(f"Connection lost: {e}") from None

        try:
            return await asyncio.wait_for(future, self.config.request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(method, self.config.request_timeout) from None
        finally:
            self._pending.pop(request_id, None)

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    async def create_session(
        self,
        session_id: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        shell: str | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            Method.SESSION_CREATE,
            _compact(id=session_id, cwd=cwd, env=env, shell=shell),
        )

    async def exec(
        self, session_id: str, command: str, timeout: float | None = None
    ) -> dict[str, Any]:
        return await self.request(
            Method.SESSION_EXEC,
            _compact(sessionId=session_id, command=command, timeout=timeout),
        )

    async def get_output(
        self, session_id: str, lines: int | None = None, raw: bool = False
    ) -> list[str]:
        return await self.request(
            Method.SESSION_OUTPUT, _compact(sessionId=session_id, lines=lines, raw=raw)
        )

    async def search(
        self, session_id: str, pattern: str, context_lines: int = 0
    ) -> list[dict[str, Any]]:
        return await self.request(
            Method.SESSION_SEARCH,
            {"sessionId": session_id, "pattern": pattern, "contextLines": context_lines},
        )

    async def list_sessions(self) -> list[dict[str, Any]]:
        return await self.request(Method.SESSION_LIST)

    async def kill(self, session_id: str, graceful: bool = True) -> dict[str, Any]:
        return await self.request(
            Method.SESSION_KILL, {"sessionId": session_id, "graceful": graceful}
        )

    async def kill_all(self, graceful: bool = True) -> dict[str, Any]:
        return await self.request(Method.SESSION_KILL_ALL, {"graceful": graceful})

    async def send_input(
        self, session_id: str, text: str, append_newline: bool = True
    ) -> dict[str, Any]:
        return await self.request(
            Method.SESSION_INPUT,
            {"sessionId": session_id, "input": text, "appendNewline": append_newline},
        )

    async def send_signal(self, session_id: str, signal: str = "SIGINT") -> dict[str, Any]:
        return await self.request(
            Method.SESSION_SIGNAL, {"sessionId": session_id, "signal": signal}
        )

    async def get_env(self, session_id: str) -> dict[str, str]:
        return await self.request(Method.SESSION_ENV, {"sessionId": session_id})

    async def get_cwd(self, session_id: str) -> str:
        return await self.request(Method.SESSION_PWD, {"sessionId": session_id})

    async def resize(self, session_id: str, cols: int, rows: int) -> dict[str, Any]:
        return await self.request(
            Method.SESSION_RESIZE, {"sessionId": session_id, "cols": cols, "rows": rows}
        )

    async def start_service(
        self,
        name: str,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        ready_patterns: list[str] | None = None,
        error_patterns: list[str] | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            Method.SERVICE_START,
            _compact(
                name=name,
                command=command,
                cwd=cwd,
                env=env,
                readyPatterns=ready_patterns,
                errorPatterns=error_patterns,
            ),
        )

    async def subscribe(
        self,
        session_id: str | None = None,
        sessions: list[str] | None = None,
        all: bool = False,
        replay: int | None = None,
    ) -> dict[str, Any]:
        """Subscribe this connection to session events.

        Subscriptions live on the server side of one connection; after a
        reconnect they must be requested again.
        """
        return await self.request(
            Method.SESSION_SUBSCRIBE,
            _compact(sessionId=session_id, sessions=sessions, all=all or None, replay=replay),
        )

    async def unsubscribe(
        self,
        session_id: str | None = None,
        sessions: list[str] | None = None,
        all: bool = False,
    ) -> dict[str, Any]:
        return await self.request(
            Method.SESSION_UNSUBSCRIBE,
            _compact(sessionId=session_id, sessions=sessions, all=all or None),
        )


def _compact(**params: Any) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}
