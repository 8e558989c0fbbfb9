"""Session API server — websocket RPC and health check over aiohttp.

Each websocket connection gets a writer task that drains its outbound
queue, and each request runs in its own task so a slow ``session.exec``
never blocks other requests on the same connection.  Subscription
requests are handled inline by the reader so their backfill is queued
before the acknowledgment.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from aiohttp import WSMsgType, web

from termsessions.config import ServerConfig
from termsessions.errors import ProtocolError, TermSessionsError
from termsessions.server import protocol
from termsessions.server.protocol import Method, RpcParams
from termsessions.server.router import Connection, SubscriptionRouter
from termsessions.session.manager import SessionManager

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]

_OK = {"success": True}


class SessionServer:
    """Owns the session manager, the subscription router and the HTTP app."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        manager: SessionManager | None = None,
    ) -> None:
        self.config = config or ServerConfig()
        self.manager = manager or SessionManager(self.config)
        self.router = SubscriptionRouter(self.manager)
        self._handlers: dict[Method, Handler] = self._build_handlers()
        self._runner: web.AppRunner | None = None
        self._port: int | None = None
        self._request_tasks: set[asyncio.Task] = set()

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.router.add_get("/health", self._handle_health)
        self._app.router.add_get("/", self._handle_websocket)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int | None:
        """The bound port, available once :meth:`start` returns."""
        return self._port

    @property
    def url(self) -> str:
        return f"ws://{self.config.host}:{self._port or self.config.port}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind the listener. A configured port of 0 picks a free port."""
        await self.router.start()
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()
        self._runner = runner
        self._port = _resolve_port(runner) or self.config.port
        logger.info("Session server listening on %s:%d", self.config.host, self._port)

    async def stop(self) -> None:
        """Kill all sessions, close every connection and release the port."""
        logger.info("Session server shutting down")
        await self.manager.stop()
        await self.router.stop()
        for task in list(self._request_tasks):
            task.cancel()
        if self._request_tasks:
            await asyncio.gather(*self._request_tasks, return_exceptions=True)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @web.middleware
    async def _request_logging_middleware(
        self, request: web.Request, handler
    ) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", uuid.uuid4().hex[:8])
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "sessions": len(self.manager)})

    # ------------------------------------------------------------------
    # Websocket transport
    # ------------------------------------------------------------------

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        conn = Connection(
            maxsize=self.config.outbound_queue_size, on_overflow=_drop_connection
        )
        self.router.register(conn)
        writer = asyncio.create_task(self._write_loop(conn, ws))
        logger.info("Client connected: connection %d from %s", conn.id, request.remote)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._on_message(conn, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    self._on_message(conn, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "Connection %d error: %s", conn.id, ws.exception()
                    )
        finally:
            self.router.unregister(conn)
            await writer
            logger.info("Client disconnected: connection %d", conn.id)
        return ws

    async def _write_loop(self, conn: Connection, ws: web.WebSocketResponse) -> None:
        try:
            while True:
                frame = await conn.outbound.get()
                if frame is None:
                    break
                await ws.send_str(frame)
        except (ConnectionResetError, RuntimeError) as e:
            logger.debug("Connection %d write failed: %s", conn.id, e)
        finally:
            conn.close()
            if not ws.closed:
                await ws.close()

    def _on_message(self, conn: Connection, data: str | bytes) -> None:
        try:
            request = protocol.decode_request(data)
        except ProtocolError as e:
            logger.warning("Connection %d sent a malformed message: %s", conn.id, e)
            conn.push(protocol.error_response("error", str(e)))
            return
        try:
            method, params = protocol.resolve(request)
        except ProtocolError as e:
            conn.push(protocol.error_response(request.id, str(e)))
            return

        logger.debug("Connection %d -> %s (id=%s)", conn.id, method, request.id)
        if method is Method.SESSION_SUBSCRIBE:
            conn.push(protocol.response(request.id, self.router.subscribe(conn, params)))
            return
        if method is Method.SESSION_UNSUBSCRIBE:
            conn.push(protocol.response(request.id, self.router.unsubscribe(conn, params)))
            return

        task = asyncio.create_task(self._run_request(conn, request.id, method, params))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)

    async def _run_request(
        self, conn: Connection, request_id: str | int, method: Method, params: RpcParams
    ) -> None:
        try:
            result = await self.dispatch(method, params)
        except TermSessionsError as e:
            logger.debug("%s (id=%s) failed: %s", method, request_id, e)
            conn.push(protocol.error_response(request_id, str(e)))
        except Exception as e:
            logger.exception("Unexpected error handling %s (id=%s)", method, request_id)
            conn.push(protocol.error_response(request_id, str(e) or type(e).__name__))
        else:
            conn.push(protocol.response(request_id, result))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, method: Method, params: RpcParams) -> Any:
        """Run one RPC method and return its JSON-ready result."""
        handler = self._handlers.get(method)
        if handler is None:
            raise ProtocolError(f"Unknown method: {method}")
        return await handler(params)

    def _build_handlers(self) -> dict[Method, Handler]:
        return {
            Method.SESSION_CREATE: self._create,
            Method.SESSION_EXEC: self._exec,
            Method.SESSION_OUTPUT: self._output,
            Method.SESSION_SEARCH: self._search,
            Method.SESSION_LIST: self._list,
            Method.SESSION_KILL: self._kill,
            Method.SESSION_KILL_ALL: self._kill_all,
            Method.SESSION_INPUT: self._input,
            Method.SESSION_SIGNAL: self._signal,
            Method.SESSION_ENV: self._env,
            Method.SESSION_PWD: self._pwd,
            Method.SESSION_RESIZE: self._resize,
            Method.SERVICE_START: self._service_start,
        }

    async def _create(self, params: protocol.CreateParams) -> dict:
        info = await self.manager.create_session(
            params.id, cwd=params.cwd, env=params.env, shell=params.shell
        )
        return info.to_wire()

    async def _exec(self, params: protocol.ExecParams) -> dict:
        result = await self.manager.exec_command(
            params.session_id, params.command, timeout=params.timeout
        )
        return result.to_wire()

    async def _output(self, params: protocol.OutputParams) -> list[str]:
        return self.manager.get_output(params.session_id, params.lines, raw=params.raw)

    async def _search(self, params: protocol.SearchParams) -> list[dict]:
        matches = self.manager.search_logs(
            params.session_id,
            params.pattern,
            context_lines=params.context_lines,
            limit=params.limit,
        )
        return [m.to_wire() for m in matches]

    async def _list(self, params: protocol.EmptyParams) -> list[dict]:
        return [info.to_wire() for info in self.manager.list_sessions()]

    async def _kill(self, params: protocol.KillParams) -> dict:
        await self.manager.kill_session(params.session_id, graceful=params.graceful)
        return _OK

    async def _kill_all(self, params: protocol.KillAllParams) -> dict:
        await self.manager.kill_all(graceful=params.graceful)
        return _OK

    async def _input(self, params: protocol.InputParams) -> dict:
        self.manager.send_input(
            params.session_id, params.input, append_newline=params.append_newline
        )
        return _OK

    async def _signal(self, params: protocol.SignalParams) -> dict:
        self.manager.send_signal(params.session_id, params.signal)
        return _OK

    async def _env(self, params: protocol.SessionParams) -> dict[str, str]:
        return await self.manager.get_environment(params.session_id)

    async def _pwd(self, params: protocol.SessionParams) -> str:
        return await self.manager.get_current_directory(params.session_id)

    async def _resize(self, params: protocol.ResizeParams) -> dict:
        self.manager.resize(params.session_id, params.cols, params.rows)
        return _OK

    async def _service_start(self, params: protocol.ServiceStartParams) -> dict:
        result = await self.manager.start_service(
            params.name,
            params.command,
            cwd=params.cwd,
            env=params.env,
            ready_patterns=params.ready_patterns,
            error_patterns=params.error_patterns,
            shell=params.shell,
        )
        return result.to_wire()


def _drop_connection(conn: Connection) -> None:
    conn.close()


def _resolve_port(runner: web.AppRunner) -> int | None:
    for address in runner.addresses:
        if isinstance(address, tuple) and len(address) >= 2:
            return int(address[1])
    return None
