"""Session manager — create, drive and tear down PTY-backed shell sessions."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import re
import shutil
import signal

from termsessions.config import ServerConfig
from termsessions.errors import (
    DuplicateSession,
    InvalidPattern,
    InvalidSignal,
    SessionLimitReached,
    SessionNotAlive,
)
from termsessions.pty.ansi import clean_line, clean_output
from termsessions.pty.buffer import RollingBuffer
from termsessions.pty.process import PTYProcess, SpawnFactory
from termsessions.session.models import (
    CommandRequest,
    CommandResult,
    ContextLine,
    SearchResult,
    ServiceResult,
    Session,
    SessionInfo,
    SessionStatus,
    utcnow,
)
from termsessions.session.registry import SessionRegistry
from termsessions.session.wire import EventType, Wire

logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_ENV_LINE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_INTERRUPT = "\x03"


class SessionManager:
    """Manages the lifecycle of every shell session.

    The manager ensures:
    - Session ids are unique and looked up through one registry
    - Commands on a session run one at a time, in submission order
    - Output is split into lines and kept in a bounded log buffer
    - Every lifecycle change is announced on the Wire

    Command completion is time-based: a command "finishes" when the
    configured timeout elapses, returning whatever output arrived in that
    window.  Long-running commands keep streaming afterwards.
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        wire: Wire | None = None,
        spawn: SpawnFactory | None = None,
    ) -> None:
        self.config = config or ServerConfig()
        self.wire = wire or Wire()
        self._spawn: SpawnFactory = spawn or PTYProcess.spawn
        self._registry = SessionRegistry()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    async def stop(self, graceful: bool = True) -> None:
        """Kill every session and close the wire. Called on shutdown."""
        await self.kill_all(graceful)
        self.wire.close()
        logger.info("Session manager stopped")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def default_shell(self) -> str:
        return self.config.default_shell or shutil.which("bash") or "/bin/sh"

    async def create_session(
        self,
        session_id: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        shell: str | None = None,
    ) -> SessionInfo:
        """Spawn a shell on a new PTY and register it under ``session_id``.

        Raises:
            DuplicateSession: ``session_id`` is already registered.
            SessionLimitReached: the optional session cap is reached.
        """
        if session_id in self._registry:
            # Checked before spawning so a duplicate never starts a process.
            raise DuplicateSession(session_id)
        limit = self.config.max_sessions
        if limit is not None and len(self._registry) >= limit:
            raise SessionLimitReached(limit)

        shell = shell or self.default_shell()
        cwd = cwd or os.getcwd()
        overrides = dict(env or {})
        full_env = {**os.environ, "TERM": self.config.term, **overrides}

        process = self._spawn(
            [shell],
            cwd=cwd,
            env=full_env,
            cols=self.config.cols,
            rows=self.config.rows,
        )
        session = Session(
            id=session_id,
            process=process,
            cwd=cwd,
            shell=shell,
            env=overrides,
            buffer=RollingBuffer(self.config.max_log_lines),
        )
        self._registry.add(session)
        process.on_data(functools.partial(self._on_data, session))
        process.on_exit(functools.partial(self._on_exit, session))
        logger.info("Session %s created: shell=%s cwd=%s", session_id, shell, cwd)

        # Let the shell print its banner and first prompt, then drop it.
        await asyncio.sleep(self.config.startup_delay)
        if session.is_alive:
            session.status = SessionStatus.ALIVE
            session.buffer.clear()
            session.command_output = ""
            session.partial_line = ""

        info = session.info()
        self.wire.emit(
            EventType.SESSION_CREATED, sessionId=session_id, info=info.to_wire()
        )
        return info

    # ------------------------------------------------------------------
    # PTY callbacks
    # ------------------------------------------------------------------

    def _on_data(self, session: Session, chunk: str) -> None:
        session.touch()
        if session.current is not None:
            session.command_output += chunk

        segments = _LINE_SPLIT_RE.split(session.partial_line + chunk)
        session.partial_line = segments.pop()
        lines: list[str] = []
        for raw in segments:
            line = clean_line(raw)
            session.buffer.append(line, raw)
            lines.append(line)

        self.wire.emit(
            EventType.SESSION_OUTPUT,
            session.id,
            chunk=chunk,
            lines=lines,
            timestamp=utcnow(),
        )

    def _on_exit(self, session: Session, exit_code: int | None) -> None:
        if session.status is SessionStatus.EXITED:
            return
        if session.partial_line:
            session.buffer.append(clean_line(session.partial_line), session.partial_line)
            session.partial_line = ""
        session.buffer.append(f"[Session terminated with code {exit_code}]")
        session.status = SessionStatus.EXITED
        session.exit_code = exit_code
        session.exited.set()

        while session.queue:
            request = session.queue.popleft()
            if not request.future.done():
                request.future.set_exception(SessionNotAlive(session.id))

        self._registry.remove(session)
        logger.info("Session %s exited (code=%s)", session.id, exit_code)
        self.wire.emit(
            EventType.SESSION_EXIT, session.id, exitCode=exit_code, timestamp=utcnow()
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _live(self, session_id: str) -> Session:
        session = self._registry.get(session_id)
        if not session.is_alive:
            raise SessionNotAlive(session_id)
        return session

    async def exec_command(
        self, session_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        """Queue ``command`` on a session and return its heuristic result.

        Resolves ``timeout`` (default ``config.command_timeout``) seconds
        after the command is written, whether or not it produced output.
        """
        session = self._live(session_id)
        loop = asyncio.get_running_loop()
        request = CommandRequest(
            command=command,
            future=loop.create_future(),
            submitted_at=utcnow(),
            timeout=timeout,
        )
        session.queue.append(request)
        if session.current is None:
            self._process_queue(session)
        return await request.future

    def _process_queue(self, session: Session) -> None:
        loop = asyncio.get_running_loop()
        while session.current is None and session.queue:
            request = session.queue.popleft()
            if request.future.done():
                # Caller went away while queued.
                continue
            if not session.is_alive:
                request.future.set_exception(SessionNotAlive(session.id))
                continue

            session.current = request
            session.command_output = ""
            session.buffer.append(f"$ {request.command}")
            request.started = loop.time()
            self.wire.emit(
                EventType.COMMAND_START,
                session.id,
                command=request.command,
                startedAt=request.submitted_at,
            )
            try:
                session.process.write(request.command + "\n")
            except OSError:
                session.current = None
                request.future.set_exception(SessionNotAlive(session.id))
                continue
            session.touch()

            timeout = (
                request.timeout
                if request.timeout is not None
                else self.config.command_timeout
            )
            request.timer = loop.call_later(
                timeout, self._finish_command, session, request
            )

    def _finish_command(self, session: Session, request: CommandRequest) -> None:
        loop = asyncio.get_running_loop()
        request.timer = None
        if session.current is request:
            session.current = None

        output = clean_output(session.command_output)
        session.command_output = ""
        duration = int((loop.time() - request.started) * 1000)
        result = CommandResult(output=output, exit_code=0, duration=duration)
        self.wire.emit(
            EventType.COMMAND_FINISHED,
            session.id,
            command=request.command,
            duration=duration,
            exitCode=0,
            output=output,
            finishedAt=utcnow(),
        )
        if not request.future.done():
            request.future.set_result(result)
        self._process_queue(session)

    # ------------------------------------------------------------------
    # Raw input and signals (bypass the queue)
    # ------------------------------------------------------------------

    def send_input(
        self, session_id: str, text: str, append_newline: bool = True
    ) -> None:
        """Write raw text to the session immediately."""
        session = self._live(session_id)
        session.process.write(text + "\n" if append_newline else text)
        session.touch()
        self.wire.emit(
            EventType.SESSION_INPUT,
            session_id,
            input=text,
            appendNewline=append_newline,
            timestamp=utcnow(),
        )

    def send_signal(self, session_id: str, signal_name: str = "SIGINT") -> None:
        """Deliver a signal to the session.

        SIGINT is sent as the interrupt control byte so it reaches the
        foreground job of the terminal.  Anything else goes to the shell
        process directly.
        """
        session = self._live(session_id)
        name = signal_name.upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        if name == "SIGINT":
            session.process.write(_INTERRUPT)
        else:
            try:
                sig = signal.Signals[name]
            except KeyError:
                raise InvalidSignal(signal_name) from None
            session.process.signal_process(sig)
        session.touch()
        self.wire.emit(
            EventType.SESSION_SIGNAL, session_id, signal=name, timestamp=utcnow()
        )

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Resize the session's terminal window."""
        session = self._live(session_id)
        session.process.resize(cols, rows)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def kill_session(self, session_id: str, graceful: bool = True) -> None:
        """Terminate a session and remove it from the registry.

        Graceful kills interrupt first and escalate to SIGKILL once the
        grace period runs out.  Unknown ids are ignored.
        """
        session = self._registry.find(session_id)
        if session is None:
            return

        if session.is_alive:
            loop = asyncio.get_running_loop()
            if graceful:
                session.process.kill(signal.SIGINT)
                deadline = loop.time() + self.config.kill_grace_period
                while session.is_alive:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    await asyncio.sleep(min(self.config.kill_poll_interval, remaining))
                if session.is_alive:
                    logger.warning(
                        "Session %s ignored interrupt, forcing termination", session_id
                    )
                    session.buffer.append(
                        "[Process did not exit gracefully, forcing termination]"
                    )
                    session.process.kill(signal.SIGKILL)
            else:
                session.process.kill(signal.SIGKILL)

            try:
                await asyncio.wait_for(
                    session.exited.wait(), timeout=self.config.exit_wait_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Session %s was not reaped after SIGKILL", session_id)

        self._registry.remove(session)
        logger.info("Session %s killed", session_id)

    async def kill_all(self, graceful: bool = True) -> None:
        """Kill every registered session concurrently."""
        await asyncio.gather(
            *(self.kill_session(sid, graceful) for sid in self._registry.ids())
        )
        logger.info("All sessions cleaned up")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_output(
        self, session_id: str, lines: int | None = None, raw: bool = False
    ) -> list[str]:
        """Return the last ``lines`` log lines (all when omitted)."""
        session = self._registry.get(session_id)
        n = lines or None
        return session.buffer.read_tail_raw(n) if raw else session.buffer.read_tail(n)

    def search_logs(
        self,
        session_id: str,
        pattern: str,
        context_lines: int = 0,
        limit: int | None = None,
    ) -> list[SearchResult]:
        """Case-insensitive regex search over a session's log buffer."""
        session = self._registry.get(session_id)
        try:
            matches = session.buffer.search(
                pattern,
                limit=limit or self.config.search_limit,
                context_lines=max(0, context_lines),
            )
        except re.error as e:
            raise InvalidPattern(pattern, str(e)) from None
        return [
            SearchResult(
                line=m.line,
                line_number=m.line_number,
                context=[
                    ContextLine(line_number=n, line=text, match=is_match)
                    for n, text, is_match in m.context
                ]
                if context_lines > 0
                else None,
            )
            for m in matches
        ]

    def list_sessions(self) -> list[SessionInfo]:
        return [session.info() for session in self._registry]

    def __len__(self) -> int:
        return len(self._registry)

    # ------------------------------------------------------------------
    # Composites built on create + exec
    # ------------------------------------------------------------------

    async def start_service(
        self,
        name: str,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        ready_patterns: list[str] | None = None,
        error_patterns: list[str] | None = None,
        shell: str | None = None,
    ) -> ServiceResult:
        """Create a session, run ``command`` and classify the first output.

        Error patterns win over ready patterns; neither matching means the
        service is still ``running``.
        """
        await self.create_session(name, cwd=cwd, env=env, shell=shell)
        result = await self.exec_command(name, command)
        output = "\n".join(_strip_echo(result.output, command))

        status = "running"
        if any(p in output for p in error_patterns or []):
            status = "error"
        elif any(p in output for p in ready_patterns or []):
            status = "ready"

        session = self._registry.find(name)
        logs = session.buffer.read_tail(self.config.service_log_tail) if session else []
        logger.info("Service %s started: status=%s", name, status)
        return ServiceResult(status=status, logs=logs, session_id=name)

    async def get_environment(self, session_id: str) -> dict[str, str]:
        """Run ``env`` in the session and parse ``NAME=value`` lines."""
        result = await self.exec_command(session_id, "env")
        env: dict[str, str] = {}
        for line in _strip_echo(result.output, "env"):
            match = _ENV_LINE_RE.match(line)
            if match:
                env[match.group(1)] = match.group(2)
        return env

    async def get_current_directory(self, session_id: str) -> str:
        """Run ``pwd`` in the session and return the directory it printed."""
        result = await self.exec_command(session_id, "pwd")
        lines = [line.strip() for line in _strip_echo(result.output, "pwd")]
        for line in lines:
            if line.startswith("/"):
                return line
        return next((line for line in lines if line), "")


def _strip_echo(output: str, command: str) -> list[str]:
    """Split command output into lines, dropping the terminal's echo of ``command``."""
    lines = output.split("\n")
    target = command.strip()
    for i, line in enumerate(lines):
        if line.strip().endswith(target):
            return lines[:i] + lines[i + 1 :]
    return lines
