"""PTY process — the OS pseudo-terminal handle behind each session."""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None], None]


class ProcessHandle(Protocol):
    """What the session manager needs from a pseudo-terminal process."""

    @property
    def pid(self) -> int: ...

    @property
    def alive(self) -> bool: ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self, sig: int = signal.SIGKILL) -> None: ...

    def signal_process(self, sig: int) -> None: ...

    def on_data(self, callback: DataCallback) -> None: ...

    def on_exit(self, callback: ExitCallback) -> None: ...


SpawnFactory = Callable[..., ProcessHandle]


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the PTY slave.  Without a
    # controlling terminal the shell has no job control and ^C is inert.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PTYProcess:
    """A process running on a new pseudo-terminal.

    Wraps an interactive shell with:
    - Process group isolation (start_new_session) for safe tree-killing
    - Non-blocking reads driven by the event loop (``loop.add_reader``)
    - Incremental UTF-8 decoding so multi-byte characters survive chunking
    - Exactly-once exit notification after the process is reaped

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop on macOS.
    """

    def __init__(
        self,
        proc: subprocess.Popen,
        master_fd: int,
        loop: asyncio.AbstractEventLoop,
        poll_interval: float = 0.05,
    ) -> None:
        self._proc = proc
        self._master_fd = master_fd
        self._loop = loop
        self._poll_interval = poll_interval
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._data_callbacks: list[DataCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._reading = False
        self._writing = False
        self._pending_writes = bytearray()
        self._exited = False
        self._exit_code: int | None = None
        self._pgid = os.getpgid(proc.pid)

        os.set_blocking(master_fd, False)
        loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._waiter = loop.create_task(self._wait_loop())

    @classmethod
    def spawn(
        cls,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        cols: int = 120,
        rows: int = 30,
    ) -> PTYProcess:
        """Spawn ``command`` on a fresh PTY pair.

        Must be called from a running event loop.  ``env`` is the complete
        environment for the child (callers merge it with ``os.environ``).
        """
        loop = asyncio.get_running_loop()
        master_fd, slave_fd = pty.openpty()
        _set_winsize(slave_fd, cols, rows)
        try:
            proc = subprocess.Popen(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Creates new process group
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=cwd,
                close_fds=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        logger.info(
            "PTY process started: pid=%d cmd=%s cwd=%s", proc.pid, " ".join(command), cwd
        )
        return cls(proc, master_fd, loop)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_data(self, callback: DataCallback) -> None:
        """Register a callback receiving each decoded output chunk."""
        self._data_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        """Register a callback invoked once with the exit code."""
        self._exit_callbacks.append(callback)

    def _emit_data(self, text: str) -> None:
        if not text:
            return
        for callback in list(self._data_callbacks):
            try:
                callback(text)
            except Exception:
                logger.exception("Error in data callback for pid %d", self.pid)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, 65536)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave fd is closed, the process side is gone.
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._emit_data(self._decoder.decode(data))

    def _drain(self) -> None:
        """Read whatever is left in the master fd without blocking."""
        while self._reading:
            try:
                data = os.read(self._master_fd, 65536)
            except OSError:
                break
            if not data:
                break
            self._emit_data(self._decoder.decode(data))
        self._emit_data(self._decoder.decode(b"", final=True))

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False

    async def _wait_loop(self) -> None:
        """Poll for process exit, then drain output and notify once."""
        while self._proc.poll() is None:
            await asyncio.sleep(self._poll_interval)
        self._finish()

    def _finish(self) -> None:
        if self._exited:
            return
        self._drain()
        self._stop_reading()
        if self._writing:
            self._loop.remove_writer(self._master_fd)
            self._writing = False
        self._pending_writes.clear()
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._exited = True
        self._exit_code = self._proc.returncode
        logger.info("PTY process %d exited (code=%s)", self.pid, self._exit_code)
        for callback in list(self._exit_callbacks):
            try:
                callback(self._exit_code)
            except Exception:
                logger.exception("Error in exit callback for pid %d", self.pid)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def write(self, data: str) -> None:
        """Write text to the terminal (as if typed).

        Bytes the terminal cannot accept right now are queued and flushed
        when the master fd becomes writable again, preserving order.
        """
        if self._exited:
            raise ProcessLookupError(f"PTY process {self.pid} has exited")
        self._pending_writes.extend(data.encode("utf-8"))
        if not self._writing:
            self._flush_writes()

    def _flush_writes(self) -> None:
        while self._pending_writes:
            try:
                written = os.write(self._master_fd, self._pending_writes)
            except BlockingIOError:
                if not self._writing:
                    self._loop.add_writer(self._master_fd, self._flush_writes)
                    self._writing = True
                return
            except OSError:
                logger.debug("Write to exited PTY %d dropped", self.pid)
                self._pending_writes.clear()
                break
            del self._pending_writes[:written]
        if self._writing:
            self._loop.remove_writer(self._master_fd)
            self._writing = False

    def resize(self, cols: int, rows: int) -> None:
        """Resize the terminal window."""
        if not self._exited:
            _set_winsize(self._master_fd, cols, rows)

    def kill(self, sig: int = signal.SIGKILL) -> None:
        """Deliver ``sig`` to the whole process group."""
        if self._exited:
            return
        try:
            os.killpg(self._pgid, sig)
            logger.debug("Sent signal %d to pgid %d", sig, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)

    def signal_process(self, sig: int) -> None:
        """Deliver ``sig`` to the shell process only."""
        if self._exited:
            return
        try:
            os.kill(self.pid, sig)
        except ProcessLookupError:
            logger.debug("Process already gone: %d", self.pid)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def alive(self) -> bool:
        return not self._exited

    @property
    def exit_code(self) -> int | None:
        return self._exit_code


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
