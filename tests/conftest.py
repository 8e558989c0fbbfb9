"""Shared fixtures: an in-memory PTY stand-in and a manager wired to it."""

from __future__ import annotations

import asyncio
import itertools
import signal
from typing import Callable

import pytest

from termsessions.config import ServerConfig
from termsessions.session.manager import SessionManager

_pids = itertools.count(1000)


class FakeProcess:
    """Scriptable ProcessHandle.

    ``responder`` is called with each write and may ``feed`` output back,
    the way a shell would echo and answer.  ``ignore_interrupt`` makes the
    process survive SIGINT so kill escalation can be observed.
    """

    def __init__(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        cols: int = 120,
        rows: int = 30,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.env = env or {}
        self.size = (cols, rows)
        self.pid = next(_pids)
        self.alive = True
        self.exit_code: int | None = None
        self.written: list[str] = []
        self.kills: list[int] = []
        self.signals: list[int] = []
        self.ignore_interrupt = False
        self.responder: Callable[[FakeProcess, str], None] | None = None
        self._data_callbacks: list[Callable[[str], None]] = []
        self._exit_callbacks: list[Callable[[int | None], None]] = []

    def on_data(self, callback: Callable[[str], None]) -> None:
        self._data_callbacks.append(callback)

    def on_exit(self, callback: Callable[[int | None], None]) -> None:
        self._exit_callbacks.append(callback)

    def write(self, data: str) -> None:
        if not self.alive:
            raise ProcessLookupError(self.pid)
        self.written.append(data)
        if self.responder is not None:
            self.responder(self, data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def kill(self, sig: int = signal.SIGKILL) -> None:
        self.kills.append(sig)
        if not self.alive:
            return
        if sig == signal.SIGINT and self.ignore_interrupt:
            return
        asyncio.get_running_loop().call_soon(self.exit, -sig)

    def signal_process(self, sig: int) -> None:
        self.signals.append(sig)

    # Test drivers

    def feed(self, text: str) -> None:
        for callback in list(self._data_callbacks):
            callback(text)

    def exit(self, code: int | None = 0) -> None:
        if not self.alive:
            return
        self.alive = False
        self.exit_code = code
        for callback in list(self._exit_callbacks):
            callback(code)


def echo_responder(replies: dict[str, str]) -> Callable[[FakeProcess, str], None]:
    """Echo each command line back, followed by its scripted reply."""

    def respond(process: FakeProcess, data: str) -> None:
        command = data.rstrip("\n")
        process.feed(f"{command}\r\n")
        reply = replies.get(command)
        if reply:
            process.feed(reply)
        process.feed("$ ")

    return respond


@pytest.fixture
def config() -> ServerConfig:
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        command_timeout=0.05,
        startup_delay=0,
        kill_grace_period=0.2,
        kill_poll_interval=0.01,
        exit_wait_timeout=0.5,
    )


@pytest.fixture
def spawned() -> list[FakeProcess]:
    return []


@pytest.fixture
def manager(config: ServerConfig, spawned: list[FakeProcess]) -> SessionManager:
    def spawn(command: list[str], **kwargs) -> FakeProcess:
        process = FakeProcess(command, **kwargs)
        spawned.append(process)
        return process

    return SessionManager(config, spawn=spawn)


def drain(queue: asyncio.Queue) -> list:
    """Take everything currently in ``queue`` without waiting."""
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items
