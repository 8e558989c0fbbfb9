"""Session state and the public shapes returned by session operations."""

from __future__ import annotations

import asyncio
import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from termsessions.pty.buffer import RollingBuffer
from termsessions.pty.process import ProcessHandle


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for wire-facing models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SessionStatus(enum.Enum):
    """Lifecycle states for a session."""

    NEW = "new"
    ALIVE = "alive"
    EXITED = "exited"


# ---------------------------------------------------------------------------
# Public results
# ---------------------------------------------------------------------------


class SessionInfo(CamelModel):
    """Public snapshot of a session."""

    id: str
    name: str
    cwd: str
    env: dict[str, str] = Field(default_factory=dict)
    shell: str
    is_alive: bool
    created_at: datetime
    last_activity: datetime
    log_size: int


class CommandResult(CamelModel):
    """Result of a heuristically completed command.

    ``exit_code`` is always 0: it means "control returned", not that the
    command finished.  ``duration`` is in milliseconds.
    """

    output: str
    exit_code: int = 0
    duration: int


class ContextLine(CamelModel):
    line_number: int
    line: str
    match: bool = False


class SearchResult(CamelModel):
    line: str
    line_number: int
    context: list[ContextLine] | None = None


ServiceStatus = Literal["ready", "error", "running"]


class ServiceResult(CamelModel):
    status: ServiceStatus
    logs: list[str]
    session_id: str


# ---------------------------------------------------------------------------
# Internal state
# ---------------------------------------------------------------------------


@dataclass
class CommandRequest:
    """A queued command awaiting its turn on a session."""

    command: str
    future: asyncio.Future[CommandResult]
    submitted_at: datetime
    timeout: float | None = None
    # Event-loop time at dispatch, used for the duration
    started: float = 0.0
    timer: asyncio.TimerHandle | None = None


@dataclass
class Session:
    """One PTY-backed shell process plus its buffered history and command queue."""

    id: str
    process: ProcessHandle
    cwd: str
    shell: str
    env: dict[str, str] = field(default_factory=dict)
    buffer: RollingBuffer = field(default_factory=RollingBuffer)
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    status: SessionStatus = SessionStatus.NEW
    exit_code: int | None = None

    # Bytes received since the last line terminator
    partial_line: str = ""
    # Raw output accumulated for the command currently in flight
    command_output: str = ""
    queue: deque[CommandRequest] = field(default_factory=deque)
    current: CommandRequest | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_alive(self) -> bool:
        return self.status is not SessionStatus.EXITED

    def touch(self) -> None:
        self.last_activity = utcnow()

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            name=self.id,
            cwd=self.cwd,
            env=dict(self.env),
            shell=self.shell,
            is_alive=self.is_alive,
            created_at=self.created_at,
            last_activity=self.last_activity,
            log_size=self.buffer.line_count,
        )
