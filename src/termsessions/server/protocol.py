"""Wire protocol — request variants, parameter models, envelopes and codec.

Every inbound request names one :class:`Method`.  Its ``params`` object is
validated against that method's Pydantic model before dispatch, so
handlers only ever see typed parameters.

Messages on the socket are JSON text frames:

* request:  ``{"id": ..., "method": "session.exec", "params": {...}}``
* response: ``{"id": ..., "result": ...}`` or ``{"id": ..., "error": "..."}``
* push:     ``{"type": "event", "event": "session:output", "sessionId": ..., "payload": {...}}``
"""

from __future__ import annotations

import enum
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_core import to_json

from termsessions.errors import ProtocolError
from termsessions.session.wire import WireEvent


class Method(enum.StrEnum):
    """The closed set of RPC methods."""

    SESSION_CREATE = "session.create"
    SESSION_EXEC = "session.exec"
    SESSION_OUTPUT = "session.output"
    SESSION_SEARCH = "session.search"
    SESSION_LIST = "session.list"
    SESSION_KILL = "session.kill"
    SESSION_KILL_ALL = "session.killAll"
    SESSION_INPUT = "session.input"
    SESSION_SIGNAL = "session.signal"
    SESSION_ENV = "session.env"
    SESSION_PWD = "session.pwd"
    SESSION_RESIZE = "session.resize"
    SERVICE_START = "service.start"
    SESSION_SUBSCRIBE = "session.subscribe"
    SESSION_UNSUBSCRIBE = "session.unsubscribe"


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------


class RpcParams(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmptyParams(RpcParams):
    pass


class SessionParams(RpcParams):
    session_id: str = Field(min_length=1)


class CreateParams(RpcParams):
    id: str = Field(min_length=1, description="Caller-chosen, unique session id")
    cwd: str | None = None
    env: dict[str, str] | None = None
    shell: str | None = None


class ExecParams(SessionParams):
    command: str
    timeout: float | None = Field(
        default=None, gt=0, description="Completion window override in seconds"
    )


class OutputParams(SessionParams):
    lines: int | None = Field(default=None, ge=0)
    raw: bool = False


class SearchParams(SessionParams):
    pattern: str
    context_lines: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, gt=0)


class KillParams(SessionParams):
    graceful: bool = True


class KillAllParams(RpcParams):
    graceful: bool = True


class InputParams(SessionParams):
    input: str
    append_newline: bool = True


class SignalParams(SessionParams):
    signal: str = "SIGINT"


class ResizeParams(SessionParams):
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class ServiceStartParams(RpcParams):
    name: str = Field(min_length=1)
    command: str
    cwd: str | None = None
    env: dict[str, str] | None = None
    ready_patterns: list[str] | None = None
    error_patterns: list[str] | None = None
    shell: str | None = None


class UnsubscribeParams(RpcParams):
    """Subscription targets.

    ``sessionId`` or ``sessions`` equal to ``"*"`` is shorthand for ``all``.
    """

    session_id: str | None = None
    sessions: list[str] | Literal["*"] | None = None
    all: bool = False

    def wants_all(self) -> bool:
        return self.all or self.session_id == "*" or self.sessions == "*"

    def targets(self) -> list[str]:
        if isinstance(self.sessions, list):
            provided = self.sessions
        elif self.session_id and self.session_id != "*":
            provided = [self.session_id]
        else:
            provided = []
        return [sid for sid in provided if sid.strip()]


class SubscribeParams(UnsubscribeParams):
    replay: int | None = Field(
        default=None,
        ge=0,
        description="Backfill this many log lines per session before acknowledging",
    )


PARAM_MODELS: dict[Method, type[RpcParams]] = {
    Method.SESSION_CREATE: CreateParams,
    Method.SESSION_EXEC: ExecParams,
    Method.SESSION_OUTPUT: OutputParams,
    Method.SESSION_SEARCH: SearchParams,
    Method.SESSION_LIST: EmptyParams,
    Method.SESSION_KILL: KillParams,
    Method.SESSION_KILL_ALL: KillAllParams,
    Method.SESSION_INPUT: InputParams,
    Method.SESSION_SIGNAL: SignalParams,
    Method.SESSION_ENV: SessionParams,
    Method.SESSION_PWD: SessionParams,
    Method.SESSION_RESIZE: ResizeParams,
    Method.SERVICE_START: ServiceStartParams,
    Method.SESSION_SUBSCRIBE: SubscribeParams,
    Method.SESSION_UNSUBSCRIBE: UnsubscribeParams,
}


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RpcRequest(BaseModel):
    id: str | int
    method: str
    params: dict[str, Any] | None = None


def decode_request(raw: str | bytes) -> RpcRequest:
    """Parse a request frame.

    Raises:
        ProtocolError: the frame is not JSON or lacks ``id``/``method``.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed message: {e}") from None
    try:
        return RpcRequest.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Malformed request: {_describe(e)}") from None


def resolve(request: RpcRequest) -> tuple[Method, RpcParams]:
    """Map a request onto its method and validated parameters."""
    try:
        method = Method(request.method)
    except ValueError:
        raise ProtocolError(f"Unknown method: {request.method}") from None
    try:
        params = PARAM_MODELS[method].model_validate(request.params or {})
    except ValidationError as e:
        raise ProtocolError(f"Invalid params for {method}: {_describe(e)}") from None
    return method, params


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"])
        parts.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Outbound messages
# ---------------------------------------------------------------------------


def response(request_id: str | int, result: Any) -> dict[str, Any]:
    return {"id": request_id, "result": result}


def error_response(request_id: str | int, message: str) -> dict[str, Any]:
    return {"id": request_id, "error": message}


def event_envelope(event: WireEvent) -> dict[str, Any]:
    envelope: dict[str, Any] = {"type": "event", "event": event.type.value}
    if event.session_id is not None:
        envelope["sessionId"] = event.session_id
    envelope["payload"] = event.data
    return envelope


def encode(message: Any) -> str:
    """Serialize a message; datetimes and Pydantic models are JSON-encoded."""
    return to_json(message, by_alias=True).decode()
