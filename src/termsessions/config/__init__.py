"""Pydantic models for server and client settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Session server configuration."""

    host: str = Field(default="localhost")
    port: int = Field(default=3100)
    max_log_lines: int = Field(
        default=10_000, gt=0, description="Log buffer capacity per session (lines)"
    )
    command_timeout: float = Field(
        default=2.0,
        gt=0,
        description=(
            "Seconds after which a command is considered to have returned control. "
            "Whatever output arrived in that window is the command's result."
        ),
    )
    kill_grace_period: float = Field(
        default=3.0, ge=0, description="Seconds to wait after an interrupt before SIGKILL"
    )
    kill_poll_interval: float = Field(default=0.1, gt=0)
    exit_wait_timeout: float = Field(
        default=2.0, gt=0, description="Seconds to wait for a killed process to be reaped"
    )
    startup_delay: float = Field(
        default=0.2,
        ge=0,
        description="Seconds to let a new shell print its banner before logs are cleared",
    )
    default_shell: str | None = Field(
        default=None, description="Shell used when a create request names none"
    )
    term: str = Field(default="xterm-color")
    cols: int = Field(default=120, gt=0)
    rows: int = Field(default=30, gt=0)
    search_limit: int = Field(default=100, gt=0)
    service_log_tail: int = Field(default=20, gt=0)
    outbound_queue_size: int = Field(
        default=10_000,
        gt=0,
        description="Messages buffered per connection before it is dropped as too slow",
    )
    max_sessions: int | None = Field(
        default=None, gt=0, description="Optional cap on concurrent sessions (None = no cap)"
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> ServerConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SESSION_SERVER_HOST       - Interface to bind
            SESSION_SERVER_PORT       - Port to listen on
            SESSION_MAX_LOG_LINES     - Log buffer capacity per session
            SESSION_COMMAND_TIMEOUT   - Command completion window (seconds)
            SESSION_MAX_SESSIONS      - Optional cap on concurrent sessions
        """
        config_data = _load_file(config_path).get("server", {})

        env_map = {
            "SESSION_SERVER_HOST": ("host", str),
            "SESSION_SERVER_PORT": ("port", int),
            "SESSION_MAX_LOG_LINES": ("max_log_lines", int),
            "SESSION_COMMAND_TIMEOUT": ("command_timeout", float),
            "SESSION_MAX_SESSIONS": ("max_sessions", int),
        }
        _apply_env(config_data, env_map)
        return cls.model_validate(config_data)


class ClientConfig(BaseModel):
    """Reconnecting client configuration."""

    url: str = Field(default="ws://localhost:3100")
    request_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for a response to one request"
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds a request waits for the connection to come up",
    )
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=5.0, gt=0)

    @classmethod
    def load(cls, config_path: str | None = None) -> ClientConfig:
        """Load config from file, env vars, or defaults.

        Env vars:
            SESSION_API_URL           - WebSocket URL of the session server
            SESSION_REQUEST_TIMEOUT   - Per-request timeout (seconds)
        """
        config_data = _load_file(config_path).get("client", {})
        env_map = {
            "SESSION_API_URL": ("url", str),
            "SESSION_REQUEST_TIMEOUT": ("request_timeout", float),
        }
        _apply_env(config_data, env_map)
        return cls.model_validate(config_data)


def _load_file(config_path: str | None) -> dict[str, Any]:
    # override=True so an edited .env wins over stale exported values.
    load_dotenv(override=True)
    if config_path and os.path.exists(config_path):
        with open(config_path) as f:
            return json.load(f)
    return {}


def _apply_env(config_data: dict[str, Any], env_map: dict[str, tuple[str, type]]) -> None:
    for env_name, (key, cast) in env_map.items():
        value = os.environ.get(env_name)
        if value:
            config_data[key] = cast(value)
