"""Reconnecting websocket client for the session server."""

from termsessions.client.client import ConnectionState, SessionClient

__all__ = ["ConnectionState", "SessionClient"]
