"""Persistent PTY shell sessions behind a websocket RPC API."""

__version__ = "0.1.0"
