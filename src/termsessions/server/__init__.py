"""RPC transport: websocket protocol, subscription routing and the aiohttp server."""

from termsessions.server.api import SessionServer
from termsessions.server.protocol import Method
from termsessions.server.router import Connection, SubscriptionRouter, SubscriptionState

__all__ = [
    "Connection",
    "Method",
    "SessionServer",
    "SubscriptionRouter",
    "SubscriptionState",
]
