"""Relay component: delivers endpoint events to a service on localhost."""

from webhook_tunnel.relay.client import RelayClient
from webhook_tunnel.relay.connection import ConnectionManager, LifecycleState

__all__ = [
    "ConnectionManager",
    "LifecycleState",
    "RelayClient",
]
