"""Common utilities and models for the webhook tunnel system."""

from webhook_tunnel.common.config import (
    BaseConfig,
    FeedType,
    ForwardingConfig,
    MetricsConfig,
    RelayConfig,
    SandboxConfig,
    ServerConfig,
)
from webhook_tunnel.common.feed import (
    EventSource,
    MemoryEventSource,
    PollingEventSource,
    create_event_source,
)
from webhook_tunnel.common.metrics import (
    MetricsRegistry,
    measure_time,
    metrics,
    start_metrics_server,
)
from webhook_tunnel.common.models import (
    Connection,
    DeliveryResponse,
    DestinationResponse,
    DestinationType,
    Endpoint,
    EndpointStatus,
    Event,
    EventStatus,
    ForwardingDestination,
    ForwardingExecution,
    ForwardingRule,
    OriginRequest,
    RuleFilters,
)
from webhook_tunnel.common.store import MemoryStore, Store, StoreError, Table

__all__ = [
    # Config
    "BaseConfig",
    "FeedType",
    "ForwardingConfig",
    "MetricsConfig",
    "RelayConfig",
    "SandboxConfig",
    "ServerConfig",
    # Feed
    "EventSource",
    "MemoryEventSource",
    "PollingEventSource",
    "create_event_source",
    # Metrics
    "MetricsRegistry",
    "measure_time",
    "metrics",
    "start_metrics_server",
    # Models
    "Connection",
    "DeliveryResponse",
    "DestinationResponse",
    "DestinationType",
    "Endpoint",
    "EndpointStatus",
    "Event",
    "EventStatus",
    "ForwardingDestination",
    "ForwardingExecution",
    "ForwardingRule",
    "OriginRequest",
    "RuleFilters",
    # Store
    "MemoryStore",
    "Store",
    "StoreError",
    "Table",
]
