"""Forwarding component: filters, transforms and dispatches event copies."""

from webhook_tunnel.forwarding.destinations import (
    Destination,
    DestinationRegistry,
    DestinationResult,
    send_to_destination,
)
from webhook_tunnel.forwarding.filters import FilterEvaluator, FilterResult, extract_event_name
from webhook_tunnel.forwarding.forwarder import ForwardingResult, WebhookForwarder
from webhook_tunnel.forwarding.sandbox import (
    TransformationSandbox,
    TransformResult,
    ValidationResult,
    build_context,
)

__all__ = [
    "Destination",
    "DestinationRegistry",
    "DestinationResult",
    "send_to_destination",
    "FilterEvaluator",
    "FilterResult",
    "extract_event_name",
    "ForwardingResult",
    "WebhookForwarder",
    "TransformationSandbox",
    "TransformResult",
    "ValidationResult",
    "build_context",
]
