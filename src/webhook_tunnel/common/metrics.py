import time
from functools import wraps
from typing import Callable, Dict, Optional, Union

from loguru import logger
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server


class MetricsRegistry:
    def __init__(self, registry=None):
        # Use a provided registry or the default one
        self.registry = registry or REGISTRY

        # Ingestion metrics
        self.webhook_received_total = Counter(
            "webhook_tunnel_received_total",
            "Total number of webhooks received by the ingestion endpoint",
            ["endpoint"],
            registry=self.registry,
        )

        # Relay metrics
        self.relay_events_total = Counter(
            "webhook_tunnel_relay_events_total",
            "Total number of event notifications received by the relay",
            ["endpoint"],
            registry=self.registry,
        )
        self.relay_deliveries_total = Counter(
            "webhook_tunnel_relay_deliveries_total",
            "Total number of deliveries to the local service by terminal status",
            ["endpoint", "status"],
            registry=self.registry,
        )
        self.relay_delivery_latency = Histogram(
            "webhook_tunnel_relay_delivery_seconds",
            "Time spent delivering events to the local service",
            ["endpoint"],
            registry=self.registry,
        )
        self.relay_reconnects_total = Counter(
            "webhook_tunnel_relay_reconnects_total",
            "Total number of relay subscription reconnects",
            ["endpoint"],
            registry=self.registry,
        )
        self.heartbeat_errors_total = Counter(
            "webhook_tunnel_heartbeat_errors_total",
            "Total number of failed connection heartbeats",
            ["endpoint"],
            registry=self.registry,
        )

        # Forwarding metrics
        self.forwarding_executions_total = Counter(
            "webhook_tunnel_forwarding_executions_total",
            "Total number of forwarding executions recorded",
            ["destination_type", "success"],
            registry=self.registry,
        )
        self.forwarding_skipped_total = Counter(
            "webhook_tunnel_forwarding_skipped_total",
            "Total number of forwarding rules skipped without an execution",
            ["reason"],
            registry=self.registry,
        )
        self.dispatch_latency = Histogram(
            "webhook_tunnel_dispatch_seconds",
            "Time spent dispatching to forwarding destinations",
            ["destination_type"],
            registry=self.registry,
        )
        self.sandbox_runs_total = Counter(
            "webhook_tunnel_sandbox_runs_total",
            "Total number of sandboxed code runs by outcome",
            ["outcome"],
            registry=self.registry,
        )

        # Common metrics
        self.up = Gauge(
            "webhook_tunnel_up",
            "Whether the webhook tunnel component is up",
            ["component"],
            registry=self.registry,
        )


# Global metrics registry
metrics = MetricsRegistry()


def start_metrics_server(port: int = 9090, host: str = "127.0.0.1"):
    """Start the Prometheus metrics server."""
    start_http_server(port, host)


def measure_time(
    metric: Histogram, labels: Optional[Union[Dict[str, str], Callable]] = None
) -> Callable:
    """Decorator to measure the execution time of a coroutine."""

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            labels_dict = {}
            if callable(labels) and args:
                # labels is computed from the bound instance
                try:
                    labels_dict = labels(args[0])
                except Exception as e:
                    logger.error(f"Error getting labels from function: {e}")
            elif isinstance(labels, dict):
                labels_dict = labels

            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = time.time() - start_time
                try:
                    metric.labels(**labels_dict).observe(duration)
                except Exception as e:
                    logger.error(f"Error recording metric: {e}")

        return wrapper

    return decorator
