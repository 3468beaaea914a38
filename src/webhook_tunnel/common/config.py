import platform
import socket
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from webhook_tunnel.common.models import ForwardingDestination, ForwardingRule


class FeedType(str, Enum):
    MEMORY = "memory"
    POLL = "poll"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090
    path: str = "/metrics"


class SandboxConfig(BaseModel):
    timeout_ms: int = 5000
    memory_limit_mb: int = 128


class RelayConfig(BaseModel):
    endpoint_id: str
    local_port: int
    client_id: str = "unknown"
    ip_address: str = "0.0.0.0"
    client_version: Optional[str] = None
    client_os: Optional[str] = Field(default_factory=platform.system)
    client_hostname: Optional[str] = Field(default_factory=socket.gethostname)
    heartbeat_interval: float = 30  # seconds
    reconnect_delay: float = 5  # seconds
    delivery_timeout: float = 30  # seconds
    max_response_body_size: int = 1024 * 1024  # bytes
    store_response_body: bool = True
    store_response_headers: bool = True
    # Dropped from stored responses, case-insensitive
    excluded_response_headers: List[str] = ["set-cookie"]


class ForwardingConfig(BaseModel):
    enabled: bool = True
    dispatch_timeout: float = 15  # seconds
    sandbox: SandboxConfig = SandboxConfig()
    rules: List[ForwardingRule] = []
    destinations: List[ForwardingDestination] = []


class BaseConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="WEBHOOK_TUNNEL_",
        extra="ignore",
    )

    log_level: str = "INFO"
    feed_type: FeedType = FeedType.MEMORY
    poll_interval: float = 1.0  # seconds, only used by the poll feed
    metrics: MetricsConfig = MetricsConfig()

    def validate_feed_config(self) -> None:
        if self.feed_type == FeedType.POLL and self.poll_interval <= 0:
            raise ValueError("Poll feed selected but poll_interval is not positive")


class ServerConfig(BaseConfig):
    host: str = "0.0.0.0"
    port: int = 8000
    relay: RelayConfig
    forwarding: ForwardingConfig = ForwardingConfig()

    def validate_forwarding_config(self) -> None:
        destination_ids = {destination.id for destination in self.forwarding.destinations}
        for rule in self.forwarding.rules:
            if rule.destination_id not in destination_ids:
                raise ValueError(
                    f"Rule {rule.id} references unknown destination {rule.destination_id}"
                )
