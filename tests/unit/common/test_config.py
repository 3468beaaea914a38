import pytest
from pydantic import ValidationError

from webhook_tunnel.common.config import (
    BaseConfig,
    FeedType,
    ForwardingConfig,
    MetricsConfig,
    RelayConfig,
    SandboxConfig,
    ServerConfig,
)
from webhook_tunnel.common.models import ForwardingRule


class TestBaseConfig:

    def test_validate_feed_config_memory(self):
        """Test that validate_feed_config passes for the memory feed."""
        config = BaseConfig(feed_type=FeedType.MEMORY)
        config.validate_feed_config()  # Should not raise an exception

    def test_validate_feed_config_poll(self):
        """Test that validate_feed_config passes with a positive poll interval."""
        config = BaseConfig(feed_type=FeedType.POLL, poll_interval=0.5)
        config.validate_feed_config()

    def test_validate_feed_config_bad_interval(self):
        """Test that validate_feed_config rejects a non-positive poll interval."""
        config = BaseConfig(feed_type=FeedType.POLL, poll_interval=0)
        with pytest.raises(ValueError, match="Poll feed selected but poll_interval is not positive"):
            config.validate_feed_config()

    def test_env_variables(self, monkeypatch):
        """Test that environment variables are correctly loaded."""
        monkeypatch.setenv("WEBHOOK_TUNNEL_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("WEBHOOK_TUNNEL_FEED_TYPE", "poll")
        monkeypatch.setenv("WEBHOOK_TUNNEL_POLL_INTERVAL", "2.5")
        monkeypatch.setenv("WEBHOOK_TUNNEL_METRICS__PORT", "9100")

        config = BaseConfig()
        assert config.log_level == "DEBUG"
        assert config.feed_type == FeedType.POLL
        assert config.poll_interval == 2.5
        assert config.metrics.port == 9100


class TestMetricsConfig:

    def test_default_values(self):
        """Test that default values are set correctly."""
        config = MetricsConfig()
        assert config.enabled is True
        assert config.host == "127.0.0.1"
        assert config.port == 9090
        assert config.path == "/metrics"


class TestRelayConfig:

    def test_required_values(self):
        """Test that endpoint id and local port are required."""
        with pytest.raises(ValidationError):
            RelayConfig(endpoint_id="ep_123")

    def test_default_values(self):
        """Test that default values are set correctly."""
        config = RelayConfig(endpoint_id="ep_123", local_port=3000)
        assert config.client_id == "unknown"
        assert config.ip_address == "0.0.0.0"
        assert config.heartbeat_interval == 30
        assert config.reconnect_delay == 5
        assert config.delivery_timeout == 30
        assert config.max_response_body_size == 1024 * 1024
        assert config.store_response_body is True
        assert config.store_response_headers is True
        assert config.excluded_response_headers == ["set-cookie"]
        assert config.client_hostname


class TestServerConfig:

    def test_default_values(self, relay_config):
        """Test that default values are set correctly."""
        config = ServerConfig(relay=relay_config)
        assert config.host == "0.0.0.0"
        assert config.port == 8000
        assert config.feed_type == FeedType.MEMORY
        assert config.forwarding.enabled is True
        assert config.forwarding.dispatch_timeout == 15
        assert config.forwarding.sandbox == SandboxConfig(timeout_ms=5000, memory_limit_mb=128)
        assert config.forwarding.rules == []

    def test_relay_required(self):
        """Test that the relay section is required."""
        with pytest.raises(ValidationError):
            ServerConfig()

    def test_env_nested_relay(self, monkeypatch):
        """Test that nested relay settings load from the environment."""
        monkeypatch.setenv("WEBHOOK_TUNNEL_RELAY__ENDPOINT_ID", "ep_env")
        monkeypatch.setenv("WEBHOOK_TUNNEL_RELAY__LOCAL_PORT", "4000")

        config = ServerConfig()
        assert config.relay.endpoint_id == "ep_env"
        assert config.relay.local_port == 4000

    def test_validate_forwarding_config(self, server_config):
        """Test that rules pointing at configured destinations pass validation."""
        server_config.validate_forwarding_config()

    def test_validate_forwarding_config_unknown_destination(self, relay_config, webhook_destination):
        """Test that a rule pointing at a missing destination is rejected."""
        config = ServerConfig(
            relay=relay_config,
            forwarding=ForwardingConfig(
                destinations=[webhook_destination],
                rules=[ForwardingRule(id="rule_1", destination_id="dest_missing")],
            ),
        )
        with pytest.raises(ValueError, match="Rule rule_1 references unknown destination dest_missing"):
            config.validate_forwarding_config()
