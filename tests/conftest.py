import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from webhook_tunnel.common.config import (
    ForwardingConfig,
    MetricsConfig,
    RelayConfig,
    ServerConfig,
)
from webhook_tunnel.common.feed import MemoryEventSource
from webhook_tunnel.common.models import (
    DestinationType,
    Event,
    ForwardingDestination,
    ForwardingRule,
    OriginRequest,
    RuleFilters,
    encode_body,
)
from webhook_tunnel.common.store import MemoryStore
from webhook_tunnel.server.server import create_app


def make_event(body=None, method="POST", path="/webhooks/ep_123/stripe/payment.succeeded", headers=None, **kwargs):
    """Build a pending event the way the ingestion endpoint stores it."""
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    request_headers = {"content-type": "application/json", "host": "hooks.example.com"}
    if headers is not None:
        request_headers = headers
    return Event(
        endpoint_id=kwargs.pop("endpoint_id", "ep_123"),
        origin_request=OriginRequest(
            method=method,
            headers=request_headers,
            body=encode_body(body) if body is not None else None,
            source_url=f"https://hooks.example.com{path}",
            content_type=request_headers.get("content-type"),
            size=len(body) if body else 0,
            client_ip="203.0.113.7",
        ),
        **kwargs,
    )


def make_response(status=200, body=b"", headers=None):
    """A mocked aiohttp response usable as ``async with`` target."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {"Content-Type": "application/json"}
    response.read = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=body.decode("utf-8"))
    return response


def make_session(response=None, error=None):
    """A mocked aiohttp.ClientSession whose request/post yield ``response``."""
    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)

    request_cm = MagicMock()
    if error is not None:
        request_cm.__aenter__ = AsyncMock(side_effect=error)
    else:
        request_cm.__aenter__ = AsyncMock(return_value=response)
    request_cm.__aexit__ = AsyncMock(return_value=None)

    session.request.return_value = request_cm
    session.post.return_value = request_cm
    return session


@pytest.fixture
def store():
    """Fixture that provides an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def event_source():
    """Fixture that provides an in-process event feed."""
    return MemoryEventSource()


@pytest.fixture
def sample_event():
    """Fixture that provides a pending Stripe-style event."""
    return make_event({"type": "payment.succeeded", "data": {"object": {"id": "pi_123", "amount": 2000}}})


@pytest.fixture
def relay_config():
    """Fixture that provides a sample relay configuration."""
    return RelayConfig(
        endpoint_id="ep_123",
        local_port=3000,
        client_id="test-client",
        client_version="1.0.0",
        heartbeat_interval=0.05,
        reconnect_delay=0.05,
        delivery_timeout=5,
    )


@pytest.fixture
def webhook_destination():
    """Fixture that provides an active generic webhook destination."""
    return ForwardingDestination(
        id="dest_webhook",
        name="Internal API",
        type=DestinationType.WEBHOOK,
        config={"url": "https://internal.example.com/hooks", "headers": {"X-Source": "tunnel"}},
    )


@pytest.fixture
def slack_destination():
    """Fixture that provides an active Slack destination."""
    return ForwardingDestination(
        id="dest_slack",
        name="Payments channel",
        type=DestinationType.SLACK,
        config={"webhook_url": "https://hooks.slack.com/services/T000/B000/XXX", "channel": "#payments"},
    )


@pytest.fixture
def server_config(relay_config, webhook_destination):
    """Fixture that provides a sample server configuration."""
    return ServerConfig(
        host="0.0.0.0",
        port=8000,
        log_level="INFO",
        metrics=MetricsConfig(enabled=False),
        relay=relay_config,
        forwarding=ForwardingConfig(
            destinations=[webhook_destination],
            rules=[
                ForwardingRule(
                    id="rule_payments",
                    destination_id=webhook_destination.id,
                    filters=RuleFilters(event_names=["payment.succeeded"]),
                )
            ],
        ),
    )


@pytest.fixture
def mock_forwarder():
    """Fixture that provides a forwarder whose process_event is mocked."""
    forwarder = MagicMock()
    forwarder.process_event = AsyncMock()
    return forwarder


@pytest.fixture
def server_app(server_config, store, event_source, mock_forwarder):
    """Fixture that provides a configured FastAPI app."""
    with patch("webhook_tunnel.server.app.get_app_config") as mock_get_config, patch(
        "webhook_tunnel.server.app.get_store"
    ) as mock_get_store, patch(
        "webhook_tunnel.server.app.get_event_source"
    ) as mock_get_event_source, patch(
        "webhook_tunnel.server.app.get_forwarder"
    ) as mock_get_forwarder:
        mock_get_config.return_value = server_config
        mock_get_store.return_value = store
        mock_get_event_source.return_value = event_source
        mock_get_forwarder.return_value = mock_forwarder
        app = create_app(server_config)
        yield app


@pytest.fixture
def server_client(server_app):
    """Fixture that provides a test client for the ingestion API."""
    return TestClient(server_app)


@pytest.fixture
def event_factory():
    """Fixture that provides the make_event builder."""
    return make_event


@pytest.fixture
def response_factory():
    """Fixture that provides the mocked aiohttp response builder."""
    return make_response


@pytest.fixture
def session_factory():
    """Fixture that provides the mocked aiohttp session builder."""
    return make_session
