import base64
import json
from unittest.mock import patch

import aiohttp
import pytest

from webhook_tunnel.common.models import DestinationType, ForwardingDestination
from webhook_tunnel.forwarding.destinations import (
    ChatDestinationConfig,
    Destination,
    DestinationRegistry,
    DestinationResult,
    DiscordDestination,
    SlackDestination,
    TeamsDestination,
    WebhookDestination,
    WebhookDestinationConfig,
    send_to_destination,
)


def posted_json(session):
    _, kwargs = session.post.call_args
    return json.loads(kwargs["data"])


class TestWebhookDestination:

    @pytest.mark.asyncio
    async def test_missing_url(self):
        """Test that a missing URL fails before any network call."""
        destination = ForwardingDestination(type=DestinationType.WEBHOOK, config={})

        with patch("aiohttp.ClientSession") as mock_session_class:
            result = await send_to_destination({"type": "push"}, destination)

        assert result.success is False
        assert result.error == "Webhook URL is not configured"
        assert result.response is None
        mock_session_class.assert_not_called()

    @pytest.mark.asyncio
    async def test_send(self, webhook_destination, session_factory, response_factory):
        """Test that data is posted as JSON with the configured headers."""
        session = session_factory(response_factory(201, b'{"received": true}'))

        with patch("aiohttp.ClientSession", return_value=session):
            result = await send_to_destination({"type": "push"}, webhook_destination)

        assert result.success is True
        assert result.response.status == 201
        assert result.response.body == {"received": True}

        args, kwargs = session.post.call_args
        assert args == ("https://internal.example.com/hooks",)
        assert kwargs["headers"] == {"Content-Type": "application/json", "X-Source": "tunnel"}
        assert posted_json(session) == {"type": "push"}

    @pytest.mark.asyncio
    async def test_error_status(self, webhook_destination, session_factory, response_factory):
        """Test that a non-2xx answer fails with status and body text."""
        session = session_factory(response_factory(500, b"boom", {"Content-Type": "text/plain"}))

        with patch("aiohttp.ClientSession", return_value=session):
            result = await send_to_destination({"type": "push"}, webhook_destination)

        assert result.success is False
        assert result.error == "Webhook error: 500 - boom"
        assert result.response.status == 500
        assert result.response.body == "boom"

    @pytest.mark.asyncio
    async def test_network_error(self, webhook_destination, session_factory):
        """Test that network errors become a failed result."""
        session = session_factory(error=aiohttp.ClientConnectionError("Connection reset"))

        with patch("aiohttp.ClientSession", return_value=session):
            result = await send_to_destination({"type": "push"}, webhook_destination)

        assert result.success is False
        assert result.error == "Connection reset"

    def test_auth_headers(self):
        """Test bearer, basic and API key authentication headers."""
        destination = WebhookDestination()

        bearer = WebhookDestinationConfig.model_validate(
            {"url": "https://x", "authentication": {"type": "bearer", "token": "secret"}}
        )
        assert destination.build_headers(bearer)["Authorization"] == "Bearer secret"

        basic = WebhookDestinationConfig.model_validate(
            {"url": "https://x", "authentication": {"type": "basic", "username": "user", "password": "pass"}}
        )
        expected = base64.b64encode(b"user:pass").decode()
        assert destination.build_headers(basic)["Authorization"] == f"Basic {expected}"

        api_key = WebhookDestinationConfig.model_validate(
            {
                "url": "https://x",
                "authentication": {"type": "api_key", "api_key": "k-123", "api_key_header": "X-Api-Key"},
            }
        )
        headers = destination.build_headers(api_key)
        assert headers["X-Api-Key"] == "k-123"
        assert "Authorization" not in headers

    @pytest.mark.asyncio
    async def test_invalid_config(self):
        """Test that a malformed configuration is reported."""
        destination = ForwardingDestination(
            type=DestinationType.WEBHOOK,
            config={"url": "https://x", "authentication": {"type": "oauth"}},
        )
        result = await send_to_destination({}, destination)
        assert result.success is False
        assert result.error.startswith("Invalid Webhook configuration")


class TestSlackDestination:

    @pytest.mark.asyncio
    async def test_missing_url(self):
        """Test that a missing Slack webhook URL fails without a request."""
        destination = ForwardingDestination(type=DestinationType.SLACK, config={"channel": "#ops"})
        result = await send_to_destination({"text": "hi"}, destination)
        assert result.error == "Slack webhook URL is not configured"

    @pytest.mark.asyncio
    async def test_native_message(self, slack_destination, session_factory, response_factory):
        """Test that Slack-shaped data is sent as is with the channel injected."""
        session = session_factory(response_factory(200, b"ok", {"Content-Type": "text/plain"}))

        with patch("aiohttp.ClientSession", return_value=session):
            result = await send_to_destination({"text": "Payment received"}, slack_destination)

        assert result.success is True
        assert result.response.body == "ok"
        assert posted_json(session) == {"text": "Payment received", "channel": "#payments"}

    def test_default_message(self):
        """Test that arbitrary data is wrapped in header and section blocks."""
        message = SlackDestination().build_message(
            {"type": "payment.succeeded", "created_at": "2024-03-01T12:00:00Z"},
            ChatDestinationConfig(webhook_url="https://x"),
        )
        assert message["text"] == "Webhook Event: payment.succeeded"
        assert "channel" not in message
        assert message["blocks"][0]["type"] == "header"
        assert "2024-03-01T12:00:00Z" in message["blocks"][1]["fields"][0]["text"]

    def test_scalar_message(self):
        """Test that non-object data becomes the message text."""
        message = SlackDestination().build_message("deploy finished", ChatDestinationConfig())
        assert message == {"text": "Webhook Event: deploy finished"}


class TestDiscordDestination:

    def test_native_message(self):
        """Test that Discord-shaped data is sent as is."""
        data = {"content": "hello", "username": "bot"}
        assert DiscordDestination().build_message(data, ChatDestinationConfig()) == data

    def test_default_embed(self):
        """Test that small objects are rendered as the embed description."""
        message = DiscordDestination().build_message({"action": "opened"}, ChatDestinationConfig())
        embed = message["embeds"][0]
        assert embed["title"] == "Webhook Event: opened"
        assert json.loads(embed["description"]) == {"action": "opened"}

    def test_large_embed(self):
        """Test that large objects are rendered as a truncated field."""
        data = {"type": "bulk", "items": ["x" * 50 for _ in range(100)]}
        embed = DiscordDestination().build_message(data, ChatDestinationConfig())["embeds"][0]
        assert "description" not in embed
        assert embed["fields"][0]["name"] == "Event Data"
        assert len(embed["fields"][0]["value"]) <= 1000 + len("```json\n```")


class TestTeamsDestination:

    def test_native_message(self):
        """Test that MessageCard data is sent as is."""
        data = {"@type": "MessageCard", "summary": "x"}
        assert TeamsDestination().build_message(data, ChatDestinationConfig()) == data

    def test_default_card(self):
        """Test that objects are rendered as facts on a MessageCard."""
        message = TeamsDestination().build_message({"event": "build", "status": "green"}, ChatDestinationConfig())
        assert message["@type"] == "MessageCard"
        section = message["sections"][0]
        assert section["activityTitle"] == "Webhook Event: build"
        assert {"name": "status", "value": "green"} in section["facts"]


class TestEmailDestination:

    @pytest.mark.asyncio
    async def test_not_implemented(self):
        """Test that email dispatch reports it is not implemented."""
        destination = ForwardingDestination(type=DestinationType.EMAIL, config={"to": ["ops@example.com"]})
        result = await send_to_destination({"type": "x"}, destination)
        assert result == DestinationResult(success=False, error="not implemented")


class TestDestinationRegistry:

    def test_create(self):
        """Test that each destination type resolves to its implementation."""
        assert isinstance(DestinationRegistry.create(DestinationType.SLACK), SlackDestination)
        assert isinstance(DestinationRegistry.create("teams", timeout=3), TeamsDestination)
        assert DestinationRegistry.create(DestinationType.WEBHOOK, timeout=3).timeout == 3

    def test_unsupported(self):
        """Test that unknown types are rejected."""
        with pytest.raises(ValueError, match="Unsupported destination type: sms"):
            DestinationRegistry.get("sms")

    def test_register(self):
        """Test that new implementations can be registered."""

        class PagerDestination(Destination):
            async def deliver(self, data, config):
                return DestinationResult(success=True)

        original = DestinationRegistry.get(DestinationType.EMAIL)
        try:
            DestinationRegistry.register(DestinationType.EMAIL, PagerDestination)
            assert isinstance(DestinationRegistry.create(DestinationType.EMAIL), PagerDestination)
        finally:
            DestinationRegistry.register(DestinationType.EMAIL, original)

    def test_register_rejects_non_destinations(self):
        """Test that only Destination subclasses can be registered."""
        with pytest.raises(ValueError, match="must inherit from Destination"):
            DestinationRegistry.register(DestinationType.EMAIL, dict)
