import base64
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type

import aiohttp
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from webhook_tunnel.common.metrics import metrics
from webhook_tunnel.common.models import (
    DestinationResponse,
    DestinationType,
    ForwardingDestination,
)

DISPATCH_TIMEOUT = 15  # seconds
MAX_DATA_PREVIEW = 1000  # characters of JSON included in synthesized messages


class DestinationResult(BaseModel):
    success: bool
    response: Optional[DestinationResponse] = None
    error: Optional[str] = None


class AuthType(str, Enum):
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api_key"


class AuthConfig(BaseModel):
    type: AuthType
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: Optional[str] = None


class WebhookDestinationConfig(BaseModel):
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    authentication: Optional[AuthConfig] = None


class ChatDestinationConfig(BaseModel):
    webhook_url: Optional[str] = None
    channel: Optional[str] = None


class EmailDestinationConfig(BaseModel):
    to: List[str] = []
    subject: Optional[str] = None


def event_type_of(data: Any) -> str:
    if isinstance(data, dict):
        return str(data.get("type") or data.get("event") or data.get("action") or "Unknown Event")
    return "Unknown Event"


def timestamp_of(data: Any) -> str:
    if isinstance(data, dict) and (data.get("timestamp") or data.get("created_at")):
        return str(data.get("timestamp") or data.get("created_at"))
    return datetime.now(timezone.utc).isoformat()


def data_preview(data: Any, limit: int = MAX_DATA_PREVIEW) -> str:
    return json.dumps(data, indent=2, default=str)[:limit]


class Destination(ABC):
    """Sends transformed event data to one kind of external sink."""

    label = "Destination"
    config_model: Type[BaseModel] = BaseModel

    def __init__(self, timeout: float = DISPATCH_TIMEOUT):
        self.timeout = timeout

    async def send(self, data: Any, config: Dict[str, Any]) -> DestinationResult:
        try:
            parsed = self.config_model.model_validate(config or {})
        except ValidationError as e:
            return DestinationResult(success=False, error=f"Invalid {self.label} configuration: {e}")
        try:
            return await self.deliver(data, parsed)
        except Exception as e:
            logger.error(f"Failed to send to {self.label}: {e}")
            return DestinationResult(success=False, error=str(e) or e.__class__.__name__)

    @abstractmethod
    async def deliver(self, data: Any, config: BaseModel) -> DestinationResult:
        pass


class HTTPDestination(Destination):
    """A destination reached with a single JSON POST."""

    url_field = "webhook_url"

    def build_message(self, data: Any, config: BaseModel) -> Any:
        return data

    def build_headers(self, config: BaseModel) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def parse_body(self, text: str) -> Any:
        return text

    async def deliver(self, data: Any, config: BaseModel) -> DestinationResult:
        url = getattr(config, self.url_field)
        if not url:
            return DestinationResult(success=False, error=f"{self.label} URL is not configured")

        message = self.build_message(data, config)
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url,
                headers=self.build_headers(config),
                data=json.dumps(message, default=str),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                text = await response.text()
                destination_response = DestinationResponse(
                    status=response.status,
                    headers={key: value for key, value in response.headers.items()},
                    body=self.parse_body(text),
                )
                if 200 <= response.status < 300:
                    logger.info(f"Sent to {self.label} (status={response.status})")
                    return DestinationResult(success=True, response=destination_response)

                logger.error(f"{self.label} responded with {response.status}: {text}")
                return DestinationResult(
                    success=False,
                    response=destination_response,
                    error=f"{self.label} error: {response.status} - {text}",
                )


class WebhookDestination(HTTPDestination):
    label = "Webhook"
    config_model = WebhookDestinationConfig
    url_field = "url"

    def build_headers(self, config: WebhookDestinationConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **config.headers}
        auth = config.authentication
        if auth is None:
            return headers

        if auth.type == AuthType.BEARER and auth.token:
            headers["Authorization"] = f"Bearer {auth.token}"
        elif auth.type == AuthType.BASIC and auth.username and auth.password:
            credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
            headers["Authorization"] = f"Basic {credentials}"
        elif auth.type == AuthType.API_KEY and auth.api_key and auth.api_key_header:
            headers[auth.api_key_header] = auth.api_key
        return headers

    def parse_body(self, text: str) -> Any:
        try:
            return json.loads(text)
        except ValueError:
            return text


class SlackDestination(HTTPDestination):
    label = "Slack webhook"
    config_model = ChatDestinationConfig

    @staticmethod
    def is_native(data: Any) -> bool:
        return isinstance(data, dict) and (
            isinstance(data.get("text"), str)
            or isinstance(data.get("blocks"), list)
            or isinstance(data.get("attachments"), list)
        )

    def build_message(self, data: Any, config: ChatDestinationConfig) -> Dict[str, Any]:
        if self.is_native(data):
            if config.channel:
                return {**data, "channel": config.channel}
            return data

        message: Dict[str, Any] = {"text": "Webhook Event"}
        if config.channel:
            message["channel"] = config.channel

        if isinstance(data, dict):
            summary = f"Webhook Event: {event_type_of(data)}"
            message["text"] = summary
            message["blocks"] = [
                {"type": "header", "text": {"type": "plain_text", "text": summary}},
                {
                    "type": "section",
                    "fields": [{"type": "mrkdwn", "text": f"*Timestamp:*\n{timestamp_of(data)}"}],
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Event Data:*\n```{data_preview(data)}```"},
                },
            ]
        else:
            message["text"] = f"Webhook Event: {data}"
        return message


class DiscordDestination(HTTPDestination):
    label = "Discord webhook"
    config_model = ChatDestinationConfig

    @staticmethod
    def is_native(data: Any) -> bool:
        return isinstance(data, dict) and (
            isinstance(data.get("content"), str)
            or isinstance(data.get("embeds"), list)
            or isinstance(data.get("username"), str)
        )

    def build_message(self, data: Any, config: ChatDestinationConfig) -> Dict[str, Any]:
        if self.is_native(data):
            return data

        embed: Dict[str, Any] = {
            "title": "Webhook Event",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "color": 0x7289DA,
        }
        if isinstance(data, dict):
            embed["title"] = f"Webhook Event: {event_type_of(data)}"
            embed["timestamp"] = timestamp_of(data)
            compact = json.dumps(data, default=str)
            if len(compact) < 200:
                embed["description"] = json.dumps(data, indent=2, default=str)
            else:
                embed["fields"] = [
                    {
                        "name": "Event Data",
                        "value": f"```json\n{data_preview(data)}```",
                        "inline": False,
                    }
                ]
        else:
            embed["description"] = str(data)
        return {"embeds": [embed]}


class TeamsDestination(HTTPDestination):
    label = "Teams webhook"
    config_model = ChatDestinationConfig

    @staticmethod
    def is_native(data: Any) -> bool:
        return isinstance(data, dict) and (
            data.get("@type") == "MessageCard"
            or isinstance(data.get("text"), str)
            or isinstance(data.get("sections"), list)
        )

    def build_message(self, data: Any, config: ChatDestinationConfig) -> Dict[str, Any]:
        if self.is_native(data):
            return data

        sections: List[Dict[str, Any]] = []
        if isinstance(data, dict):
            sections.append(
                {
                    "activityTitle": f"Webhook Event: {event_type_of(data)}",
                    "activitySubtitle": timestamp_of(data),
                    "facts": [
                        {"name": key, "value": str(value)[:100]}
                        for key, value in list(data.items())[:10]
                    ],
                    "markdown": True,
                }
            )
            if len(data) > 10:
                sections.append({"markdown": True, "text": f"```json\n{data_preview(data)}```"})
        else:
            sections.append({"markdown": False, "text": str(data)})

        return {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": "Webhook Event",
            "themeColor": "0078D7",
            "sections": sections,
        }


class EmailDestination(Destination):
    label = "Email"
    config_model = EmailDestinationConfig

    async def deliver(self, data: Any, config: EmailDestinationConfig) -> DestinationResult:
        logger.warning("Email destinations are not implemented")
        return DestinationResult(success=False, error="not implemented")


class DestinationRegistry:
    """Registry of destination implementations by destination type."""

    _destinations: Dict[DestinationType, Type[Destination]] = {
        DestinationType.WEBHOOK: WebhookDestination,
        DestinationType.SLACK: SlackDestination,
        DestinationType.DISCORD: DiscordDestination,
        DestinationType.TEAMS: TeamsDestination,
        DestinationType.EMAIL: EmailDestination,
    }

    @classmethod
    def register(cls, destination_type: DestinationType, destination_class: Type[Destination]) -> None:
        if not issubclass(destination_class, Destination):
            raise ValueError(f"{destination_class} must inherit from Destination")
        cls._destinations[DestinationType(destination_type)] = destination_class

    @classmethod
    def get(cls, destination_type: DestinationType) -> Type[Destination]:
        try:
            return cls._destinations[DestinationType(destination_type)]
        except (KeyError, ValueError):
            raise ValueError(f"Unsupported destination type: {destination_type}")

    @classmethod
    def create(cls, destination_type: DestinationType, timeout: float = DISPATCH_TIMEOUT) -> Destination:
        return cls.get(destination_type)(timeout=timeout)


async def send_to_destination(
    data: Any,
    destination: ForwardingDestination,
    timeout: float = DISPATCH_TIMEOUT,
) -> DestinationResult:
    """Dispatch to a configured destination; never raises."""
    try:
        sender = DestinationRegistry.create(destination.type, timeout=timeout)
    except ValueError as e:
        return DestinationResult(success=False, error=str(e))

    with metrics.dispatch_latency.labels(destination_type=destination.type.value).time():
        return await sender.send(data, destination.config)
