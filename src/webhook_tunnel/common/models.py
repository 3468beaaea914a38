import base64
import binascii
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def encode_body(data: Union[bytes, str]) -> str:
    """Base64-encode a body so it survives text framing."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def try_decode_base64(value: str) -> Optional[bytes]:
    """Return the decoded bytes if ``value`` is strict base64, else None."""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_text(value: Optional[str]) -> Optional[str]:
    """Decode a stored body to text.

    Bodies are base64 when they were captured with binary safety in mind
    and plain text otherwise; anything that does not decode to UTF-8 is
    returned untouched.
    """
    if value is None:
        return None
    decoded = try_decode_base64(value)
    if decoded is not None:
        try:
            return decoded.decode("utf-8")
        except UnicodeDecodeError:
            pass
    return value


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EndpointStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class DestinationType(str, Enum):
    WEBHOOK = "webhook"
    SLACK = "slack"
    DISCORD = "discord"
    TEAMS = "teams"
    EMAIL = "email"


class OriginRequest(BaseModel):
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    source_url: str
    content_type: Optional[str] = None
    size: int = 0
    client_ip: Optional[str] = None

    @property
    def path(self) -> str:
        return urlparse(self.source_url).path or "/"

    @property
    def query(self) -> str:
        return urlparse(self.source_url).query

    def body_bytes(self) -> Optional[bytes]:
        if self.body is None:
            return None
        decoded = try_decode_base64(self.body)
        if decoded is not None:
            return decoded
        return self.body.encode("utf-8")

    def body_text(self) -> Optional[str]:
        return decode_text(self.body)

    def parsed_body(self) -> Any:
        """The body as JSON when it parses, the raw text otherwise, None if absent."""
        text = self.body_text()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text


class DeliveryResponse(BaseModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None  # base64

    def text(self) -> Optional[str]:
        return decode_text(self.body)


class Event(BaseModel):
    id: str = Field(default_factory=new_id)
    endpoint_id: str
    source: str = "*"
    origin_request: OriginRequest
    status: EventStatus = EventStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    timestamp: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    response: Optional[DeliveryResponse] = None


class Endpoint(BaseModel):
    id: str
    status: EndpointStatus = EndpointStatus.INACTIVE
    last_connection_at: Optional[datetime] = None


class Connection(BaseModel):
    id: str = Field(default_factory=new_id)
    endpoint_id: str
    client_id: str = "unknown"
    ip_address: str = "0.0.0.0"
    client_version: Optional[str] = None
    client_os: Optional[str] = None
    client_hostname: Optional[str] = None
    connected_at: datetime = Field(default_factory=utcnow)
    disconnected_at: Optional[datetime] = None
    last_ping_at: Optional[datetime] = None


class RuleFilters(BaseModel):
    event_names: Optional[List[str]] = None
    methods: Optional[List[str]] = None
    path_patterns: Optional[List[str]] = None
    headers: Optional[Dict[str, Union[str, List[str]]]] = None
    custom_filter: Optional[str] = None

    def is_empty(self) -> bool:
        return not (
            self.event_names
            or self.methods
            or self.path_patterns
            or self.headers
            or (self.custom_filter and self.custom_filter.strip())
        )


class ForwardingRule(BaseModel):
    id: str = Field(default_factory=new_id)
    endpoint_id: Optional[str] = None
    name: Optional[str] = None
    destination_id: str
    priority: int = 0
    is_active: bool = True
    filters: RuleFilters = Field(default_factory=RuleFilters)
    transformation: Optional[str] = None


class ForwardingDestination(BaseModel):
    id: str = Field(default_factory=new_id)
    name: Optional[str] = None
    type: DestinationType
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class DestinationResponse(BaseModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None


class ForwardingExecution(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    rule_id: str
    event_id: str
    original_payload: Any = None
    transformed_payload: Any = None
    destination_response: Optional[DestinationResponse] = None
    success: bool
    error: Optional[str] = None
    execution_time_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)
