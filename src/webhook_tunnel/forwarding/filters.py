import re
from typing import Optional

from loguru import logger
from pydantic import BaseModel

from webhook_tunnel.common.models import Event, RuleFilters
from webhook_tunnel.forwarding.sandbox import TransformationSandbox

# Common event name fields in webhook payloads, in order of precedence
EVENT_NAME_FIELDS = ("type", "event", "event_type", "action", "eventName", "event_name", "name")


class FilterResult(BaseModel):
    passed: bool
    reason: Optional[str] = None


def extract_event_name(event: Event) -> str:
    """Logical event name from the body, falling back to the last path segment."""
    body = event.origin_request.parsed_body()
    if isinstance(body, dict):
        for field in EVENT_NAME_FIELDS:
            value = body.get(field)
            if value:
                return str(value)

    # e.g. /webhooks/stripe/payment.succeeded
    return event.origin_request.path.split("/")[-1] or "unknown"


def custom_filter_code(expression: str) -> str:
    return (
        "def transform(context):\n"
        f"    return {{'should_forward': bool({expression.strip()})}}\n"
    )


class FilterEvaluator:
    """Decides whether a forwarding rule applies to an event.

    Categories are checked in a fixed order and the first one that fails
    decides the result. Evaluation never raises.
    """

    def __init__(self, sandbox: Optional[TransformationSandbox] = None):
        self.sandbox = sandbox or TransformationSandbox()

    async def evaluate(self, event: Event, filters: Optional[RuleFilters]) -> FilterResult:
        if filters is None or filters.is_empty():
            return FilterResult(passed=True)

        try:
            request = event.origin_request

            if filters.event_names:
                event_name = extract_event_name(event)
                if event_name not in filters.event_names:
                    return FilterResult(
                        passed=False,
                        reason=f'Event name "{event_name}" not in allowed list',
                    )

            if filters.methods:
                method = request.method.upper()
                if method not in [m.upper() for m in filters.methods]:
                    return FilterResult(
                        passed=False,
                        reason=f'HTTP method "{method}" not in allowed list',
                    )

            if filters.path_patterns:
                path = request.path
                if not any(self._matches(pattern, path) for pattern in filters.path_patterns):
                    return FilterResult(
                        passed=False,
                        reason=f'Path "{path}" does not match any allowed patterns',
                    )

            if filters.headers:
                actual_headers = {key.lower(): value for key, value in request.headers.items()}
                for header_name, expected in filters.headers.items():
                    actual = actual_headers.get(header_name.lower())
                    if actual is None:
                        return FilterResult(
                            passed=False,
                            reason=f'Required header "{header_name}" not found',
                        )
                    expected_values = expected if isinstance(expected, list) else [expected]
                    if str(actual) not in [str(value) for value in expected_values]:
                        return FilterResult(
                            passed=False,
                            reason=f'Header "{header_name}" value "{actual}" not in allowed list',
                        )

            if filters.custom_filter and filters.custom_filter.strip():
                result = await self.sandbox.transform(custom_filter_code(filters.custom_filter), event)
                if not result.success:
                    logger.warning(f"Custom filter evaluation failed: {result.error}")
                    return FilterResult(passed=False, reason=f"Custom filter error: {result.error}")
                if not isinstance(result.data, dict) or result.data.get("should_forward") is not True:
                    return FilterResult(passed=False, reason="Custom filter returned false")

            return FilterResult(passed=True)
        except Exception as e:
            logger.error(f"Filter evaluation error for event {event.id}: {e}")
            return FilterResult(passed=False, reason=str(e) or "Unknown filter error")

    @staticmethod
    def _matches(pattern: str, path: str) -> bool:
        try:
            return re.search(pattern, path) is not None
        except (re.error, TypeError) as e:
            logger.warning(f"Invalid path pattern {pattern!r}: {e}")
            return False
