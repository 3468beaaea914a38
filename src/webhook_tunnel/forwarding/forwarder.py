import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger
from pydantic import BaseModel

from webhook_tunnel.common.metrics import metrics
from webhook_tunnel.common.models import (
    Event,
    ForwardingDestination,
    ForwardingExecution,
    ForwardingRule,
)
from webhook_tunnel.common.store import Store, Table
from webhook_tunnel.forwarding.destinations import DISPATCH_TIMEOUT, send_to_destination
from webhook_tunnel.forwarding.filters import FilterEvaluator
from webhook_tunnel.forwarding.sandbox import TransformationSandbox


class ForwardingResult(BaseModel):
    success: bool
    executions: List[ForwardingExecution]


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)


def _original_payload(event: Event) -> Any:
    return event.origin_request.parsed_body()


class WebhookForwarder:
    """Runs filter → transform → dispatch for each rule of an event.

    One ForwardingExecution is recorded per rule that passed its filter.
    Inactive rules, rules whose destination is missing or inactive, and
    filtered-out rules leave no execution behind.
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        sandbox: Optional[TransformationSandbox] = None,
        filter_evaluator: Optional[FilterEvaluator] = None,
        dispatch_timeout: float = DISPATCH_TIMEOUT,
    ):
        self.store = store
        self.sandbox = sandbox or TransformationSandbox()
        self.filter_evaluator = filter_evaluator or FilterEvaluator(self.sandbox)
        self.dispatch_timeout = dispatch_timeout

    async def forward_event(
        self,
        event: Event,
        rules: Sequence[ForwardingRule],
        destinations: Mapping[str, ForwardingDestination],
    ) -> ForwardingResult:
        executions: List[ForwardingExecution] = []

        # Lower priority numbers first; sorted() keeps insertion order on ties
        for rule in sorted(rules, key=lambda r: r.priority):
            if not rule.is_active:
                metrics.forwarding_skipped_total.labels(reason="inactive_rule").inc()
                continue

            destination = destinations.get(rule.destination_id)
            if destination is None or not destination.is_active:
                metrics.forwarding_skipped_total.labels(reason="unresolved_destination").inc()
                logger.warning(
                    f"Destination {rule.destination_id} not found or inactive for rule {rule.id}"
                )
                continue

            execution = await self.process_rule(event, rule, destination)
            if execution is not None:
                executions.append(execution)

        return ForwardingResult(
            success=any(execution.success for execution in executions),
            executions=executions,
        )

    async def process_rule(
        self,
        event: Event,
        rule: ForwardingRule,
        destination: ForwardingDestination,
    ) -> Optional[ForwardingExecution]:
        """Run one rule; None when the rule's filter rejected the event."""
        start_time = time.monotonic()
        try:
            filter_result = await self.filter_evaluator.evaluate(event, rule.filters)
            if not filter_result.passed:
                metrics.forwarding_skipped_total.labels(reason="filtered").inc()
                logger.debug(f"Rule {rule.id} filtered out: {filter_result.reason}")
                return None

            transform_result = await self.sandbox.transform(rule.transformation, event)
            if not transform_result.success:
                execution = ForwardingExecution(
                    rule_id=rule.id,
                    event_id=event.id,
                    original_payload=_original_payload(event),
                    success=False,
                    error=f"Transformation failed: {transform_result.error}",
                    execution_time_ms=_elapsed_ms(start_time),
                )
                self._record(execution, destination)
                return execution

            destination_result = await send_to_destination(
                transform_result.data, destination, timeout=self.dispatch_timeout
            )
            execution = ForwardingExecution(
                rule_id=rule.id,
                event_id=event.id,
                original_payload=_original_payload(event),
                transformed_payload=transform_result.data,
                destination_response=destination_result.response,
                success=destination_result.success,
                error=destination_result.error,
                execution_time_ms=_elapsed_ms(start_time),
            )
            if destination_result.success:
                logger.info(
                    f"Forwarded event {event.id} via rule {rule.id} to {destination.type.value}"
                )
            else:
                logger.warning(
                    f"Failed to forward event {event.id} via rule {rule.id}: {destination_result.error}"
                )
            self._record(execution, destination)
            return execution
        except Exception as e:
            logger.error(f"Error processing rule {rule.id} for event {event.id}: {e}")
            execution = ForwardingExecution(
                rule_id=rule.id,
                event_id=event.id,
                original_payload=None,
                success=False,
                error=str(e) or "Unknown error",
                execution_time_ms=_elapsed_ms(start_time),
            )
            self._record(execution, destination)
            return execution

    @staticmethod
    def _record(execution: ForwardingExecution, destination: ForwardingDestination) -> None:
        metrics.forwarding_executions_total.labels(
            destination_type=destination.type.value,
            success=str(execution.success).lower(),
        ).inc()

    async def process_event(self, event: Event) -> ForwardingResult:
        """Load the endpoint's rules from the store, forward, persist executions."""
        if self.store is None:
            raise RuntimeError("Forwarder has no store configured")

        rules = await self.store.find(Table.FORWARDING_RULES, endpoint_id=event.endpoint_id)
        destinations: Dict[str, ForwardingDestination] = {
            destination.id: destination
            for destination in await self.store.find(Table.FORWARDING_DESTINATIONS)
        }

        result = await self.forward_event(event, rules, destinations)
        for execution in result.executions:
            await self.store.insert(Table.FORWARDING_EXECUTIONS, execution)

        logger.info(
            f"Forwarded event {event.id}: {len(result.executions)} execution(s), "
            f"success={result.success}"
        )
        return result
