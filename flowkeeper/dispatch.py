"""Trigger dispatcher: turns events, schedules, webhooks and manual calls into executions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from .conditions import matches_filter
from .constants import DEFAULT_EVENTS_TOPIC
from .contracts import DispatchResult, PlatformEvent
from .errors import (
    RateLimitExceededError,
    WebhookMethodNotAllowedError,
    WebhookNotFoundError,
    WebhookSignatureError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from .models import (
    EventLogEntry,
    EventSubscription,
    TriggerType,
    WorkflowDefinition,
    WorkflowExecution,
    utcnow,
)
from .persistence import WorkflowRepository
from .scheduling import next_run
from .transports import BaseTransport
from .webhooks import canonical_body, signature_from_headers, verify_signature

logger = logging.getLogger(__name__)


def build_trigger_context(
    data: Mapping[str, Any], metadata: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Shape of ``context.trigger``.

    Payload fields are reachable both directly (``trigger.email``) and under
    ``trigger.payload``; event metadata sits alongside them.
    """
    trigger = dict(data)
    trigger["payload"] = dict(data)
    if metadata:
        trigger.update(metadata)
    return trigger


def initial_context(trigger: Mapping[str, Any]) -> Dict[str, Any]:
    return {"trigger": dict(trigger), "steps": {}, "variables": {}}


class TriggerDispatcher:
    """Service responsible for creating executions from triggers.

    Every path shares :meth:`create_execution`, which enforces the hourly
    execution ceiling of the definition.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        clock: Callable[[], datetime] = utcnow,
        topic: str = DEFAULT_EVENTS_TOPIC,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self.topic = topic

    # ------------------------------------------------------------------
    # shared creation contract
    # ------------------------------------------------------------------
    async def create_execution(
        self,
        workflow: WorkflowDefinition,
        trigger_type: TriggerType,
        trigger_data: Optional[Dict[str, Any]] = None,
        trigger_event_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        parent_execution_id: Optional[str] = None,
        attempt_number: int = 1,
    ) -> WorkflowExecution:
        """Create a ``pending`` execution of ``workflow``.

        Raises:
            RateLimitExceededError: the definition already created
                ``max_executions_per_hour`` executions in the last hour.
        """
        now = self._clock()
        limit = workflow.max_executions_per_hour
        if limit is not None:
            recent = await self._repository.count_executions_since(
                workflow.id, now - timedelta(hours=1)
            )
            if recent >= limit:
                raise RateLimitExceededError(workflow.id, limit)

        data = dict(trigger_data or {})
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            trigger_type=trigger_type,
            trigger_event_id=trigger_event_id,
            trigger_data=data,
            context=initial_context(build_trigger_context(data, metadata)),
            attempt_number=attempt_number,
            parent_execution_id=parent_execution_id,
            created_at=now,
        )
        created = await self._repository.create_execution(execution)
        logger.info(
            f"Created execution {created.id} for workflow {workflow.id} "
            f"(trigger={trigger_type.value}, attempt={attempt_number})"
        )
        return created

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------
    async def handle_event(self, event: PlatformEvent) -> DispatchResult:
        """Create executions for every matching subscription of ``event``.

        A failing subscription is logged and reported in ``errors``; the
        remaining subscriptions are still evaluated.
        """
        result = DispatchResult()
        subscriptions = await self._repository.list_subscriptions(
            tenant_id=event.tenant_id, event_type=event.type
        )
        logger.debug(
            f"Event {event.id} ({event.type}) has {len(subscriptions)} candidate subscriptions"
        )
        for subscription in subscriptions:
            try:
                execution = await self._dispatch_subscription(subscription, event)
            except RateLimitExceededError as exc:
                logger.warning(str(exc))
                result.rejected.append(subscription.workflow_id)
                continue
            except Exception as exc:
                logger.exception(
                    f"Subscription {subscription.id} failed for event {event.id}"
                )
                result.errors[subscription.id] = str(exc)
                continue
            if execution is not None:
                result.execution_ids.append(execution.id)
                result.workflow_ids.append(execution.workflow_id)

        result.merge(await self.deliver_to_waiting(event))
        return result

    async def _dispatch_subscription(
        self, subscription: EventSubscription, event: PlatformEvent
    ) -> Optional[WorkflowExecution]:
        if subscription.source_module and subscription.source_module != event.source_module:
            logger.debug(
                f"Subscription {subscription.id} expects source {subscription.source_module}"
            )
            return None

        workflow = await self._repository.get_workflow(subscription.workflow_id)
        if workflow is None or not workflow.is_active:
            logger.debug(f"Workflow {subscription.workflow_id} is missing or inactive")
            return None

        if not matches_filter(subscription.filter, event.payload):
            logger.debug(f"Event {event.id} does not match subscription {subscription.id}")
            return None

        execution = await self.create_execution(
            workflow,
            TriggerType.EVENT,
            event.payload,
            trigger_event_id=event.id,
            metadata=event.metadata(),
        )
        await self._repository.record_subscription_hit(subscription.id, self._clock())
        return execution

    async def deliver_to_waiting(self, event: PlatformEvent) -> DispatchResult:
        """Wake executions paused on ``wait_for_event`` for this event."""
        result = DispatchResult()
        now = self._clock()
        waiting = await self._repository.list_waiting_executions(
            event.tenant_id, event.type
        )
        for execution in waiting:
            condition = execution.waiting_for
            if condition is None:
                continue
            if condition.deadline is not None and condition.deadline < now:
                continue
            try:
                if not matches_filter(condition.filter, event.payload):
                    continue
            except Exception as exc:
                logger.exception(f"Wait filter of execution {execution.id} failed")
                result.errors[execution.id] = str(exc)
                continue
            delivered = await self._repository.deliver_wait_event(
                execution.id,
                condition.step_id,
                {**event.metadata(), "payload": dict(event.payload)},
                now,
            )
            if delivered:
                logger.info(f"Delivered event {event.id} to waiting execution {execution.id}")
                result.resumed_execution_ids.append(execution.id)
        return result

    async def ingest(self, event: PlatformEvent) -> DispatchResult:
        """Persist ``event`` to the event log, dispatch it and mark it processed."""
        await self._repository.record_event(
            EventLogEntry(
                id=event.id,
                tenant_id=event.tenant_id,
                event_type=event.type,
                source_module=event.source_module,
                payload=event.payload,
                occurred_at=event.occurred_at,
                created_at=self._clock(),
            )
        )
        result = await self.handle_event(event)
        await self._repository.mark_event_processed(
            event.id, result.workflow_ids, self._clock()
        )
        return result

    async def process_pending_events(
        self, tenant_id: Optional[str] = None, limit: Optional[int] = None
    ) -> DispatchResult:
        """Dispatch event log entries that were recorded but not processed."""
        result = DispatchResult()
        for entry in await self._repository.list_unprocessed_events(tenant_id, limit):
            event = PlatformEvent(
                id=entry.id,
                type=entry.event_type,
                tenant_id=entry.tenant_id,
                source_module=entry.source_module,
                payload=entry.payload,
                occurred_at=entry.occurred_at,
            )
            outcome = await self.handle_event(event)
            await self._repository.mark_event_processed(
                entry.id, outcome.workflow_ids, self._clock()
            )
            result.merge(outcome)
        return result

    async def consume(
        self,
        transport: BaseTransport,
        topic: Optional[str] = None,
        lifespan: Optional[float] = None,
    ) -> None:
        """Ingest events from ``transport`` until ``lifespan`` elapses."""
        topic = topic or self.topic
        logger.info(f"Consuming events from {topic}")
        async for raw_message, event in transport.subscribe(topic, lifespan=lifespan):
            try:
                await self.ingest(event)
            except Exception:
                logger.exception(f"Failed to ingest event {event.id}; requeueing")
                await transport.nack(raw_message, requeue=True)
                continue
            await transport.ack(raw_message)

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------
    async def process_schedules(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> DispatchResult:
        """Fire every due scheduled job exactly once.

        ``next_run_at`` is advanced with a compare-and-set before the execution
        is created, so a concurrent sweeper that loses the race skips the job.
        """
        now = now or self._clock()
        result = DispatchResult()
        for job in await self._repository.list_due_schedules(now, limit):
            following = next_run(job.cron_expression, now, job.timezone)
            advanced = await self._repository.advance_schedule(
                job.id, job.next_run_at, following, now
            )
            if not advanced:
                logger.debug(f"Schedule {job.id} was already fired by another sweeper")
                continue

            workflow = await self._repository.get_workflow(job.workflow_id)
            if workflow is None or not workflow.is_active:
                logger.info(f"Skipping schedule {job.id}: workflow {job.workflow_id} is inactive")
                continue

            trigger_data = {"scheduled_at": job.next_run_at.isoformat(), "job_id": job.id}
            try:
                execution = await self.create_execution(
                    workflow, TriggerType.SCHEDULE, trigger_data
                )
            except RateLimitExceededError as exc:
                logger.warning(str(exc))
                result.rejected.append(workflow.id)
                continue
            except Exception as exc:
                logger.exception(f"Schedule {job.id} failed to create an execution")
                result.errors[job.id] = str(exc)
                updated = await self._repository.record_schedule_result(job.id, False)
                if updated is not None and not updated.is_active:
                    logger.error(
                        f"Schedule {job.id} deactivated after "
                        f"{updated.consecutive_failures} consecutive failures"
                    )
                continue

            await self._repository.record_schedule_result(job.id, True)
            result.execution_ids.append(execution.id)
            result.workflow_ids.append(workflow.id)
        return result

    # ------------------------------------------------------------------
    # webhooks and manual calls
    # ------------------------------------------------------------------
    async def handle_webhook(
        self,
        tenant_id: str,
        endpoint_path: str,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        method: str = "POST",
    ) -> WorkflowExecution:
        """Create an execution for an inbound webhook call.

        When the endpoint has a secret, the HMAC SHA-256 signature of ``body``
        (or of the canonical JSON of ``payload`` when no raw body is given)
        must be present in ``x-webhook-signature`` or ``x-signature``.
        """
        payload = dict(payload or {})
        headers = dict(headers or {})
        endpoint = await self._repository.get_webhook_endpoint(tenant_id, endpoint_path)
        if endpoint is None or not endpoint.is_active:
            raise WebhookNotFoundError(endpoint_path)

        method = method.upper()
        if endpoint.allowed_methods and method not in endpoint.allowed_methods:
            raise WebhookMethodNotAllowedError(method, endpoint.allowed_methods)

        if endpoint.secret_key:
            raw = body if body is not None else canonical_body(payload)
            if not verify_signature(endpoint.secret_key, raw, signature_from_headers(headers)):
                raise WebhookSignatureError(f"Invalid signature for webhook {endpoint_path}")

        workflow = await self._repository.get_workflow(endpoint.workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(endpoint.workflow_id)
        if not workflow.is_active:
            raise WorkflowInactiveError(workflow.id)

        trigger_data = {**payload, "_headers": headers, "_webhook_path": endpoint_path}
        execution = await self.create_execution(workflow, TriggerType.WEBHOOK, trigger_data)
        await self._repository.record_webhook_call(endpoint.id, self._clock())
        return execution

    async def trigger_manual(
        self,
        workflow_id: str,
        payload: Optional[Dict[str, Any]] = None,
        require_active: bool = False,
    ) -> WorkflowExecution:
        """Run a workflow on demand ("Run now")."""
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if require_active and not workflow.is_active:
            raise WorkflowInactiveError(workflow_id)
        return await self.create_execution(workflow, TriggerType.MANUAL, payload)


