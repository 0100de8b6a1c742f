"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, TypeVar

from pydantic import BaseModel

from ..errors import DefinitionValidationError
from ..models import (
    CANCELLABLE_STATUSES,
    EventLogEntry,
    EventSubscription,
    ExecutionStatus,
    ScheduledJob,
    StepExecutionLog,
    WebhookEndpoint,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowVariable,
)
from .repository import RUN_COUNTER_FIELDS, WorkflowRepository

M = TypeVar("M", bound=BaseModel)


def _copy(model: M) -> M:
    return model.model_copy(deep=True)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Mutations are serialised with an
    :class:`asyncio.Lock` so conditional transitions behave like their SQL
    counterparts within one event loop.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._steps: Dict[str, List[WorkflowStep]] = {}
        self._variables: Dict[str, Dict[str, WorkflowVariable]] = {}
        self._subscriptions: Dict[str, EventSubscription] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._step_logs: Dict[str, List[StepExecutionLog]] = {}
        self._schedules: Dict[str, ScheduledJob] = {}
        self._webhooks: Dict[str, WebhookEndpoint] = {}
        self._events: Dict[str, EventLogEntry] = {}

    async def close(self) -> None:
        """Nothing to release."""
        pass

    # ------------------------------------------------------------------
    # definitions
    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        async with self._lock:
            for other in self._workflows.values():
                if (
                    other.id != workflow.id
                    and other.tenant_id == workflow.tenant_id
                    and other.slug == workflow.slug
                ):
                    raise DefinitionValidationError(
                        f"slug '{workflow.slug}' is already used by workflow {other.id}"
                    )
            stored = _copy(workflow)
            existing = self._workflows.get(workflow.id)
            if existing is not None:
                for name in RUN_COUNTER_FIELDS:
                    setattr(stored, name, getattr(existing, name))
            self._workflows[workflow.id] = stored
            return _copy(stored)

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        workflow = self._workflows.get(workflow_id)
        return _copy(workflow) if workflow else None

    async def get_workflow_by_slug(
        self, tenant_id: str, slug: str
    ) -> Optional[WorkflowDefinition]:
        for workflow in self._workflows.values():
            if workflow.tenant_id == tenant_id and workflow.slug == slug:
                return _copy(workflow)
        return None

    async def list_workflows(
        self, tenant_id: Optional[str] = None, is_active: Optional[bool] = None
    ) -> List[WorkflowDefinition]:
        return [
            _copy(wf)
            for wf in sorted(self._workflows.values(), key=lambda wf: wf.created_at)
            if (tenant_id is None or wf.tenant_id == tenant_id)
            and (is_active is None or wf.is_active == is_active)
        ]

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._lock:
            if self._workflows.pop(workflow_id, None) is None:
                return False
            self._steps.pop(workflow_id, None)
            self._variables.pop(workflow_id, None)
            for store in (self._subscriptions, self._schedules, self._webhooks):
                for key in [k for k, v in store.items() if v.workflow_id == workflow_id]:
                    del store[key]
            for key in [
                k for k, v in self._executions.items() if v.workflow_id == workflow_id
            ]:
                del self._executions[key]
                self._step_logs.pop(key, None)
            return True

    async def record_run_result(
        self,
        workflow_id: str,
        success: bool,
        at: datetime,
        error: Optional[str] = None,
    ) -> None:
        async with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                return
            workflow.total_runs += 1
            workflow.last_run_at = at
            if success:
                workflow.successful_runs += 1
                workflow.last_success_at = at
            else:
                workflow.failed_runs += 1
                workflow.last_error_at = at
                workflow.last_error = error

    # ------------------------------------------------------------------
    # steps and variables
    # ------------------------------------------------------------------
    async def save_steps(self, workflow_id: str, steps: List[WorkflowStep]) -> None:
        async with self._lock:
            self._steps[workflow_id] = sorted(
                (_copy(step) for step in steps), key=lambda step: step.position
            )

    async def list_steps(
        self, workflow_id: str, active_only: bool = False
    ) -> List[WorkflowStep]:
        return [
            _copy(step)
            for step in self._steps.get(workflow_id, [])
            if step.is_active or not active_only
        ]

    async def save_variable(self, variable: WorkflowVariable) -> WorkflowVariable:
        async with self._lock:
            variables = self._variables.setdefault(variable.workflow_id, {})
            existing = variables.get(variable.key)
            stored = _copy(variable)
            if existing is not None:
                stored.id = existing.id
            variables[variable.key] = stored
            return _copy(stored)

    async def list_variables(self, workflow_id: str) -> List[WorkflowVariable]:
        return [_copy(v) for v in self._variables.get(workflow_id, {}).values()]

    async def delete_variable(self, workflow_id: str, key: str) -> bool:
        async with self._lock:
            return self._variables.get(workflow_id, {}).pop(key, None) is not None

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    async def save_subscription(self, subscription: EventSubscription) -> EventSubscription:
        async with self._lock:
            stored = _copy(subscription)
            for existing in self._subscriptions.values():
                if existing.id == subscription.id or (
                    existing.workflow_id == subscription.workflow_id
                    and existing.event_type == subscription.event_type
                    and existing.source_module == subscription.source_module
                ):
                    stored.id = existing.id
                    stored.events_received = existing.events_received
                    stored.last_event_at = existing.last_event_at
                    break
            self._subscriptions[stored.id] = stored
            return _copy(stored)

    async def list_subscriptions(
        self,
        tenant_id: Optional[str] = None,
        event_type: Optional[str] = None,
        workflow_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[EventSubscription]:
        return [
            _copy(sub)
            for sub in self._subscriptions.values()
            if (tenant_id is None or sub.tenant_id == tenant_id)
            and (event_type is None or sub.event_type == event_type)
            and (workflow_id is None or sub.workflow_id == workflow_id)
            and (sub.is_active or not active_only)
        ]

    async def delete_subscription(self, subscription_id: str) -> bool:
        async with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    async def record_subscription_hit(self, subscription_id: str, at: datetime) -> None:
        async with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is not None:
                subscription.events_received += 1
                subscription.last_event_at = at

    # ------------------------------------------------------------------
    # executions
    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            self._executions[execution.id] = _copy(execution)
            self._step_logs.setdefault(execution.id, [])
            return _copy(execution)

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self._executions.get(execution_id)
        return _copy(execution) if execution else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        matches = [
            ex
            for ex in self._executions.values()
            if (workflow_id is None or ex.workflow_id == workflow_id)
            and (tenant_id is None or ex.tenant_id == tenant_id)
            and (status is None or ex.status == status)
        ]
        matches.sort(key=lambda ex: ex.created_at, reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [_copy(ex) for ex in matches]

    async def count_executions_since(self, workflow_id: str, since: datetime) -> int:
        return sum(
            1
            for ex in self._executions.values()
            if ex.workflow_id == workflow_id and ex.created_at >= since
        )

    @staticmethod
    def _is_due(execution: WorkflowExecution, now: datetime) -> bool:
        if execution.status == ExecutionStatus.PENDING:
            return True
        return (
            execution.status == ExecutionStatus.PAUSED
            and execution.resume_at is not None
            and execution.resume_at <= now
        )

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Optional[WorkflowExecution]:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or not self._is_due(execution, now):
                return None
            if execution.paused_at is not None:
                execution.paused_seconds += max(
                    (now - execution.paused_at).total_seconds(), 0.0
                )
            execution.status = ExecutionStatus.RUNNING
            execution.started_at = execution.started_at or now
            execution.paused_at = None
            execution.resume_at = None
            execution.claimed_by = worker_id
            execution.heartbeat_at = now
            return _copy(execution)

    def _apply_progress(self, stored: WorkflowExecution, source: WorkflowExecution) -> None:
        snapshot = _copy(source)
        for name in (
            "context",
            "current_step_id",
            "current_step_index",
            "current_attempt",
            "steps_completed",
            "steps_total",
            "heartbeat_at",
            "wait_event",
            "waiting_for",
        ):
            setattr(stored, name, getattr(snapshot, name))

    def _owned(
        self, execution_id: str, worker_id: Optional[str]
    ) -> Optional[WorkflowExecution]:
        stored = self._executions.get(execution_id)
        if (
            stored is None
            or stored.status != ExecutionStatus.RUNNING
            or worker_id is None
            or stored.claimed_by != worker_id
        ):
            return None
        return stored

    async def save_checkpoint(self, execution: WorkflowExecution) -> bool:
        async with self._lock:
            stored = self._owned(execution.id, execution.claimed_by)
            if stored is None:
                return False
            self._apply_progress(stored, execution)
            return True

    async def pause_execution(self, execution: WorkflowExecution) -> bool:
        async with self._lock:
            stored = self._owned(execution.id, execution.claimed_by)
            if stored is None:
                return False
            self._apply_progress(stored, execution)
            stored.status = ExecutionStatus.PAUSED
            stored.paused_at = execution.paused_at
            stored.resume_at = execution.resume_at
            stored.claimed_by = None
            return True

    async def finish_execution(self, execution: WorkflowExecution) -> bool:
        async with self._lock:
            stored = self._owned(execution.id, execution.claimed_by)
            if stored is None:
                return False
            self._apply_progress(stored, execution)
            stored.status = execution.status
            stored.completed_at = execution.completed_at
            stored.output = copy.deepcopy(execution.output)
            stored.error = execution.error
            stored.error_details = copy.deepcopy(execution.error_details)
            stored.duration_ms = execution.duration_ms
            stored.claimed_by = None
            return True

    async def touch_execution(self, execution_id: str, worker_id: str, now: datetime) -> bool:
        async with self._lock:
            stored = self._owned(execution_id, worker_id)
            if stored is None:
                return False
            stored.heartbeat_at = now
            return True

    async def cancel_execution(
        self, execution_id: str, now: datetime
    ) -> Optional[WorkflowExecution]:
        async with self._lock:
            stored = self._executions.get(execution_id)
            if stored is None or stored.status not in CANCELLABLE_STATUSES:
                return None
            stored.status = ExecutionStatus.CANCELLED
            stored.completed_at = now
            stored.resume_at = None
            stored.claimed_by = None
            return _copy(stored)

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[WorkflowExecution]:
        due = [ex for ex in self._executions.values() if self._is_due(ex, now)]
        due.sort(key=lambda ex: ex.created_at)
        if limit is not None:
            due = due[:limit]
        return [_copy(ex) for ex in due]

    async def requeue_stale_executions(self, stale_before: datetime) -> List[str]:
        async with self._lock:
            requeued = []
            for execution in self._executions.values():
                if (
                    execution.status == ExecutionStatus.RUNNING
                    and execution.heartbeat_at is not None
                    and execution.heartbeat_at < stale_before
                ):
                    execution.status = ExecutionStatus.PENDING
                    execution.claimed_by = None
                    requeued.append(execution.id)
            return requeued

    async def list_waiting_executions(
        self, tenant_id: str, event_type: str
    ) -> List[WorkflowExecution]:
        return [
            _copy(ex)
            for ex in self._executions.values()
            if ex.status == ExecutionStatus.PAUSED
            and ex.tenant_id == tenant_id
            and ex.waiting_for is not None
            and ex.waiting_for.event_type == event_type
            and ex.wait_event is None
        ]

    async def deliver_wait_event(
        self, execution_id: str, step_id: str, event: Dict[str, Any], now: datetime
    ) -> bool:
        async with self._lock:
            stored = self._executions.get(execution_id)
            if (
                stored is None
                or stored.status != ExecutionStatus.PAUSED
                or stored.waiting_for is None
                or stored.waiting_for.step_id != step_id
                or stored.wait_event is not None
            ):
                return False
            stored.wait_event = copy.deepcopy(event)
            stored.resume_at = now
            return True

    # ------------------------------------------------------------------
    # step logs
    # ------------------------------------------------------------------
    async def add_step_log(self, log: StepExecutionLog) -> None:
        async with self._lock:
            self._step_logs.setdefault(log.execution_id, []).append(_copy(log))

    async def update_step_log(self, log: StepExecutionLog) -> None:
        async with self._lock:
            logs = self._step_logs.setdefault(log.execution_id, [])
            for index, existing in enumerate(logs):
                if existing.id == log.id:
                    logs[index] = _copy(log)
                    return
            logs.append(_copy(log))

    async def list_step_logs(self, execution_id: str) -> List[StepExecutionLog]:
        return [_copy(log) for log in self._step_logs.get(execution_id, [])]

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------
    async def save_schedule(self, job: ScheduledJob) -> ScheduledJob:
        async with self._lock:
            self._schedules[job.id] = _copy(job)
            return _copy(job)

    async def list_schedules(
        self, workflow_id: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> List[ScheduledJob]:
        return [
            _copy(job)
            for job in self._schedules.values()
            if (workflow_id is None or job.workflow_id == workflow_id)
            and (tenant_id is None or job.tenant_id == tenant_id)
        ]

    async def delete_schedule(self, job_id: str) -> bool:
        async with self._lock:
            return self._schedules.pop(job_id, None) is not None

    async def list_due_schedules(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[ScheduledJob]:
        due = sorted(
            (
                job
                for job in self._schedules.values()
                if job.is_active and job.next_run_at <= now
            ),
            key=lambda job: job.next_run_at,
        )
        if limit is not None:
            due = due[:limit]
        return [_copy(job) for job in due]

    async def advance_schedule(
        self,
        job_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
        now: datetime,
    ) -> bool:
        async with self._lock:
            job = self._schedules.get(job_id)
            if job is None or job.next_run_at != expected_next_run_at:
                return False
            job.next_run_at = next_run_at
            job.last_run_at = now
            return True

    async def record_schedule_result(
        self, job_id: str, success: bool
    ) -> Optional[ScheduledJob]:
        async with self._lock:
            job = self._schedules.get(job_id)
            if job is None:
                return None
            if success:
                job.consecutive_failures = 0
                job.last_status = "success"
            else:
                job.consecutive_failures += 1
                job.last_status = "failed"
                if job.consecutive_failures >= job.max_consecutive_failures:
                    job.is_active = False
            return _copy(job)

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------
    async def save_webhook_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        async with self._lock:
            stored = _copy(endpoint)
            for existing in self._webhooks.values():
                same_path = (
                    existing.tenant_id == endpoint.tenant_id
                    and existing.endpoint_path == endpoint.endpoint_path
                )
                if existing.id == endpoint.id or same_path:
                    if same_path and existing.workflow_id != endpoint.workflow_id:
                        raise DefinitionValidationError(
                            f"webhook path '{endpoint.endpoint_path}' is already in use"
                        )
                    stored.id = existing.id
                    stored.total_calls = existing.total_calls
                    stored.last_called_at = existing.last_called_at
                    break
            self._webhooks[stored.id] = stored
            return _copy(stored)

    async def get_webhook_endpoint(
        self, tenant_id: str, endpoint_path: str
    ) -> Optional[WebhookEndpoint]:
        for endpoint in self._webhooks.values():
            if endpoint.tenant_id == tenant_id and endpoint.endpoint_path == endpoint_path:
                return _copy(endpoint)
        return None

    async def list_webhook_endpoints(
        self, workflow_id: Optional[str] = None
    ) -> List[WebhookEndpoint]:
        return [
            _copy(ep)
            for ep in self._webhooks.values()
            if workflow_id is None or ep.workflow_id == workflow_id
        ]

    async def delete_webhook_endpoint(self, endpoint_id: str) -> bool:
        async with self._lock:
            return self._webhooks.pop(endpoint_id, None) is not None

    async def record_webhook_call(self, endpoint_id: str, at: datetime) -> None:
        async with self._lock:
            endpoint = self._webhooks.get(endpoint_id)
            if endpoint is not None:
                endpoint.total_calls += 1
                endpoint.last_called_at = at

    # ------------------------------------------------------------------
    # event log
    # ------------------------------------------------------------------
    async def record_event(self, entry: EventLogEntry) -> EventLogEntry:
        async with self._lock:
            self._events[entry.id] = _copy(entry)
            return _copy(entry)

    async def list_unprocessed_events(
        self, tenant_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[EventLogEntry]:
        pending = sorted(
            (
                entry
                for entry in self._events.values()
                if not entry.processed
                and (tenant_id is None or entry.tenant_id == tenant_id)
            ),
            key=lambda entry: entry.created_at,
        )
        if limit is not None:
            pending = pending[:limit]
        return [_copy(entry) for entry in pending]

    async def mark_event_processed(
        self, event_id: str, workflows_triggered: List[str], at: datetime
    ) -> None:
        async with self._lock:
            entry = self._events.get(event_id)
            if entry is not None:
                entry.processed = True
                entry.processed_at = at
                entry.workflows_triggered = list(workflows_triggered)
