"""Repository abstraction for workflow definitions and execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from ..models import (
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

# Owned by ``record_run_result``; never overwritten by ``save_workflow``.
RUN_COUNTER_FIELDS = (
    "total_runs",
    "successful_runs",
    "failed_runs",
    "last_run_at",
    "last_success_at",
    "last_error_at",
    "last_error",
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Every state transition that can race (claims, cancellation, checkpoints,
    schedule advancement, wait-event delivery) is a conditional update that
    reports whether it applied. Counters are incremented in place.
    """

    # -- definitions ---------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or replace a definition. Slugs are unique per tenant."""

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...

    async def get_workflow_by_slug(
        self, tenant_id: str, slug: str
    ) -> Optional[WorkflowDefinition]:
        ...

    async def list_workflows(
        self, tenant_id: Optional[str] = None, is_active: Optional[bool] = None
    ) -> List[WorkflowDefinition]:
        ...

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a definition and everything that belongs to it."""

    async def record_run_result(
        self,
        workflow_id: str,
        success: bool,
        at: datetime,
        error: Optional[str] = None,
    ) -> None:
        """Atomically bump the run counters of a definition."""

    # -- steps and variables ------------------------------------------
    async def save_steps(self, workflow_id: str, steps: List[WorkflowStep]) -> None:
        """Replace all steps of ``workflow_id``."""

    async def list_steps(
        self, workflow_id: str, active_only: bool = False
    ) -> List[WorkflowStep]:
        """Steps ordered by position."""

    async def save_variable(self, variable: WorkflowVariable) -> WorkflowVariable:
        """Insert or replace by ``(workflow_id, key)``."""

    async def list_variables(self, workflow_id: str) -> List[WorkflowVariable]:
        ...

    async def delete_variable(self, workflow_id: str, key: str) -> bool:
        ...

    # -- subscriptions -------------------------------------------------
    async def save_subscription(self, subscription: EventSubscription) -> EventSubscription:
        """Insert or replace by ``(workflow_id, event_type, source_module)``."""

    async def list_subscriptions(
        self,
        tenant_id: Optional[str] = None,
        event_type: Optional[str] = None,
        workflow_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[EventSubscription]:
        ...

    async def delete_subscription(self, subscription_id: str) -> bool:
        ...

    async def record_subscription_hit(self, subscription_id: str, at: datetime) -> None:
        ...

    # -- executions ----------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        ...

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        ...

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        """Newest first."""

    async def count_executions_since(self, workflow_id: str, since: datetime) -> int:
        ...

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Optional[WorkflowExecution]:
        """Move a pending or due paused execution to running.

        Returns the claimed execution or ``None`` when it was not claimable.
        Time spent paused is added to ``paused_seconds``.
        """

    async def save_checkpoint(self, execution: WorkflowExecution) -> bool:
        """Persist progress while ``execution.claimed_by`` still holds the running execution."""

    async def pause_execution(self, execution: WorkflowExecution) -> bool:
        """running -> paused, persisting progress and ``resume_at``. Owner only."""

    async def finish_execution(self, execution: WorkflowExecution) -> bool:
        """running -> terminal status, persisting output and errors. Owner only."""

    async def touch_execution(self, execution_id: str, worker_id: str, now: datetime) -> bool:
        """Move ``heartbeat_at`` to ``now`` while ``worker_id`` holds the running execution."""

    async def cancel_execution(
        self, execution_id: str, now: datetime
    ) -> Optional[WorkflowExecution]:
        """pending|running|paused -> cancelled. ``None`` if not cancellable."""

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[WorkflowExecution]:
        """Pending executions and paused ones whose ``resume_at`` has passed."""

    async def requeue_stale_executions(self, stale_before: datetime) -> List[str]:
        """Return running executions with an old heartbeat to pending."""

    async def list_waiting_executions(
        self, tenant_id: str, event_type: str
    ) -> List[WorkflowExecution]:
        """Paused executions waiting for ``event_type`` with no event delivered yet."""

    async def deliver_wait_event(
        self, execution_id: str, step_id: str, event: Dict[str, Any], now: datetime
    ) -> bool:
        """Hand ``event`` to a waiting execution and make it due. First delivery wins."""

    # -- step logs -----------------------------------------------------
    async def add_step_log(self, log: StepExecutionLog) -> None:
        ...

    async def update_step_log(self, log: StepExecutionLog) -> None:
        ...

    async def list_step_logs(self, execution_id: str) -> List[StepExecutionLog]:
        """Logs in the order they were appended."""

    # -- schedules -----------------------------------------------------
    async def save_schedule(self, job: ScheduledJob) -> ScheduledJob:
        ...

    async def list_schedules(
        self, workflow_id: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> List[ScheduledJob]:
        ...

    async def delete_schedule(self, job_id: str) -> bool:
        ...

    async def list_due_schedules(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[ScheduledJob]:
        ...

    async def advance_schedule(
        self,
        job_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
        now: datetime,
    ) -> bool:
        """Compare-and-set ``next_run_at``; ``False`` if another sweeper won."""

    async def record_schedule_result(
        self, job_id: str, success: bool
    ) -> Optional[ScheduledJob]:
        """Reset or bump ``consecutive_failures``; deactivate at the limit."""

    # -- webhooks ------------------------------------------------------
    async def save_webhook_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        """Insert or replace. Paths are unique per tenant."""

    async def get_webhook_endpoint(
        self, tenant_id: str, endpoint_path: str
    ) -> Optional[WebhookEndpoint]:
        ...

    async def list_webhook_endpoints(
        self, workflow_id: Optional[str] = None
    ) -> List[WebhookEndpoint]:
        ...

    async def delete_webhook_endpoint(self, endpoint_id: str) -> bool:
        ...

    async def record_webhook_call(self, endpoint_id: str, at: datetime) -> None:
        ...

    async def close(self) -> None:
        """Release connections held by the backend."""

    # -- event log -----------------------------------------------------
    async def record_event(self, entry: EventLogEntry) -> EventLogEntry:
        ...

    async def list_unprocessed_events(
        self, tenant_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[EventLogEntry]:
        """Oldest first."""

    async def mark_event_processed(
        self, event_id: str, workflows_triggered: List[str], at: datetime
    ) -> None:
        ...
