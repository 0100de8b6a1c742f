"""SQL implementation of the workflow repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import DateTime, and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from ..db import (
    EventLogRow,
    ExecutionRow,
    ScheduleRow,
    StepLogRow,
    StepRow,
    SubscriptionRow,
    VariableRow,
    WebhookRow,
    WorkflowDB,
    WorkflowRow,
)
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

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_RUNNING = ExecutionStatus.RUNNING.value
_PAUSED = ExecutionStatus.PAUSED.value
_PENDING = ExecutionStatus.PENDING.value

# Progress written by checkpoints, pauses and finishes.
_PROGRESS_FIELDS = (
    "context",
    "current_step_id",
    "current_step_index",
    "current_attempt",
    "steps_completed",
    "steps_total",
    "heartbeat_at",
    "wait_event",
    "waiting_for",
    "waiting_step_id",
    "waiting_event_type",
)


def _naive(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _row_values(model: BaseModel, row_cls: Type[SQLModel]) -> Dict[str, Any]:
    """Column values for ``row_cls`` taken from ``model``."""
    python = model.model_dump()
    json_safe = model.model_dump(mode="json")
    values: Dict[str, Any] = {}
    for column in row_cls.__table__.columns:
        if column.name not in python:
            continue
        if isinstance(column.type, DateTime):
            values[column.name] = _naive(python[column.name])
        else:
            values[column.name] = json_safe[column.name]
    return values


def _execution_values(execution: WorkflowExecution) -> Dict[str, Any]:
    values = _row_values(execution, ExecutionRow)
    waiting = execution.waiting_for
    values["waiting_step_id"] = waiting.step_id if waiting else None
    values["waiting_event_type"] = waiting.event_type if waiting else None
    return values


def _to_model(model_cls: Type[M], row: SQLModel) -> M:
    return model_cls.model_validate(row.model_dump())


def _to_models(model_cls: Type[M], rows: Iterable[SQLModel]) -> List[M]:
    return [_to_model(model_cls, row) for row in rows]


class SQLWorkflowRepository(WorkflowRepository):
    """Persist workflow state through SQLModel / SQLAlchemy async sessions.

    Tables are created on first use. Racing transitions are conditional
    ``UPDATE`` statements checked by ``rowcount``; counters are incremented
    with ``SET x = x + 1``.
    """

    def __init__(self, database: WorkflowDB | str) -> None:
        self.db = database if isinstance(database, WorkflowDB) else WorkflowDB(database)
        self._ready = False
        self._init_lock = asyncio.Lock()

    async def init(self) -> None:
        async with self._init_lock:
            if not self._ready:
                await self.db.init_db()
                self._ready = True

    async def close(self) -> None:
        await self.db.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if not self._ready:
            await self.init()
        async with self.db.session() as session:
            yield session

    async def _upsert(
        self,
        session: AsyncSession,
        row_cls: Type[SQLModel],
        key: Any,
        values: Dict[str, Any],
        preserve: Iterable[str] = (),
    ) -> SQLModel:
        row = await session.get(row_cls, key)
        if row is None:
            row = row_cls(**values)
            session.add(row)
        else:
            keep = set(preserve)
            for name, value in values.items():
                if name not in keep:
                    setattr(row, name, value)
        return row

    async def _conditional_update(self, statement) -> bool:
        async with self._session() as session:
            result = await session.execute(
                statement.execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # definitions
    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        values = _row_values(workflow, WorkflowRow)
        async with self._session() as session:
            clash = await session.execute(
                select(WorkflowRow.id).where(
                    WorkflowRow.tenant_id == workflow.tenant_id,
                    WorkflowRow.slug == workflow.slug,
                    WorkflowRow.id != workflow.id,
                )
            )
            other = clash.scalar_one_or_none()
            if other is not None:
                raise DefinitionValidationError(
                    f"slug '{workflow.slug}' is already used by workflow {other}"
                )
            row = await self._upsert(
                session, WorkflowRow, workflow.id, values, preserve=RUN_COUNTER_FIELDS
            )
            await session.commit()
            return _to_model(WorkflowDefinition, row)

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        async with self._session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            return _to_model(WorkflowDefinition, row) if row else None

    async def get_workflow_by_slug(
        self, tenant_id: str, slug: str
    ) -> Optional[WorkflowDefinition]:
        async with self._session() as session:
            result = await session.execute(
                select(WorkflowRow).where(
                    WorkflowRow.tenant_id == tenant_id, WorkflowRow.slug == slug
                )
            )
            row = result.scalar_one_or_none()
            return _to_model(WorkflowDefinition, row) if row else None

    async def list_workflows(
        self, tenant_id: Optional[str] = None, is_active: Optional[bool] = None
    ) -> List[WorkflowDefinition]:
        statement = select(WorkflowRow).order_by(WorkflowRow.created_at)
        if tenant_id is not None:
            statement = statement.where(WorkflowRow.tenant_id == tenant_id)
        if is_active is not None:
            statement = statement.where(WorkflowRow.is_active == is_active)
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(WorkflowDefinition, result.scalars().all())

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._session() as session:
            executions = select(ExecutionRow.id).where(
                ExecutionRow.workflow_id == workflow_id
            )
            await session.execute(
                delete(StepLogRow).where(StepLogRow.execution_id.in_(executions))
            )
            for row_cls in (
                ExecutionRow,
                StepRow,
                VariableRow,
                SubscriptionRow,
                ScheduleRow,
                WebhookRow,
            ):
                await session.execute(
                    delete(row_cls).where(row_cls.workflow_id == workflow_id)
                )
            result = await session.execute(
                delete(WorkflowRow).where(WorkflowRow.id == workflow_id)
            )
            await session.commit()
            return result.rowcount == 1

    async def record_run_result(
        self,
        workflow_id: str,
        success: bool,
        at: datetime,
        error: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "total_runs": WorkflowRow.total_runs + 1,
            "last_run_at": _naive(at),
        }
        if success:
            values["successful_runs"] = WorkflowRow.successful_runs + 1
            values["last_success_at"] = _naive(at)
        else:
            values["failed_runs"] = WorkflowRow.failed_runs + 1
            values["last_error_at"] = _naive(at)
            values["last_error"] = error
        await self._conditional_update(
            update(WorkflowRow).where(WorkflowRow.id == workflow_id).values(**values)
        )

    # ------------------------------------------------------------------
    # steps and variables
    # ------------------------------------------------------------------
    async def save_steps(self, workflow_id: str, steps: List[WorkflowStep]) -> None:
        async with self._session() as session:
            await session.execute(delete(StepRow).where(StepRow.workflow_id == workflow_id))
            for step in steps:
                session.add(StepRow(**_row_values(step, StepRow)))
            await session.commit()

    async def list_steps(
        self, workflow_id: str, active_only: bool = False
    ) -> List[WorkflowStep]:
        statement = (
            select(StepRow)
            .where(StepRow.workflow_id == workflow_id)
            .order_by(StepRow.position)
        )
        if active_only:
            statement = statement.where(StepRow.is_active.is_(True))
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(WorkflowStep, result.scalars().all())

    async def save_variable(self, variable: WorkflowVariable) -> WorkflowVariable:
        values = _row_values(variable, VariableRow)
        async with self._session() as session:
            result = await session.execute(
                select(VariableRow).where(
                    VariableRow.workflow_id == variable.workflow_id,
                    VariableRow.key == variable.key,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = VariableRow(**values)
                session.add(row)
            else:
                values.pop("id")
                for name, value in values.items():
                    setattr(row, name, value)
            await session.commit()
            return _to_model(WorkflowVariable, row)

    async def list_variables(self, workflow_id: str) -> List[WorkflowVariable]:
        async with self._session() as session:
            result = await session.execute(
                select(VariableRow).where(VariableRow.workflow_id == workflow_id)
            )
            return _to_models(WorkflowVariable, result.scalars().all())

    async def delete_variable(self, workflow_id: str, key: str) -> bool:
        return await self._conditional_update(
            delete(VariableRow).where(
                VariableRow.workflow_id == workflow_id, VariableRow.key == key
            )
        )

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    async def save_subscription(self, subscription: EventSubscription) -> EventSubscription:
        values = _row_values(subscription, SubscriptionRow)
        counters = ("id", "events_received", "last_event_at")
        async with self._session() as session:
            source = (
                SubscriptionRow.source_module.is_(None)
                if subscription.source_module is None
                else SubscriptionRow.source_module == subscription.source_module
            )
            result = await session.execute(
                select(SubscriptionRow).where(
                    or_(
                        SubscriptionRow.id == subscription.id,
                        and_(
                            SubscriptionRow.workflow_id == subscription.workflow_id,
                            SubscriptionRow.event_type == subscription.event_type,
                            source,
                        ),
                    )
                )
            )
            row = result.scalars().first()
            if row is None:
                row = SubscriptionRow(**values)
                session.add(row)
            else:
                for name, value in values.items():
                    if name not in counters:
                        setattr(row, name, value)
            await session.commit()
            return _to_model(EventSubscription, row)

    async def list_subscriptions(
        self,
        tenant_id: Optional[str] = None,
        event_type: Optional[str] = None,
        workflow_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[EventSubscription]:
        statement = select(SubscriptionRow)
        if tenant_id is not None:
            statement = statement.where(SubscriptionRow.tenant_id == tenant_id)
        if event_type is not None:
            statement = statement.where(SubscriptionRow.event_type == event_type)
        if workflow_id is not None:
            statement = statement.where(SubscriptionRow.workflow_id == workflow_id)
        if active_only:
            statement = statement.where(SubscriptionRow.is_active.is_(True))
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(EventSubscription, result.scalars().all())

    async def delete_subscription(self, subscription_id: str) -> bool:
        return await self._conditional_update(
            delete(SubscriptionRow).where(SubscriptionRow.id == subscription_id)
        )

    async def record_subscription_hit(self, subscription_id: str, at: datetime) -> None:
        await self._conditional_update(
            update(SubscriptionRow)
            .where(SubscriptionRow.id == subscription_id)
            .values(
                events_received=SubscriptionRow.events_received + 1,
                last_event_at=_naive(at),
            )
        )

    # ------------------------------------------------------------------
    # executions
    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._session() as session:
            row = ExecutionRow(**_execution_values(execution))
            session.add(row)
            await session.commit()
            return _to_model(WorkflowExecution, row)

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self._session() as session:
            row = await session.get(ExecutionRow, execution_id)
            return _to_model(WorkflowExecution, row) if row else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        statement = select(ExecutionRow).order_by(ExecutionRow.created_at.desc())
        if workflow_id is not None:
            statement = statement.where(ExecutionRow.workflow_id == workflow_id)
        if tenant_id is not None:
            statement = statement.where(ExecutionRow.tenant_id == tenant_id)
        if status is not None:
            statement = statement.where(ExecutionRow.status == ExecutionStatus(status).value)
        if limit is not None:
            statement = statement.limit(limit)
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(WorkflowExecution, result.scalars().all())

    async def count_executions_since(self, workflow_id: str, since: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(ExecutionRow)
                .where(
                    ExecutionRow.workflow_id == workflow_id,
                    ExecutionRow.created_at >= _naive(since),
                )
            )
            return int(result.scalar_one())

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Optional[WorkflowExecution]:
        current = await self.get_execution(execution_id)
        if current is None:
            return None
        if current.status == ExecutionStatus.PENDING:
            guard = ExecutionRow.status == _PENDING
        elif (
            current.status == ExecutionStatus.PAUSED
            and current.resume_at is not None
            and current.resume_at <= now
        ):
            guard = and_(
                ExecutionRow.status == _PAUSED,
                ExecutionRow.resume_at == _naive(current.resume_at),
            )
        else:
            return None

        paused_seconds = current.paused_seconds
        if current.paused_at is not None:
            paused_seconds += max((now - current.paused_at).total_seconds(), 0.0)
        claimed = await self._conditional_update(
            update(ExecutionRow)
            .where(ExecutionRow.id == execution_id, guard)
            .values(
                status=_RUNNING,
                started_at=_naive(current.started_at or now),
                paused_at=None,
                resume_at=None,
                paused_seconds=paused_seconds,
                claimed_by=worker_id,
                heartbeat_at=_naive(now),
            )
        )
        if not claimed:
            return None
        return await self.get_execution(execution_id)

    @staticmethod
    def _progress_values(execution: WorkflowExecution) -> Dict[str, Any]:
        values = _execution_values(execution)
        return {name: values[name] for name in _PROGRESS_FIELDS}

    @staticmethod
    def _owned(execution_id: str, worker_id: Optional[str]):
        return and_(
            ExecutionRow.id == execution_id,
            ExecutionRow.status == _RUNNING,
            ExecutionRow.claimed_by == worker_id,
        )

    async def save_checkpoint(self, execution: WorkflowExecution) -> bool:
        return await self._conditional_update(
            update(ExecutionRow)
            .where(self._owned(execution.id, execution.claimed_by))
            .values(**self._progress_values(execution))
        )

    async def pause_execution(self, execution: WorkflowExecution) -> bool:
        return await self._conditional_update(
            update(ExecutionRow)
            .where(self._owned(execution.id, execution.claimed_by))
            .values(
                status=_PAUSED,
                paused_at=_naive(execution.paused_at),
                resume_at=_naive(execution.resume_at),
                claimed_by=None,
                **self._progress_values(execution),
            )
        )

    async def finish_execution(self, execution: WorkflowExecution) -> bool:
        values = _execution_values(execution)
        return await self._conditional_update(
            update(ExecutionRow)
            .where(self._owned(execution.id, execution.claimed_by))
            .values(
                status=values["status"],
                completed_at=values["completed_at"],
                output=values["output"],
                error=values["error"],
                error_details=values["error_details"],
                duration_ms=values["duration_ms"],
                claimed_by=None,
                **self._progress_values(execution),
            )
        )

    async def touch_execution(self, execution_id: str, worker_id: str, now: datetime) -> bool:
        return await self._conditional_update(
            update(ExecutionRow)
            .where(self._owned(execution_id, worker_id))
            .values(heartbeat_at=_naive(now))
        )

    async def cancel_execution(
        self, execution_id: str, now: datetime
    ) -> Optional[WorkflowExecution]:
        cancelled = await self._conditional_update(
            update(ExecutionRow)
            .where(
                ExecutionRow.id == execution_id,
                ExecutionRow.status.in_([s.value for s in CANCELLABLE_STATUSES]),
            )
            .values(
                status=ExecutionStatus.CANCELLED.value,
                completed_at=_naive(now),
                resume_at=None,
                claimed_by=None,
            )
        )
        if not cancelled:
            return None
        return await self.get_execution(execution_id)

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[WorkflowExecution]:
        statement = (
            select(ExecutionRow)
            .where(
                or_(
                    ExecutionRow.status == _PENDING,
                    and_(
                        ExecutionRow.status == _PAUSED,
                        ExecutionRow.resume_at.is_not(None),
                        ExecutionRow.resume_at <= _naive(now),
                    ),
                )
            )
            .order_by(ExecutionRow.created_at)
        )
        if limit is not None:
            statement = statement.limit(limit)
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(WorkflowExecution, result.scalars().all())

    async def requeue_stale_executions(self, stale_before: datetime) -> List[str]:
        condition = and_(
            ExecutionRow.status == _RUNNING,
            ExecutionRow.heartbeat_at.is_not(None),
            ExecutionRow.heartbeat_at < _naive(stale_before),
        )
        async with self._session() as session:
            result = await session.execute(select(ExecutionRow.id).where(condition))
            candidates = list(result.scalars().all())
        requeued = []
        for execution_id in candidates:
            moved = await self._conditional_update(
                update(ExecutionRow)
                .where(ExecutionRow.id == execution_id, condition)
                .values(status=_PENDING, claimed_by=None)
            )
            if moved:
                requeued.append(execution_id)
        return requeued

    async def list_waiting_executions(
        self, tenant_id: str, event_type: str
    ) -> List[WorkflowExecution]:
        async with self._session() as session:
            result = await session.execute(
                select(ExecutionRow).where(
                    ExecutionRow.status == _PAUSED,
                    ExecutionRow.tenant_id == tenant_id,
                    ExecutionRow.waiting_event_type == event_type,
                )
            )
            executions = _to_models(WorkflowExecution, result.scalars().all())
        return [ex for ex in executions if ex.wait_event is None]

    async def deliver_wait_event(
        self, execution_id: str, step_id: str, event: Dict[str, Any], now: datetime
    ) -> bool:
        current = await self.get_execution(execution_id)
        if current is None or current.wait_event is not None:
            return False
        return await self._conditional_update(
            update(ExecutionRow)
            .where(
                ExecutionRow.id == execution_id,
                ExecutionRow.status == _PAUSED,
                ExecutionRow.waiting_step_id == step_id,
                ExecutionRow.resume_at.is_(None)
                if current.resume_at is None
                else ExecutionRow.resume_at == _naive(current.resume_at),
            )
            .values(wait_event=event, resume_at=_naive(now))
        )

    # ------------------------------------------------------------------
    # step logs
    # ------------------------------------------------------------------
    async def add_step_log(self, log: StepExecutionLog) -> None:
        async with self._session() as session:
            session.add(StepLogRow(**_row_values(log, StepLogRow)))
            await session.commit()

    async def update_step_log(self, log: StepExecutionLog) -> None:
        await self._conditional_update(
            update(StepLogRow)
            .where(StepLogRow.id == log.id)
            .values(**_row_values(log, StepLogRow))
        )

    async def list_step_logs(self, execution_id: str) -> List[StepExecutionLog]:
        async with self._session() as session:
            result = await session.execute(
                select(StepLogRow)
                .where(StepLogRow.execution_id == execution_id)
                .order_by(StepLogRow.seq)
            )
            return _to_models(StepExecutionLog, result.scalars().all())

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------
    async def save_schedule(self, job: ScheduledJob) -> ScheduledJob:
        async with self._session() as session:
            row = await self._upsert(session, ScheduleRow, job.id, _row_values(job, ScheduleRow))
            await session.commit()
            return _to_model(ScheduledJob, row)

    async def list_schedules(
        self, workflow_id: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> List[ScheduledJob]:
        statement = select(ScheduleRow)
        if workflow_id is not None:
            statement = statement.where(ScheduleRow.workflow_id == workflow_id)
        if tenant_id is not None:
            statement = statement.where(ScheduleRow.tenant_id == tenant_id)
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(ScheduledJob, result.scalars().all())

    async def delete_schedule(self, job_id: str) -> bool:
        return await self._conditional_update(
            delete(ScheduleRow).where(ScheduleRow.id == job_id)
        )

    async def list_due_schedules(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[ScheduledJob]:
        statement = (
            select(ScheduleRow)
            .where(
                ScheduleRow.is_active.is_(True),
                ScheduleRow.next_run_at <= _naive(now),
            )
            .order_by(ScheduleRow.next_run_at)
        )
        if limit is not None:
            statement = statement.limit(limit)
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(ScheduledJob, result.scalars().all())

    async def advance_schedule(
        self,
        job_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
        now: datetime,
    ) -> bool:
        return await self._conditional_update(
            update(ScheduleRow)
            .where(
                ScheduleRow.id == job_id,
                ScheduleRow.next_run_at == _naive(expected_next_run_at),
            )
            .values(next_run_at=_naive(next_run_at), last_run_at=_naive(now))
        )

    async def record_schedule_result(
        self, job_id: str, success: bool
    ) -> Optional[ScheduledJob]:
        if success:
            await self._conditional_update(
                update(ScheduleRow)
                .where(ScheduleRow.id == job_id)
                .values(consecutive_failures=0, last_status="success")
            )
        else:
            await self._conditional_update(
                update(ScheduleRow)
                .where(ScheduleRow.id == job_id)
                .values(
                    consecutive_failures=ScheduleRow.consecutive_failures + 1,
                    last_status="failed",
                )
            )
            await self._conditional_update(
                update(ScheduleRow)
                .where(
                    ScheduleRow.id == job_id,
                    ScheduleRow.consecutive_failures
                    >= ScheduleRow.max_consecutive_failures,
                )
                .values(is_active=False)
            )
        async with self._session() as session:
            row = await session.get(ScheduleRow, job_id)
            return _to_model(ScheduledJob, row) if row else None

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------
    async def save_webhook_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        values = _row_values(endpoint, WebhookRow)
        counters = ("id", "total_calls", "last_called_at")
        async with self._session() as session:
            result = await session.execute(
                select(WebhookRow).where(
                    WebhookRow.tenant_id == endpoint.tenant_id,
                    WebhookRow.endpoint_path == endpoint.endpoint_path,
                )
            )
            row = result.scalar_one_or_none()
            if row is not None and row.workflow_id != endpoint.workflow_id:
                raise DefinitionValidationError(
                    f"webhook path '{endpoint.endpoint_path}' is already in use"
                )
            if row is None:
                row = await session.get(WebhookRow, endpoint.id)
            if row is None:
                row = WebhookRow(**values)
                session.add(row)
            else:
                for name, value in values.items():
                    if name not in counters:
                        setattr(row, name, value)
            await session.commit()
            return _to_model(WebhookEndpoint, row)

    async def get_webhook_endpoint(
        self, tenant_id: str, endpoint_path: str
    ) -> Optional[WebhookEndpoint]:
        async with self._session() as session:
            result = await session.execute(
                select(WebhookRow).where(
                    WebhookRow.tenant_id == tenant_id,
                    WebhookRow.endpoint_path == endpoint_path,
                )
            )
            row = result.scalar_one_or_none()
            return _to_model(WebhookEndpoint, row) if row else None

    async def list_webhook_endpoints(
        self, workflow_id: Optional[str] = None
    ) -> List[WebhookEndpoint]:
        statement = select(WebhookRow)
        if workflow_id is not None:
            statement = statement.where(WebhookRow.workflow_id == workflow_id)
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(WebhookEndpoint, result.scalars().all())

    async def delete_webhook_endpoint(self, endpoint_id: str) -> bool:
        return await self._conditional_update(
            delete(WebhookRow).where(WebhookRow.id == endpoint_id)
        )

    async def record_webhook_call(self, endpoint_id: str, at: datetime) -> None:
        await self._conditional_update(
            update(WebhookRow)
            .where(WebhookRow.id == endpoint_id)
            .values(total_calls=WebhookRow.total_calls + 1, last_called_at=_naive(at))
        )

    # ------------------------------------------------------------------
    # event log
    # ------------------------------------------------------------------
    async def record_event(self, entry: EventLogEntry) -> EventLogEntry:
        async with self._session() as session:
            # Redelivered events replace their earlier log entry.
            row = await self._upsert(
                session, EventLogRow, entry.id, _row_values(entry, EventLogRow)
            )
            await session.commit()
            return _to_model(EventLogEntry, row)

    async def list_unprocessed_events(
        self, tenant_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[EventLogEntry]:
        statement = (
            select(EventLogRow)
            .where(EventLogRow.processed.is_(False))
            .order_by(EventLogRow.created_at)
        )
        if tenant_id is not None:
            statement = statement.where(EventLogRow.tenant_id == tenant_id)
        if limit is not None:
            statement = statement.limit(limit)
        async with self._session() as session:
            result = await session.execute(statement)
            return _to_models(EventLogEntry, result.scalars().all())

    async def mark_event_processed(
        self, event_id: str, workflows_triggered: List[str], at: datetime
    ) -> None:
        await self._conditional_update(
            update(EventLogRow)
            .where(EventLogRow.id == event_id)
            .values(
                processed=True,
                processed_at=_naive(at),
                workflows_triggered=list(workflows_triggered),
            )
        )
