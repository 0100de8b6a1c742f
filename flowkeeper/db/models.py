"""SQLModel tables backing :class:`~flowkeeper.persistence.sql.SQLWorkflowRepository`.

Timestamps are stored as naive UTC. Typed configuration and free-form
payloads live in JSON columns.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkflowRow(SQLModel, table=True):
    __tablename__ = "workflow_definitions"
    __table_args__ = (UniqueConstraint("tenant_id", "slug"),)

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    slug: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list = Field(default_factory=list, sa_column=Column(JSON))
    trigger_type: str
    trigger_config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    is_active: bool = False
    max_retries: int = 3
    timeout_seconds: Optional[int] = None
    max_executions_per_hour: Optional[int] = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class StepRow(SQLModel, table=True):
    __tablename__ = "workflow_steps"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflow_definitions.id", index=True)
    position: int
    kind: str
    name: Optional[str] = None
    description: Optional[str] = None
    config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    input_mapping: dict = Field(default_factory=dict, sa_column=Column(JSON))
    output_key: Optional[str] = None
    on_error: str = "fail"
    error_branch_step_id: Optional[str] = None
    max_retries: int = 0
    retry_delay_seconds: float = 60
    is_active: bool = True


class VariableRow(SQLModel, table=True):
    __tablename__ = "workflow_variables"
    __table_args__ = (UniqueConstraint("workflow_id", "key"),)

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflow_definitions.id", index=True)
    key: str
    value: Any = Field(default=None, sa_column=Column(JSON))
    value_type: Optional[str] = None
    description: Optional[str] = None
    is_secret: bool = False


class SubscriptionRow(SQLModel, table=True):
    __tablename__ = "event_subscriptions"
    __table_args__ = (UniqueConstraint("workflow_id", "event_type", "source_module"),)

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    workflow_id: str = Field(foreign_key="workflow_definitions.id", index=True)
    event_type: str = Field(index=True)
    source_module: Optional[str] = None
    filter: dict = Field(default_factory=dict, sa_column=Column(JSON))
    is_active: bool = True
    events_received: int = 0
    last_event_at: Optional[datetime] = None


class ExecutionRow(SQLModel, table=True):
    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflow_definitions.id", index=True)
    tenant_id: str = Field(index=True)
    status: str = Field(index=True)
    trigger_type: str
    trigger_event_id: Optional[str] = None
    trigger_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    current_step_id: Optional[str] = None
    current_step_index: int = 0
    current_attempt: int = 0
    steps_completed: int = 0
    steps_total: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resume_at: Optional[datetime] = Field(default=None, index=True)
    paused_seconds: float = 0.0
    waiting_for: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    # Denormalised from ``waiting_for`` so delivery can be a conditional UPDATE.
    waiting_step_id: Optional[str] = None
    waiting_event_type: Optional[str] = Field(default=None, index=True)
    wait_event: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    error_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    attempt_number: int = 1
    parent_execution_id: Optional[str] = None
    claimed_by: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    created_at: datetime


class StepLogRow(SQLModel, table=True):
    __tablename__ = "step_execution_logs"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(unique=True, index=True)
    execution_id: str = Field(foreign_key="workflow_executions.id", index=True)
    step_id: str
    step_kind: str
    position: int
    attempt_number: int = 1
    status: str
    input_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    output_data: Any = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class ScheduleRow(SQLModel, table=True):
    __tablename__ = "scheduled_jobs"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    workflow_id: str = Field(foreign_key="workflow_definitions.id", index=True)
    cron_expression: str
    timezone: str = "UTC"
    is_active: bool = True
    next_run_at: datetime = Field(index=True)
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None
    consecutive_failures: int = 0
    max_consecutive_failures: int = 5


class WebhookRow(SQLModel, table=True):
    __tablename__ = "webhook_endpoints"
    __table_args__ = (UniqueConstraint("tenant_id", "endpoint_path"),)

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    workflow_id: str = Field(foreign_key="workflow_definitions.id", index=True)
    endpoint_path: str
    secret_key: Optional[str] = None
    allowed_methods: list = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = True
    total_calls: int = 0
    last_called_at: Optional[datetime] = None


class EventLogRow(SQLModel, table=True):
    __tablename__ = "event_log"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    event_type: str
    source_module: Optional[str] = None
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    occurred_at: datetime
    processed: bool = Field(default=False, index=True)
    processed_at: Optional[datetime] = None
    workflows_triggered: list = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime
