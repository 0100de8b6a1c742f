"""Data model for workflow definitions, executions and their bookkeeping."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from croniter import croniter
from pydantic import (
    AfterValidator,
    BaseModel,
    Field,
    field_validator,
    model_validator,
)

from .constants import (
    DEFAULT_LOOP_MAX_ITERATIONS,
    DEFAULT_MAX_CONSECUTIVE_SCHEDULE_FAILURES,
    DEFAULT_MAX_EXECUTIONS_PER_HOUR,
    DEFAULT_STEP_RETRY_DELAY_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_WORKFLOW_MAX_RETRIES,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase ``name`` and collapse everything else into single dashes."""
    return _SLUG_STRIP.sub("-", name.lower()).strip("-")


class TriggerType(str, Enum):
    EVENT = "event"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMED_OUT,
    }
)
CLAIMABLE_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.PAUSED})
CANCELLABLE_STATUSES = frozenset(
    {ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED}
)


class StepKind(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"
    WAIT_FOR_EVENT = "wait_for_event"
    LOOP = "loop"
    PARALLEL = "parallel"
    TRANSFORM = "transform"
    SET_VARIABLE = "set_variable"
    STOP = "stop"


class OnError(str, Enum):
    FAIL = "fail"
    CONTINUE = "continue"
    RETRY = "retry"
    BRANCH = "branch"


class StepLogStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Trigger configuration
# ---------------------------------------------------------------------------


class EventTriggerConfig(BaseModel):
    kind: Literal["event"] = "event"
    event_type: str = Field(min_length=1)
    source_module: Optional[str] = None
    filter: Dict[str, Any] = Field(default_factory=dict)


class ScheduleTriggerConfig(BaseModel):
    kind: Literal["schedule"] = "schedule"
    cron: str
    timezone: str = "UTC"

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value


class WebhookTriggerConfig(BaseModel):
    kind: Literal["webhook"] = "webhook"
    endpoint_path: str = Field(min_length=1)
    secret_key: Optional[str] = None
    allowed_methods: List[str] = Field(default_factory=lambda: ["POST"])

    @field_validator("allowed_methods")
    @classmethod
    def _upper_methods(cls, value: List[str]) -> List[str]:
        return [method.upper() for method in value]


class ManualTriggerConfig(BaseModel):
    kind: Literal["manual"] = "manual"


TriggerConfig = Annotated[
    Union[
        EventTriggerConfig,
        ScheduleTriggerConfig,
        WebhookTriggerConfig,
        ManualTriggerConfig,
    ],
    Field(discriminator="kind"),
]


class WorkflowDefinition(BaseModel):
    """A tenant-owned workflow and the trigger that starts it."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str = Field(min_length=1)
    slug: str = ""
    description: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    trigger_type: TriggerType
    trigger_config: TriggerConfig
    is_active: bool = False
    max_retries: int = Field(default=DEFAULT_WORKFLOW_MAX_RETRIES, ge=0)
    timeout_seconds: Optional[int] = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    max_executions_per_hour: Optional[int] = Field(
        default=DEFAULT_MAX_EXECUTIONS_PER_HOUR, gt=0
    )
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_at: Optional[UtcDatetime] = None
    last_success_at: Optional[UtcDatetime] = None
    last_error_at: Optional[UtcDatetime] = None
    last_error: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _inject_trigger_kind(cls, data: Any) -> Any:
        if isinstance(data, dict):
            trigger_type = data.get("trigger_type")
            config = data.get("trigger_config")
            if config is None and trigger_type is not None:
                config = {}
            if isinstance(config, dict) and "kind" not in config and trigger_type:
                data = {
                    **data,
                    "trigger_config": {
                        **config,
                        "kind": getattr(trigger_type, "value", trigger_type),
                    },
                }
        return data

    @model_validator(mode="after")
    def _check_trigger(self) -> "WorkflowDefinition":
        if self.trigger_config.kind != self.trigger_type.value:
            raise ValueError(
                f"trigger_config kind '{self.trigger_config.kind}' does not match "
                f"trigger_type '{self.trigger_type.value}'"
            )
        if not self.slug:
            self.slug = slugify(self.name)
        return self


# ---------------------------------------------------------------------------
# Step configuration
# ---------------------------------------------------------------------------

ACTION_TYPE_PATTERN = r"^[a-z0-9_]+\.[a-z0-9_]+$"


class ActionStepConfig(BaseModel):
    kind: Literal["action"] = "action"
    action_type: str = Field(pattern=ACTION_TYPE_PATTERN)
    config: Dict[str, Any] = Field(default_factory=dict)


class Condition(BaseModel):
    field: str
    operator: str = "equals"
    value: Any = None


class ConditionStepConfig(BaseModel):
    kind: Literal["condition"] = "condition"
    operator: Literal["and", "or"] = "and"
    conditions: List[Condition] = Field(default_factory=list)
    true_step_id: Optional[str] = None
    false_step_id: Optional[str] = None


class DelayStepConfig(BaseModel):
    """``fixed`` takes seconds or ``<n>[smhdw]``; ``until`` an ISO timestamp;
    ``expression`` a template resolving to either."""

    kind: Literal["delay"] = "delay"
    mode: Literal["fixed", "until", "expression"] = "fixed"
    value: Any = "5m"


class WaitForEventStepConfig(BaseModel):
    kind: Literal["wait_for_event"] = "wait_for_event"
    event_type: str = Field(min_length=1)
    filter: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[Union[int, float, str]] = None
    on_timeout: Literal["continue", "fail"] = "continue"


class LoopStepConfig(BaseModel):
    kind: Literal["loop"] = "loop"
    source: Any
    item_variable: str = "item"
    action_type: str = Field(pattern=ACTION_TYPE_PATTERN)
    config: Dict[str, Any] = Field(default_factory=dict)
    max_iterations: int = Field(default=DEFAULT_LOOP_MAX_ITERATIONS, ge=1)


class ParallelBranch(BaseModel):
    name: str = Field(min_length=1)
    action_type: str = Field(pattern=ACTION_TYPE_PATTERN)
    config: Dict[str, Any] = Field(default_factory=dict)


class ParallelStepConfig(BaseModel):
    kind: Literal["parallel"] = "parallel"
    branches: List[ParallelBranch] = Field(min_length=1)
    wait_for_all: bool = True

    @field_validator("branches")
    @classmethod
    def _unique_names(cls, value: List[ParallelBranch]) -> List[ParallelBranch]:
        names = [branch.name for branch in value]
        if len(names) != len(set(names)):
            raise ValueError("parallel branch names must be unique")
        return value


class TransformStepConfig(BaseModel):
    kind: Literal["transform"] = "transform"
    mapping: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[Any] = None


class SetVariableStepConfig(BaseModel):
    kind: Literal["set_variable"] = "set_variable"
    key: str = Field(min_length=1)
    value: Any = None


class StopStepConfig(BaseModel):
    kind: Literal["stop"] = "stop"
    reason: Optional[str] = None


StepConfig = Annotated[
    Union[
        ActionStepConfig,
        ConditionStepConfig,
        DelayStepConfig,
        WaitForEventStepConfig,
        LoopStepConfig,
        ParallelStepConfig,
        TransformStepConfig,
        SetVariableStepConfig,
        StopStepConfig,
    ],
    Field(discriminator="kind"),
]


class WorkflowStep(BaseModel):
    """One unit of work inside a workflow, addressed by ``id`` and ``position``."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    position: int = Field(ge=0)
    kind: StepKind
    name: Optional[str] = None
    description: Optional[str] = None
    config: StepConfig
    input_mapping: Dict[str, Any] = Field(default_factory=dict)
    output_key: Optional[str] = None
    on_error: OnError = OnError.FAIL
    error_branch_step_id: Optional[str] = None
    max_retries: int = Field(default=0, ge=0)
    retry_delay_seconds: float = Field(default=DEFAULT_STEP_RETRY_DELAY_SECONDS, ge=0)
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def _inject_config_kind(cls, data: Any) -> Any:
        if isinstance(data, dict):
            kind = data.get("kind")
            config = data.get("config")
            if config is None and kind is not None:
                config = {}
            if isinstance(config, dict) and "kind" not in config and kind:
                data = {
                    **data,
                    "config": {**config, "kind": getattr(kind, "value", kind)},
                }
        return data

    @model_validator(mode="after")
    def _check_kind(self) -> "WorkflowStep":
        if self.config.kind != self.kind.value:
            raise ValueError(
                f"config kind '{self.config.kind}' does not match step kind "
                f"'{self.kind.value}'"
            )
        return self

    @property
    def result_key(self) -> str:
        """Key under ``context.steps`` where this step's output is stored."""
        return self.output_key or self.id


class WorkflowVariable(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    key: str = Field(min_length=1)
    value: Any = None
    value_type: Optional[
        Literal["string", "number", "boolean", "array", "object", "date"]
    ] = None
    description: Optional[str] = None
    is_secret: bool = False

    @model_validator(mode="after")
    def _infer_type(self) -> "WorkflowVariable":
        if self.value_type is None:
            value = self.value
            if isinstance(value, bool):
                self.value_type = "boolean"
            elif isinstance(value, (int, float)):
                self.value_type = "number"
            elif isinstance(value, (list, tuple)):
                self.value_type = "array"
            elif isinstance(value, dict):
                self.value_type = "object"
            else:
                self.value_type = "string"
        return self


class EventSubscription(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    workflow_id: str
    event_type: str = Field(min_length=1)
    source_module: Optional[str] = None
    filter: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    events_received: int = 0
    last_event_at: Optional[UtcDatetime] = None


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


class WaitCondition(BaseModel):
    """What a paused ``wait_for_event`` step is waiting for."""

    step_id: str
    event_type: str
    filter: Dict[str, Any] = Field(default_factory=dict)
    deadline: Optional[UtcDatetime] = None


class WorkflowExecution(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    tenant_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_type: TriggerType
    trigger_event_id: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    current_step_id: Optional[str] = None
    current_step_index: int = 0
    current_attempt: int = 0
    steps_completed: int = 0
    steps_total: int = 0
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    paused_at: Optional[UtcDatetime] = None
    resume_at: Optional[UtcDatetime] = None
    paused_seconds: float = 0.0
    waiting_for: Optional[WaitCondition] = None
    wait_event: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    attempt_number: int = 1
    parent_execution_id: Optional[str] = None
    claimed_by: Optional[str] = None
    heartbeat_at: Optional[UtcDatetime] = None
    duration_ms: Optional[int] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StepExecutionLog(BaseModel):
    """Audit row for one attempt of one step."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    step_kind: str
    position: int
    attempt_number: int = 1
    status: StepLogStatus = StepLogStatus.RUNNING
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Any] = None
    error: Optional[str] = None
    started_at: UtcDatetime = Field(default_factory=utcnow)
    completed_at: Optional[UtcDatetime] = None
    duration_ms: Optional[int] = None


# ---------------------------------------------------------------------------
# Trigger bindings
# ---------------------------------------------------------------------------


class ScheduledJob(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    workflow_id: str
    cron_expression: str
    timezone: str = "UTC"
    is_active: bool = True
    next_run_at: UtcDatetime
    last_run_at: Optional[UtcDatetime] = None
    last_status: Optional[str] = None
    consecutive_failures: int = 0
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_SCHEDULE_FAILURES


class WebhookEndpoint(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    workflow_id: str
    endpoint_path: str = Field(min_length=1)
    secret_key: Optional[str] = None
    allowed_methods: List[str] = Field(default_factory=lambda: ["POST"])
    is_active: bool = True
    total_calls: int = 0
    last_called_at: Optional[UtcDatetime] = None


class EventLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    event_type: str
    source_module: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: UtcDatetime = Field(default_factory=utcnow)
    processed: bool = False
    processed_at: Optional[UtcDatetime] = None
    workflows_triggered: List[str] = Field(default_factory=list)
    created_at: UtcDatetime = Field(default_factory=utcnow)
