"""Message contracts exchanged between flowkeeper components."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import (
    EventSubscription,
    ScheduledJob,
    UtcDatetime,
    WebhookEndpoint,
    WorkflowDefinition,
    WorkflowStep,
    WorkflowVariable,
    new_id,
    utcnow,
)


class PlatformEvent(BaseModel):
    """Event emitted by a platform module and delivered to the dispatcher."""

    id: str = Field(default_factory=new_id)
    type: str = Field(min_length=1)
    tenant_id: str
    source_module: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: UtcDatetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "PlatformEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)

    def metadata(self) -> Dict[str, Any]:
        return {
            "event_id": self.id,
            "event_type": self.type,
            "source_module": self.source_module,
            "occurred_at": self.occurred_at.isoformat(),
        }


class ActionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ActionResult(BaseModel):
    """Outcome of a single action invocation."""

    status: ActionStatus
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: Any = None) -> "ActionResult":
        return cls(status=ActionStatus.COMPLETED, output=output)

    @classmethod
    def fail(cls, error: str, output: Any = None) -> "ActionResult":
        return cls(status=ActionStatus.FAILED, error=error, output=output)

    @property
    def succeeded(self) -> bool:
        return self.status == ActionStatus.COMPLETED


class DispatchResult(BaseModel):
    """What the dispatcher did with one event, firing or webhook call."""

    execution_ids: List[str] = Field(default_factory=list)
    workflow_ids: List[str] = Field(
        default_factory=list, description="Workflows that received an execution"
    )
    rejected: List[str] = Field(
        default_factory=list,
        description="Workflow ids skipped because of their hourly execution limit",
    )
    errors: Dict[str, str] = Field(
        default_factory=dict,
        description="Subscription or job id mapped to the error it raised",
    )
    resumed_execution_ids: List[str] = Field(default_factory=list)

    def merge(self, other: "DispatchResult") -> None:
        self.execution_ids.extend(other.execution_ids)
        self.workflow_ids.extend(other.workflow_ids)
        self.rejected.extend(other.rejected)
        self.errors.update(other.errors)
        self.resumed_execution_ids.extend(other.resumed_execution_ids)


class SweepResult(BaseModel):
    """Summary of one resumption sweep."""

    requeued: List[str] = Field(default_factory=list)
    executed: Dict[str, str] = Field(
        default_factory=dict, description="Execution id mapped to its final status"
    )
    started_at: datetime = Field(default_factory=utcnow)


class ExecutionSummary(BaseModel):
    """Short view of an execution for workflow listings."""

    id: str
    status: str
    trigger_type: str
    attempt_number: int = 1
    created_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class WorkflowSummary(BaseModel):
    workflow: WorkflowDefinition
    step_count: int = 0
    recent_executions: List[ExecutionSummary] = Field(default_factory=list)


class WorkflowDetail(WorkflowSummary):
    steps: List[WorkflowStep] = Field(default_factory=list)
    variables: List[WorkflowVariable] = Field(default_factory=list)
    subscriptions: List[EventSubscription] = Field(default_factory=list)
    schedules: List[ScheduledJob] = Field(default_factory=list)
    webhooks: List[WebhookEndpoint] = Field(default_factory=list)
