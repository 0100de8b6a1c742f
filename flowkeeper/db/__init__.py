from .models import (
    EventLogRow,
    ExecutionRow,
    ScheduleRow,
    StepLogRow,
    StepRow,
    SubscriptionRow,
    VariableRow,
    WebhookRow,
    WorkflowRow,
)
from .workflow_db import WorkflowDB, normalize_database_url

__all__ = [
    "EventLogRow",
    "ExecutionRow",
    "ScheduleRow",
    "StepLogRow",
    "StepRow",
    "SubscriptionRow",
    "VariableRow",
    "WebhookRow",
    "WorkflowRow",
    "WorkflowDB",
    "normalize_database_url",
]
