"""Exception hierarchy for flowkeeper."""

from __future__ import annotations

from typing import List, Optional


class FlowkeeperError(Exception):
    """Base class for all flowkeeper errors."""


class DefinitionValidationError(FlowkeeperError):
    """Raised when a workflow definition fails save-time validation."""

    def __init__(self, problems: List[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class WorkflowNotFoundError(FlowkeeperError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFoundError(FlowkeeperError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class StepNotFoundError(FlowkeeperError):
    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Step not found: {step_id}")


class WorkflowInactiveError(FlowkeeperError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow is not active: {workflow_id}")


class RateLimitExceededError(FlowkeeperError):
    """Raised when a definition reached ``max_executions_per_hour``."""

    def __init__(self, workflow_id: str, limit: int):
        self.workflow_id = workflow_id
        self.limit = limit
        super().__init__(
            f"Workflow {workflow_id} reached its limit of {limit} executions per hour"
        )


class InvalidExecutionStateError(FlowkeeperError):
    def __init__(self, execution_id: str, status: str, operation: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Cannot {operation} execution {execution_id} in state '{status}'")


class WebhookNotFoundError(FlowkeeperError):
    def __init__(self, endpoint_path: str):
        self.endpoint_path = endpoint_path
        super().__init__(f"Webhook endpoint not found: {endpoint_path}")


class WebhookSignatureError(FlowkeeperError):
    """Raised when an inbound webhook signature is missing or invalid."""


class WebhookMethodNotAllowedError(FlowkeeperError):
    def __init__(self, method: str, allowed: Optional[List[str]] = None):
        self.method = method
        super().__init__(f"Method {method} not allowed (allowed: {allowed or []})")


class FilterError(FlowkeeperError):
    """Raised for malformed event filters."""


class TemplateError(FlowkeeperError):
    """Raised when a resolved template cannot be used where it is needed."""
