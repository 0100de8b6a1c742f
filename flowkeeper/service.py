"""Configuration and query surface over workflows and their executions."""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .actions import ActionRegistry
from .constants import RECENT_EXECUTIONS_LIMIT, REDACTED
from .contracts import ExecutionSummary, WorkflowDetail, WorkflowSummary
from .dispatch import TriggerDispatcher
from .errors import (
    DefinitionValidationError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    StepNotFoundError,
    WorkflowNotFoundError,
)
from .execute import ExecutionEngine
from .models import (
    EventSubscription,
    EventTriggerConfig,
    ExecutionStatus,
    ScheduledJob,
    ScheduleTriggerConfig,
    StepExecutionLog,
    WebhookEndpoint,
    WebhookTriggerConfig,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowVariable,
    new_id,
    slugify,
    utcnow,
)
from .persistence import WorkflowRepository
from .scheduling import is_valid_cron, next_run
from .validation import validate_steps

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset(
    {ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT, ExecutionStatus.CANCELLED}
)
EVENT_METADATA_KEYS = ("event_id", "event_type", "source_module", "occurred_at")


def _problems(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or 'value'}: {error['msg']}"
        for error in exc.errors()
    ]


def _summarize(execution: WorkflowExecution) -> ExecutionSummary:
    return ExecutionSummary(
        id=execution.id,
        status=execution.status.value,
        trigger_type=execution.trigger_type.value,
        attempt_number=execution.attempt_number,
        created_at=execution.created_at,
        completed_at=execution.completed_at,
        error=execution.error,
    )


class WorkflowService:
    """Create, change and inspect workflows.

    Saving a definition binds its trigger: an event subscription, a scheduled
    job or a webhook endpoint is kept in line with ``trigger_config``.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        actions: ActionRegistry,
        dispatcher: Optional[TriggerDispatcher] = None,
        engine: Optional[ExecutionEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._actions = actions
        self._clock = clock
        self.dispatcher = dispatcher or TriggerDispatcher(repository, clock=clock)
        self.engine = engine or ExecutionEngine(repository, actions, clock=clock)

    # ------------------------------------------------------------------
    # definitions
    # ------------------------------------------------------------------
    async def _require_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def create_workflow(
        self,
        tenant_id: str,
        name: str,
        trigger_type: str,
        trigger_config: Optional[Mapping[str, Any]] = None,
        **fields: Any,
    ) -> WorkflowDefinition:
        try:
            workflow = WorkflowDefinition(
                tenant_id=tenant_id,
                name=name,
                trigger_type=trigger_type,
                trigger_config=dict(trigger_config) if trigger_config is not None else None,
                **fields,
            )
        except ValidationError as exc:
            raise DefinitionValidationError(_problems(exc)) from exc
        saved = await self._repository.save_workflow(workflow)
        await self._bind_trigger(saved)
        logger.info(f"Created workflow {saved.id} ({saved.slug}) for tenant {tenant_id}")
        return saved

    async def update_workflow(self, workflow_id: str, **changes: Any) -> WorkflowDefinition:
        current = await self._require_workflow(workflow_id)
        data = current.model_dump()
        if "trigger_type" in changes and "trigger_config" not in changes:
            data.pop("trigger_config")
        if "name" in changes and "slug" not in changes:
            data["slug"] = ""
        data.update(changes)
        data["updated_at"] = self._clock()
        try:
            workflow = WorkflowDefinition.model_validate(data)
        except ValidationError as exc:
            raise DefinitionValidationError(_problems(exc)) from exc
        if workflow.is_active and not current.is_active:
            await self._validate_for_activation(workflow)
        saved = await self._repository.save_workflow(workflow)
        await self._bind_trigger(saved, previous=current)
        logger.info(f"Updated workflow {workflow_id}")
        return saved

    async def delete_workflow(self, workflow_id: str) -> bool:
        deleted = await self._repository.delete_workflow(workflow_id)
        if deleted:
            logger.info(f"Deleted workflow {workflow_id}")
        return deleted

    async def _validate_for_activation(self, workflow: WorkflowDefinition) -> None:
        steps = await self._repository.list_steps(workflow.id)
        validate_steps(workflow.id, steps, self._actions)

    async def activate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self.update_workflow(workflow_id, is_active=True)

    async def deactivate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self.update_workflow(workflow_id, is_active=False)

    async def _bind_trigger(
        self,
        workflow: WorkflowDefinition,
        previous: Optional[WorkflowDefinition] = None,
    ) -> None:
        """Create the subscription, schedule or webhook ``trigger_config`` calls for.

        When ``previous`` is given, the binding of its trigger is removed if the
        trigger changed. Bindings added through :meth:`subscribe`,
        :meth:`add_schedule` or :meth:`add_webhook_endpoint` are left alone.
        """
        config = workflow.trigger_config
        if previous is not None and previous.trigger_config != config:
            await self._unbind_trigger(previous)

        if isinstance(config, EventTriggerConfig):
            await self._repository.save_subscription(
                EventSubscription(
                    tenant_id=workflow.tenant_id,
                    workflow_id=workflow.id,
                    event_type=config.event_type,
                    source_module=config.source_module,
                    filter=config.filter,
                )
            )
        elif isinstance(config, ScheduleTriggerConfig):
            existing = [
                job
                for job in await self._repository.list_schedules(workflow_id=workflow.id)
                if job.cron_expression == config.cron and job.timezone == config.timezone
            ]
            if not existing:
                await self._repository.save_schedule(
                    ScheduledJob(
                        tenant_id=workflow.tenant_id,
                        workflow_id=workflow.id,
                        cron_expression=config.cron,
                        timezone=config.timezone,
                        next_run_at=next_run(config.cron, self._clock(), config.timezone),
                    )
                )
        elif isinstance(config, WebhookTriggerConfig):
            await self._repository.save_webhook_endpoint(
                WebhookEndpoint(
                    tenant_id=workflow.tenant_id,
                    workflow_id=workflow.id,
                    endpoint_path=config.endpoint_path,
                    secret_key=config.secret_key,
                    allowed_methods=config.allowed_methods,
                )
            )

    async def _unbind_trigger(self, workflow: WorkflowDefinition) -> None:
        config = workflow.trigger_config
        if isinstance(config, EventTriggerConfig):
            for subscription in await self._repository.list_subscriptions(
                workflow_id=workflow.id, event_type=config.event_type, active_only=False
            ):
                if subscription.source_module == config.source_module:
                    await self._repository.delete_subscription(subscription.id)
        elif isinstance(config, ScheduleTriggerConfig):
            for job in await self._repository.list_schedules(workflow_id=workflow.id):
                if job.cron_expression == config.cron and job.timezone == config.timezone:
                    await self._repository.delete_schedule(job.id)
        elif isinstance(config, WebhookTriggerConfig):
            for endpoint in await self._repository.list_webhook_endpoints(workflow.id):
                if endpoint.endpoint_path == config.endpoint_path:
                    await self._repository.delete_webhook_endpoint(endpoint.id)

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------
    async def _save_steps(self, workflow_id: str, steps: List[WorkflowStep]) -> List[WorkflowStep]:
        ordered = sorted(steps, key=lambda step: step.position)
        for position, step in enumerate(ordered):
            step.position = position
        validate_steps(workflow_id, ordered, self._actions)
        await self._repository.save_steps(workflow_id, ordered)
        return ordered

    async def replace_steps(
        self, workflow_id: str, steps: List[Mapping[str, Any] | WorkflowStep]
    ) -> List[WorkflowStep]:
        await self._require_workflow(workflow_id)
        built = []
        try:
            for position, step in enumerate(steps):
                if isinstance(step, WorkflowStep):
                    built.append(step)
                else:
                    built.append(
                        WorkflowStep.model_validate(
                            {"position": position, **step, "workflow_id": workflow_id}
                        )
                    )
        except ValidationError as exc:
            raise DefinitionValidationError(_problems(exc)) from exc
        return await self._save_steps(workflow_id, built)

    async def add_step(
        self,
        workflow_id: str,
        kind: str,
        config: Optional[Mapping[str, Any]] = None,
        position: Optional[int] = None,
        **fields: Any,
    ) -> WorkflowStep:
        """Insert a step at ``position`` (default: the end) and renumber."""
        await self._require_workflow(workflow_id)
        steps = await self._repository.list_steps(workflow_id)
        if position is None or position > len(steps):
            position = len(steps)
        try:
            step = WorkflowStep(
                workflow_id=workflow_id,
                kind=kind,
                config=dict(config) if config is not None else None,
                position=position,
                **fields,
            )
        except ValidationError as exc:
            raise DefinitionValidationError(_problems(exc)) from exc
        steps.insert(position, step)
        for index, existing in enumerate(steps):
            existing.position = index
        await self._save_steps(workflow_id, steps)
        return step

    async def update_step(self, workflow_id: str, step_id: str, **changes: Any) -> WorkflowStep:
        steps = await self._repository.list_steps(workflow_id)
        for index, step in enumerate(steps):
            if step.id == step_id:
                data = step.model_dump()
                if "kind" in changes and "config" not in changes:
                    data.pop("config")
                data.update(changes)
                data["id"] = step_id
                data["workflow_id"] = workflow_id
                try:
                    updated = WorkflowStep.model_validate(data)
                except ValidationError as exc:
                    raise DefinitionValidationError(_problems(exc)) from exc
                steps[index] = updated
                await self._save_steps(workflow_id, steps)
                return updated
        raise StepNotFoundError(step_id)

    async def delete_step(self, workflow_id: str, step_id: str) -> None:
        steps = await self._repository.list_steps(workflow_id)
        remaining = [step for step in steps if step.id != step_id]
        if len(remaining) == len(steps):
            raise StepNotFoundError(step_id)
        for index, step in enumerate(remaining):
            step.position = index
        await self._save_steps(workflow_id, remaining)

    async def reorder_steps(self, workflow_id: str, step_ids: List[str]) -> List[WorkflowStep]:
        steps = {step.id: step for step in await self._repository.list_steps(workflow_id)}
        if sorted(step_ids) != sorted(steps):
            raise DefinitionValidationError(
                "reorder must list every step of the workflow exactly once"
            )
        for position, step_id in enumerate(step_ids):
            steps[step_id].position = position
        return await self._save_steps(workflow_id, list(steps.values()))

    # ------------------------------------------------------------------
    # variables and trigger bindings
    # ------------------------------------------------------------------
    async def set_variable(
        self,
        workflow_id: str,
        key: str,
        value: Any,
        is_secret: bool = False,
        description: Optional[str] = None,
        value_type: Optional[str] = None,
    ) -> WorkflowVariable:
        await self._require_workflow(workflow_id)
        try:
            variable = WorkflowVariable(
                workflow_id=workflow_id,
                key=key,
                value=value,
                is_secret=is_secret,
                description=description,
                value_type=value_type,
            )
        except ValidationError as exc:
            raise DefinitionValidationError(_problems(exc)) from exc
        return await self._repository.save_variable(variable)

    async def delete_variable(self, workflow_id: str, key: str) -> bool:
        return await self._repository.delete_variable(workflow_id, key)

    async def subscribe(
        self,
        workflow_id: str,
        event_type: str,
        source_module: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
    ) -> EventSubscription:
        """Subscribe ``workflow_id`` to an additional event type."""
        workflow = await self._require_workflow(workflow_id)
        return await self._repository.save_subscription(
            EventSubscription(
                tenant_id=workflow.tenant_id,
                workflow_id=workflow_id,
                event_type=event_type,
                source_module=source_module,
                filter=dict(filter or {}),
            )
        )

    async def unsubscribe(self, subscription_id: str) -> bool:
        return await self._repository.delete_subscription(subscription_id)

    async def add_schedule(
        self, workflow_id: str, cron: str, timezone: str = "UTC"
    ) -> ScheduledJob:
        workflow = await self._require_workflow(workflow_id)
        if not is_valid_cron(cron):
            raise DefinitionValidationError(f"Invalid cron expression: {cron!r}")
        return await self._repository.save_schedule(
            ScheduledJob(
                tenant_id=workflow.tenant_id,
                workflow_id=workflow_id,
                cron_expression=cron,
                timezone=timezone,
                next_run_at=next_run(cron, self._clock(), timezone),
            )
        )

    async def add_webhook_endpoint(
        self,
        workflow_id: str,
        endpoint_path: str,
        secret_key: Optional[str] = None,
        allowed_methods: Optional[List[str]] = None,
    ) -> WebhookEndpoint:
        workflow = await self._require_workflow(workflow_id)
        return await self._repository.save_webhook_endpoint(
            WebhookEndpoint(
                tenant_id=workflow.tenant_id,
                workflow_id=workflow_id,
                endpoint_path=endpoint_path,
                secret_key=secret_key,
                allowed_methods=[m.upper() for m in allowed_methods or ["POST"]],
            )
        )

    # ------------------------------------------------------------------
    # bundles
    # ------------------------------------------------------------------
    @staticmethod
    def _alias_steps(steps: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Give bundle steps fresh ids and rewrite references to their aliases.

        A bundle step's ``id`` is a local alias; it also becomes the step's
        ``output_key`` unless one is given.
        """
        aliases: Dict[str, str] = {}
        prepared = []
        for raw in steps:
            step = copy.deepcopy(dict(raw))
            alias = step.get("id")
            step["id"] = new_id()
            if alias:
                aliases[str(alias)] = step["id"]
                step.setdefault("output_key", str(alias))
            prepared.append(step)

        for step in prepared:
            target = step.get("error_branch_step_id")
            if target in aliases:
                step["error_branch_step_id"] = aliases[target]
            config = step.get("config")
            if isinstance(config, dict):
                for key in ("true_step_id", "false_step_id"):
                    if config.get(key) in aliases:
                        config[key] = aliases[config[key]]
        return prepared

    async def import_bundle(
        self, bundle: Mapping[str, Any], tenant_id: Optional[str] = None
    ) -> List[WorkflowDefinition]:
        """Create or replace the workflows listed under ``workflows``.

        Workflows are matched by slug within their tenant; an existing one has
        its definition, steps and variables replaced.
        """
        workflows = bundle.get("workflows") if isinstance(bundle, Mapping) else None
        if not isinstance(workflows, list):
            raise DefinitionValidationError("bundle must contain a 'workflows' list")
        return [await self._import_workflow(dict(spec), tenant_id) for spec in workflows]

    async def _import_workflow(
        self, spec: Dict[str, Any], tenant_id: Optional[str]
    ) -> WorkflowDefinition:
        steps = spec.pop("steps", None) or []
        variables = spec.pop("variables", None) or []
        is_active = bool(spec.pop("is_active", False))
        tenant = tenant_id or spec.get("tenant_id")
        spec.pop("tenant_id", None)
        name = spec.pop("name", None)
        if not tenant or not name:
            raise DefinitionValidationError("bundle workflows need a tenant_id and a name")

        existing = await self._repository.get_workflow_by_slug(
            tenant, spec.get("slug") or slugify(name)
        )
        if existing is not None:
            workflow = await self.update_workflow(
                existing.id, name=name, is_active=False, **spec
            )
        else:
            workflow = await self.create_workflow(
                tenant,
                name,
                trigger_type=spec.pop("trigger_type", "manual"),
                trigger_config=spec.pop("trigger_config", None),
                **spec,
            )

        await self.replace_steps(workflow.id, self._alias_steps(steps))
        for variable in variables:
            await self.set_variable(workflow.id, **variable)
        if is_active:
            workflow = await self.activate_workflow(workflow.id)
        logger.info(f"Imported workflow {workflow.slug} with {len(steps)} steps")
        return workflow

    async def load_bundle(
        self, path: str, tenant_id: Optional[str] = None
    ) -> List[WorkflowDefinition]:
        """Import a YAML bundle from ``path``."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return await self.import_bundle(data, tenant_id)

    # ------------------------------------------------------------------
    # executions
    # ------------------------------------------------------------------
    async def trigger(
        self,
        workflow_id: str,
        payload: Optional[Dict[str, Any]] = None,
        require_active: bool = False,
    ) -> WorkflowExecution:
        return await self.dispatcher.trigger_manual(workflow_id, payload, require_active)

    async def cancel_execution(self, execution_id: str) -> WorkflowExecution:
        return await self.engine.cancel(execution_id)

    async def retry_execution(self, execution_id: str) -> WorkflowExecution:
        """Start a new attempt of a failed, timed out or cancelled execution.

        The new execution references the original as its parent and carries
        the next attempt number; at most ``max_retries`` retries are allowed.
        """
        original = await self.get_execution(execution_id)
        if original.status not in RETRYABLE_STATUSES:
            raise InvalidExecutionStateError(execution_id, original.status.value, "retry")
        workflow = await self._require_workflow(original.workflow_id)
        if original.attempt_number > workflow.max_retries:
            raise InvalidExecutionStateError(
                execution_id,
                original.status.value,
                f"retry (attempt {original.attempt_number} of {workflow.max_retries + 1})",
            )

        trigger = original.context.get("trigger") or {}
        metadata = {key: trigger[key] for key in EVENT_METADATA_KEYS if key in trigger}
        retried = await self.dispatcher.create_execution(
            workflow,
            original.trigger_type,
            original.trigger_data,
            trigger_event_id=original.trigger_event_id,
            metadata=metadata or None,
            parent_execution_id=original.id,
            attempt_number=original.attempt_number + 1,
        )
        logger.info(f"Execution {execution_id} retried as {retried.id}")
        return retried

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    async def _summary(self, workflow: WorkflowDefinition) -> Dict[str, Any]:
        steps = await self._repository.list_steps(workflow.id)
        recent = await self._repository.list_executions(
            workflow_id=workflow.id, limit=RECENT_EXECUTIONS_LIMIT
        )
        return {
            "workflow": workflow,
            "step_count": len(steps),
            "recent_executions": [_summarize(execution) for execution in recent],
            "steps": steps,
        }

    async def list_workflows(
        self, tenant_id: Optional[str] = None, is_active: Optional[bool] = None
    ) -> List[WorkflowSummary]:
        summaries = []
        for workflow in await self._repository.list_workflows(tenant_id, is_active):
            summary = await self._summary(workflow)
            summary.pop("steps")
            summaries.append(WorkflowSummary(**summary))
        return summaries

    async def get_workflow(self, workflow_id: str) -> WorkflowDetail:
        """Definition with steps, bindings and recent executions; secrets redacted."""
        workflow = await self._require_workflow(workflow_id)
        variables = [
            variable.model_copy(update={"value": REDACTED}) if variable.is_secret else variable
            for variable in await self._repository.list_variables(workflow_id)
        ]
        webhooks = [
            endpoint.model_copy(update={"secret_key": REDACTED}) if endpoint.secret_key else endpoint
            for endpoint in await self._repository.list_webhook_endpoints(workflow_id)
        ]
        return WorkflowDetail(
            **await self._summary(workflow),
            variables=variables,
            subscriptions=await self._repository.list_subscriptions(
                workflow_id=workflow_id, active_only=False
            ),
            schedules=await self._repository.list_schedules(workflow_id=workflow_id),
            webhooks=webhooks,
        )

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus | str] = None,
        limit: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        return await self._repository.list_executions(
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            status=ExecutionStatus(status) if status is not None else None,
            limit=limit,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_step_logs(self, execution_id: str) -> List[StepExecutionLog]:
        return await self._repository.list_step_logs(execution_id)
