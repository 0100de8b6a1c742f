"""WorkflowService tests: definitions, steps, bindings, bundles and retries."""

import textwrap

import pytest

from flowkeeper import PlatformEvent
from flowkeeper.constants import REDACTED
from flowkeeper.errors import (
    DefinitionValidationError,
    InvalidExecutionStateError,
    StepNotFoundError,
    WorkflowNotFoundError,
)
from flowkeeper.models import ExecutionStatus, StepKind

TENANT = "tenant-1"


def set_var(step_id, key, value):
    return {"id": step_id, "kind": "set_variable", "config": {"key": key, "value": value}}


def failing_step():
    return {
        "id": "bad",
        "kind": "action",
        "config": {"action_type": "transform.math", "config": {"operation": "pow", "a": 2}},
    }


@pytest.mark.asyncio
async def test_create_workflow_defaults(service):
    workflow = await service.create_workflow(TENANT, "Welcome New Leads!", "manual")

    assert workflow.slug == "welcome-new-leads"
    assert workflow.is_active is False
    assert workflow.trigger_config.kind == "manual"
    assert workflow.max_retries == 3
    assert workflow.timeout_seconds == 300
    assert workflow.max_executions_per_hour == 100


@pytest.mark.asyncio
async def test_create_workflow_rejects_invalid_definitions(service):
    with pytest.raises(DefinitionValidationError, match="cron"):
        await service.create_workflow(TENANT, "Nightly", "schedule", {"cron": "every night"})
    with pytest.raises(DefinitionValidationError):
        await service.create_workflow(TENANT, "Events", "event", {})
    with pytest.raises(DefinitionValidationError):
        await service.create_workflow(TENANT, "Limited", "manual", max_executions_per_hour=0)


@pytest.mark.asyncio
async def test_slug_is_unique_per_tenant(service):
    await service.create_workflow(TENANT, "Follow up", "manual")

    with pytest.raises(DefinitionValidationError, match="slug"):
        await service.create_workflow(TENANT, "Follow Up", "manual")
    other = await service.create_workflow("tenant-2", "Follow up", "manual")
    assert other.slug == "follow-up"


@pytest.mark.asyncio
async def test_rename_regenerates_slug(service):
    workflow = await service.create_workflow(TENANT, "Draft", "manual")

    renamed = await service.update_workflow(workflow.id, name="Renamed flow")

    assert renamed.slug == "renamed-flow"
    with pytest.raises(WorkflowNotFoundError):
        await service.update_workflow("missing", name="x")


@pytest.mark.asyncio
async def test_replace_steps_validates_the_graph(service):
    workflow = await service.create_workflow(TENANT, "Graph", "manual")

    with pytest.raises(DefinitionValidationError, match="unknown action type crm.unknown"):
        await service.replace_steps(
            workflow.id,
            [{"id": "x", "kind": "action", "config": {"action_type": "crm.unknown"}}],
        )
    with pytest.raises(DefinitionValidationError, match="unknown step nowhere"):
        await service.replace_steps(
            workflow.id,
            [{"id": "check", "kind": "condition", "config": {"true_step_id": "nowhere"}}],
        )
    with pytest.raises(DefinitionValidationError, match="points at itself"):
        await service.replace_steps(
            workflow.id,
            [{"id": "check", "kind": "condition", "config": {"false_step_id": "check"}}],
        )
    with pytest.raises(DefinitionValidationError, match="error_branch_step_id"):
        await service.replace_steps(
            workflow.id, [{**set_var("a", "x", 1), "on_error": "branch"}]
        )
    with pytest.raises(DefinitionValidationError, match="does not match"):
        await service.replace_steps(
            workflow.id, [{"id": "a", "kind": "delay", "config": {"kind": "stop"}}]
        )
    with pytest.raises(DefinitionValidationError, match="unique"):
        await service.replace_steps(workflow.id, [set_var("a", "x", 1), set_var("a", "y", 2)])

    assert (await service.get_workflow(workflow.id)).steps == []


@pytest.mark.asyncio
async def test_step_editing_keeps_positions_contiguous(service, make_workflow):
    workflow = await make_workflow([set_var("a", "x", 1), set_var("b", "y", 2)])

    added = await service.add_step(
        workflow.id, "set_variable", {"key": "z", "value": 3}, position=1, id="c"
    )
    assert added.position == 1
    steps = (await service.get_workflow(workflow.id)).steps
    assert [(step.id, step.position) for step in steps] == [("a", 0), ("c", 1), ("b", 2)]

    await service.reorder_steps(workflow.id, ["b", "a", "c"])
    steps = (await service.get_workflow(workflow.id)).steps
    assert [(step.id, step.position) for step in steps] == [("b", 0), ("a", 1), ("c", 2)]

    with pytest.raises(DefinitionValidationError, match="reorder"):
        await service.reorder_steps(workflow.id, ["b", "a"])

    await service.delete_step(workflow.id, "a")
    steps = (await service.get_workflow(workflow.id)).steps
    assert [(step.id, step.position) for step in steps] == [("b", 0), ("c", 1)]

    with pytest.raises(StepNotFoundError):
        await service.delete_step(workflow.id, "a")


@pytest.mark.asyncio
async def test_update_step_changes_kind_and_config(service, make_workflow):
    workflow = await make_workflow([set_var("a", "x", 1)])

    updated = await service.update_step(
        workflow.id, "a", kind="stop", config={"reason": "done"}
    )

    assert updated.kind == StepKind.STOP
    assert updated.config.reason == "done"
    with pytest.raises(StepNotFoundError):
        await service.update_step(workflow.id, "missing", name="x")


@pytest.mark.asyncio
async def test_error_branch_target_cannot_be_deactivated(service, repo, make_workflow):
    workflow = await make_workflow(
        [
            {**failing_step(), "on_error": "branch", "error_branch_step_id": "handler"},
            set_var("handler", "handled", True),
        ]
    )

    with pytest.raises(DefinitionValidationError, match="inactive step handler"):
        await service.update_step(workflow.id, "handler", is_active=False)

    steps = await repo.list_steps(workflow.id)
    assert all(step.is_active for step in steps)


@pytest.mark.asyncio
async def test_changing_event_type_rebinds_subscription(service, repo, dispatcher, make_workflow):
    workflow = await make_workflow(
        [set_var("a", "x", 1)], trigger_type="event", trigger_config={"event_type": "deal.updated"}
    )

    await service.update_workflow(workflow.id, trigger_config={"event_type": "deal.created"})

    subscriptions = await repo.list_subscriptions(workflow_id=workflow.id, active_only=False)
    assert [sub.event_type for sub in subscriptions] == ["deal.created"]
    old = await dispatcher.handle_event(PlatformEvent(type="deal.updated", tenant_id=TENANT))
    new = await dispatcher.handle_event(PlatformEvent(type="deal.created", tenant_id=TENANT))
    assert old.execution_ids == []
    assert len(new.execution_ids) == 1


@pytest.mark.asyncio
async def test_switching_trigger_type_removes_old_binding(service, repo):
    workflow = await service.create_workflow(TENANT, "Nightly", "schedule", {"cron": "0 2 * * *"})
    assert len(await repo.list_schedules(workflow_id=workflow.id)) == 1

    await service.update_workflow(
        workflow.id, trigger_type="webhook", trigger_config={"endpoint_path": "nightly"}
    )

    assert await repo.list_schedules(workflow_id=workflow.id) == []
    assert await repo.get_webhook_endpoint(TENANT, "nightly") is not None


@pytest.mark.asyncio
async def test_webhook_path_is_unique_per_tenant(service):
    await service.create_workflow(TENANT, "First", "webhook", {"endpoint_path": "leads"})

    with pytest.raises(DefinitionValidationError, match="leads"):
        await service.create_workflow(TENANT, "Second", "webhook", {"endpoint_path": "leads"})


@pytest.mark.asyncio
async def test_extra_bindings(service, repo, make_workflow):
    workflow = await make_workflow([set_var("a", "x", 1)])

    subscription = await service.subscribe(workflow.id, "invoice.paid", filter={"amount": {"$gte": 10}})
    job = await service.add_schedule(workflow.id, "30 8 * * 1", timezone="Europe/Berlin")
    endpoint = await service.add_webhook_endpoint(workflow.id, "extra", allowed_methods=["put"])

    assert subscription.filter == {"amount": {"$gte": 10}}
    assert job.timezone == "Europe/Berlin"
    assert endpoint.allowed_methods == ["PUT"]
    with pytest.raises(DefinitionValidationError):
        await service.add_schedule(workflow.id, "not a cron")

    assert await service.unsubscribe(subscription.id) is True
    assert await repo.list_subscriptions(workflow_id=workflow.id) == []


@pytest.mark.asyncio
async def test_get_workflow_redacts_secrets(service, make_workflow):
    workflow = await make_workflow(
        [set_var("a", "x", 1)],
        trigger_type="webhook",
        trigger_config={"endpoint_path": "orders", "secret_key": "hush"},
    )
    await service.set_variable(workflow.id, "api_key", "s3cret", is_secret=True)
    await service.set_variable(workflow.id, "region", "eu")

    detail = await service.get_workflow(workflow.id)

    values = {variable.key: variable.value for variable in detail.variables}
    assert values == {"api_key": REDACTED, "region": "eu"}
    assert detail.webhooks[0].secret_key == REDACTED
    assert detail.step_count == 1


@pytest.mark.asyncio
async def test_set_variable_infers_type_and_upserts(service, repo, make_workflow):
    workflow = await make_workflow([set_var("a", "x", 1)])

    first = await service.set_variable(workflow.id, "limit", 10)
    second = await service.set_variable(workflow.id, "limit", [1, 2])

    assert first.value_type == "number"
    assert second.value_type == "array"
    assert second.id == first.id
    assert len(await repo.list_variables(workflow.id)) == 1
    assert await service.delete_variable(workflow.id, "limit") is True


@pytest.mark.asyncio
async def test_list_workflows_summaries(service, run_manual, make_workflow):
    active = await make_workflow([set_var("a", "x", 1), set_var("b", "y", 2)])
    await make_workflow([set_var("a", "x", 1)], active=False)
    await run_manual(active.id)

    summaries = await service.list_workflows(tenant_id=TENANT, is_active=True)

    assert [summary.workflow.id for summary in summaries] == [active.id]
    assert summaries[0].step_count == 2
    assert summaries[0].recent_executions[0].status == "completed"
    assert len(await service.list_workflows(tenant_id=TENANT)) == 2
    assert await service.list_workflows(tenant_id="tenant-2") == []


@pytest.mark.asyncio
async def test_delete_workflow_removes_everything(service, repo, run_manual, make_workflow):
    workflow = await make_workflow(
        [set_var("a", "x", 1)], trigger_type="event", trigger_config={"event_type": "deal.updated"}
    )
    execution = await run_manual(workflow.id)

    assert await service.delete_workflow(workflow.id) is True

    with pytest.raises(WorkflowNotFoundError):
        await service.get_workflow(workflow.id)
    assert await repo.get_execution(execution.id) is None
    assert await repo.list_subscriptions(workflow_id=workflow.id, active_only=False) == []
    assert await service.delete_workflow(workflow.id) is False


# ---------------------------------------------------------------------------
# retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_creates_a_new_attempt(service, run_manual, make_workflow):
    workflow = await make_workflow([failing_step()])
    failed = await run_manual(workflow.id, {"order": 7})
    assert failed.status == ExecutionStatus.FAILED

    retried = await service.retry_execution(failed.id)

    assert retried.status == ExecutionStatus.PENDING
    assert retried.attempt_number == 2
    assert retried.parent_execution_id == failed.id
    assert retried.trigger_data == {"order": 7}
    assert retried.context["trigger"]["order"] == 7


@pytest.mark.asyncio
async def test_retry_rejects_successful_executions(service, run_manual, make_workflow):
    workflow = await make_workflow([set_var("a", "x", 1)])
    completed = await run_manual(workflow.id)

    with pytest.raises(InvalidExecutionStateError):
        await service.retry_execution(completed.id)


@pytest.mark.asyncio
async def test_retry_is_capped_by_max_retries(service, engine, run_manual, make_workflow):
    workflow = await make_workflow([failing_step()], max_retries=1)
    failed = await run_manual(workflow.id)

    retried = await service.retry_execution(failed.id)
    second = await engine.run(retried.id)
    assert second.status == ExecutionStatus.FAILED

    with pytest.raises(InvalidExecutionStateError, match="attempt 2 of 2"):
        await service.retry_execution(second.id)


@pytest.mark.asyncio
async def test_retry_keeps_event_metadata(service, dispatcher, engine, make_workflow):
    workflow = await make_workflow(
        [failing_step()], trigger_type="event", trigger_config={"event_type": "deal.updated"}
    )
    event = PlatformEvent(type="deal.updated", tenant_id=TENANT, source_module="crm", payload={"a": 1})
    result = await dispatcher.ingest(event)
    failed = await engine.run(result.execution_ids[0])

    retried = await service.retry_execution(failed.id)

    assert retried.trigger_event_id == event.id
    assert retried.context["trigger"]["event_type"] == "deal.updated"
    assert retried.context["trigger"]["source_module"] == "crm"


@pytest.mark.asyncio
async def test_execution_queries(service, run_manual, make_workflow):
    workflow = await make_workflow([set_var("a", "x", 1)])
    first = await run_manual(workflow.id)
    pending = await service.trigger(workflow.id, {})

    completed = await service.list_executions(workflow_id=workflow.id, status="completed")
    queued = await service.list_executions(workflow_id=workflow.id, status=ExecutionStatus.PENDING)

    assert [execution.id for execution in completed] == [first.id]
    assert [execution.id for execution in queued] == [pending.id]
    assert len(await service.list_executions(tenant_id=TENANT, limit=1)) == 1
    assert (await service.get_execution(first.id)).status == ExecutionStatus.COMPLETED
    assert [log.step_id for log in await service.list_step_logs(first.id)] == ["a"]


# ---------------------------------------------------------------------------
# bundles
# ---------------------------------------------------------------------------


BUNDLE = textwrap.dedent(
    """
    workflows:
      - name: Welcome new leads
        trigger_type: event
        trigger_config:
          event_type: form.submission.received
        is_active: true
        variables:
          - key: greeting
            value: Hello
        steps:
          - id: check
            kind: condition
            config:
              conditions:
                - field: trigger.email
                  operator: is_not_empty
              false_step_id: done
          - id: contact
            kind: action
            config:
              action_type: crm.create_contact
              config:
                email: "{{trigger.email}}"
          - id: greet
            kind: transform
            config:
              mapping:
                text: "{{variables.greeting}} {{steps.contact.contact.email}}"
          - id: done
            kind: stop
    """
)


@pytest.mark.asyncio
async def test_load_bundle_imports_and_runs(service, dispatcher, engine, repo, tmp_path):
    path = tmp_path / "bundle.yaml"
    path.write_text(BUNDLE)

    [workflow] = await service.load_bundle(str(path), tenant_id=TENANT)

    assert workflow.slug == "welcome-new-leads"
    assert workflow.is_active is True
    detail = await service.get_workflow(workflow.id)
    assert [step.output_key for step in detail.steps] == ["check", "contact", "greet", "done"]
    assert detail.steps[0].config.false_step_id == detail.steps[3].id

    result = await dispatcher.ingest(
        PlatformEvent(type="form.submission.received", tenant_id=TENANT, payload={"email": "a@b.c"})
    )
    execution = await engine.run(result.execution_ids[0])

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.output["greet"] == {"text": "Hello a@b.c"}


@pytest.mark.asyncio
async def test_reimporting_a_bundle_replaces_the_definition(service, repo, tmp_path):
    path = tmp_path / "bundle.yaml"
    path.write_text(BUNDLE)

    [first] = await service.load_bundle(str(path), tenant_id=TENANT)
    [second] = await service.load_bundle(str(path), tenant_id=TENANT)

    assert second.id == first.id
    assert len(await service.list_workflows(tenant_id=TENANT)) == 1
    assert len(await repo.list_steps(first.id)) == 4
    assert len(await repo.list_subscriptions(workflow_id=first.id)) == 1


@pytest.mark.asyncio
async def test_import_bundle_requires_workflows_and_tenant(service):
    with pytest.raises(DefinitionValidationError, match="workflows"):
        await service.import_bundle({"flows": []}, tenant_id=TENANT)
    with pytest.raises(DefinitionValidationError, match="tenant_id"):
        await service.import_bundle({"workflows": [{"name": "No tenant"}]})
