"""Execution engine tests: step kinds, error policies, pauses and timeouts."""

import asyncio

import pytest

from flowkeeper.actions import ActionDescriptor
from flowkeeper.config import EngineConfig
from flowkeeper.constants import REDACTED
from flowkeeper.contracts import ActionResult
from flowkeeper.errors import ExecutionNotFoundError, InvalidExecutionStateError
from flowkeeper.execute import ExecutionEngine
from flowkeeper.models import (
    ExecutionStatus,
    OnError,
    StepKind,
    StepLogStatus,
    StopStepConfig,
    WorkflowStep,
)


def register_flaky(registry, failures):
    """Register ``test.flaky`` failing ``failures`` times before succeeding."""
    calls = {"count": 0}

    async def flaky(action_type, data, context):
        calls["count"] += 1
        if calls["count"] <= failures:
            return ActionResult.fail(f"boom {calls['count']}")
        return ActionResult.ok({"calls": calls["count"]})

    registry.register(ActionDescriptor(id="test.flaky", name="Flaky"), flaky)
    return calls


def set_var(step_id, key, value):
    return {"id": step_id, "kind": "set_variable", "config": {"key": key, "value": value}}


def register_gated(registry):
    """Register ``test.gated``: call N blocks until ``gates[N]`` is set."""
    calls = []
    gates = [asyncio.Event(), asyncio.Event()]

    async def gated(action_type, data, context):
        index = len(calls)
        calls.append(action_type)
        await gates[index].wait()
        return ActionResult.ok({"call": index + 1})

    registry.register(ActionDescriptor(id="test.gated", name="Gated"), gated)
    return calls, gates


async def until(predicate, timeout=2.0):
    async def poll():
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_action_steps_store_output_and_resolve_templates(make_workflow, run_manual, collaborators):
    workflow = await make_workflow(
        [
            {
                "id": "create",
                "kind": "action",
                "output_key": "contact",
                "input_mapping": {"email": "{{trigger.email}}"},
                "config": {
                    "action_type": "crm.create_contact",
                    "config": {"first_name": "{{trigger.name}}"},
                },
            },
            set_var("remember", "contactId", "{{steps.contact.contact_id}}"),
        ]
    )

    execution = await run_manual(workflow.id, {"email": "ann@example.com", "name": "Ann"})

    assert execution.status == ExecutionStatus.COMPLETED
    contact = execution.output["contact"]["contact"]
    assert contact["email"] == "ann@example.com"
    assert contact["first_name"] == "Ann"
    assert execution.context["variables"]["contactId"] == contact["id"]
    assert execution.output["remember"] == {"contactId": contact["id"]}
    assert execution.steps_completed == 2
    assert execution.completed_at is not None


@pytest.mark.asyncio
async def test_run_records_counters_and_step_logs(make_workflow, run_manual, service, repo):
    workflow = await make_workflow([set_var("a", "x", 1), set_var("b", "y", 2)])

    execution = await run_manual(workflow.id)

    logs = await service.list_step_logs(execution.id)
    assert [log.step_id for log in logs] == ["a", "b"]
    assert all(log.status == StepLogStatus.COMPLETED for log in logs)
    assert logs[0].output_data == {"x": 1}
    stored = await repo.get_workflow(workflow.id)
    assert stored.total_runs == 1
    assert stored.successful_runs == 1
    assert stored.last_success_at is not None


@pytest.mark.asyncio
async def test_retry_exhaustion_fails_after_max_retries_plus_one(make_workflow, run_manual, registry, service):
    calls = register_flaky(registry, failures=10)
    workflow = await make_workflow(
        [
            {
                "id": "flaky",
                "kind": "action",
                "config": {"action_type": "test.flaky"},
                "on_error": "retry",
                "max_retries": 2,
                "retry_delay_seconds": 0,
            }
        ]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.FAILED
    assert calls["count"] == 3
    assert execution.error == "boom 3"
    assert execution.error_details["step_id"] == "flaky"
    assert execution.error_details["attempt"] == 3
    logs = await service.list_step_logs(execution.id)
    assert [log.attempt_number for log in logs] == [1, 2, 3]
    assert all(log.status == StepLogStatus.FAILED for log in logs)


@pytest.mark.asyncio
async def test_retry_succeeds_on_later_attempt(make_workflow, run_manual, registry, service):
    register_flaky(registry, failures=2)
    workflow = await make_workflow(
        [
            {
                "id": "flaky",
                "kind": "action",
                "config": {"action_type": "test.flaky"},
                "on_error": "retry",
                "max_retries": 2,
                "retry_delay_seconds": 0,
            }
        ]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.output["flaky"] == {"calls": 3}
    logs = await service.list_step_logs(execution.id)
    assert [log.status for log in logs] == [
        StepLogStatus.FAILED,
        StepLogStatus.FAILED,
        StepLogStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_long_retry_delay_pauses_until_sweep(make_workflow, run_manual, registry, engine, repo, clock):
    register_flaky(registry, failures=1)
    workflow = await make_workflow(
        [
            {
                "id": "flaky",
                "kind": "action",
                "config": {"action_type": "test.flaky"},
                "on_error": "retry",
                "max_retries": 1,
                "retry_delay_seconds": 120,
            }
        ]
    )

    paused = await run_manual(workflow.id)
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.current_attempt == 2

    early = await engine.sweep()
    assert paused.id not in early.executed

    clock.advance(seconds=121)
    result = await engine.sweep()
    assert result.executed[paused.id] == "completed"
    logs = await repo.list_step_logs(paused.id)
    assert [log.attempt_number for log in logs] == [1, 2]


@pytest.mark.asyncio
async def test_retry_backoff_factor_grows_the_delay(make_workflow, run_manual, registry, engine, repo, clock):
    register_flaky(registry, failures=2)
    engine.config.retry_backoff_factor = 2.0
    workflow = await make_workflow(
        [
            {
                "id": "flaky",
                "kind": "action",
                "config": {"action_type": "test.flaky"},
                "on_error": "retry",
                "max_retries": 2,
                "retry_delay_seconds": 120,
            }
        ]
    )

    paused = await run_manual(workflow.id)
    assert (paused.resume_at - clock.now).total_seconds() == 120

    clock.advance(seconds=120)
    await engine.sweep()
    again = await repo.get_execution(paused.id)
    assert again.status == ExecutionStatus.PAUSED
    assert again.current_attempt == 3
    assert (again.resume_at - clock.now).total_seconds() == 240


@pytest.mark.asyncio
async def test_on_error_continue_records_error_and_moves_on(make_workflow, run_manual, registry):
    register_flaky(registry, failures=10)
    workflow = await make_workflow(
        [
            {"id": "bad", "kind": "action", "config": {"action_type": "test.flaky"}, "on_error": "continue"},
            set_var("after", "reached", True),
        ]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.context["errors"] == [{"step_id": "bad", "position": 0, "error": "boom 1"}]
    assert execution.context["variables"]["reached"] is True
    assert "bad" not in execution.output


@pytest.mark.asyncio
async def test_on_error_branch_skips_to_target(make_workflow, run_manual, registry, service):
    register_flaky(registry, failures=10)
    workflow = await make_workflow(
        [
            {
                "id": "bad",
                "kind": "action",
                "config": {"action_type": "test.flaky"},
                "on_error": "branch",
                "error_branch_step_id": "handler",
            },
            set_var("skipped", "skipped", True),
            set_var("handler", "handled", True),
        ]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.context["variables"]["handled"] is True
    assert "skipped" not in execution.context["variables"]
    logs = await service.list_step_logs(execution.id)
    assert [log.step_id for log in logs] == ["bad", "handler"]


@pytest.mark.asyncio
async def test_on_error_fail_ends_execution(make_workflow, run_manual, registry, repo):
    register_flaky(registry, failures=10)
    workflow = await make_workflow(
        [
            {"id": "bad", "kind": "action", "config": {"action_type": "test.flaky"}},
            set_var("never", "x", 1),
        ]
    )

    execution = await run_manual(workflow.id, {"source": "test"})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "boom 1"
    assert execution.error_details["trigger_data"] == {"source": "test"}
    assert "x" not in execution.context["variables"]
    stored = await repo.get_workflow(workflow.id)
    assert stored.failed_runs == 1
    assert stored.last_error == "boom 1"


@pytest.mark.asyncio
async def test_missing_required_action_input_fails_step(make_workflow, run_manual):
    workflow = await make_workflow(
        [{"id": "mail", "kind": "action", "config": {"action_type": "email.send", "config": {"to": "a@b.c"}}}]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.FAILED
    assert "subject" in execution.error


def branching_steps():
    return [
        {
            "id": "check",
            "kind": "condition",
            "config": {
                "conditions": [{"field": "trigger.status", "operator": "equals", "value": "won"}],
                "true_step_id": "won",
                "false_step_id": "lost",
            },
        },
        set_var("won", "outcome", "won"),
        {"id": "halt", "kind": "stop", "config": {"reason": "celebrated"}},
        set_var("lost", "outcome", "lost"),
    ]


@pytest.mark.asyncio
async def test_condition_true_branch(make_workflow, run_manual, service):
    workflow = await make_workflow(branching_steps())

    execution = await run_manual(workflow.id, {"status": "won"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.context["variables"]["outcome"] == "won"
    assert execution.output["halt"] == {"stopped": True, "reason": "celebrated"}
    assert "check" not in execution.output
    logs = await service.list_step_logs(execution.id)
    assert [log.step_id for log in logs] == ["check", "won", "halt"]
    assert logs[0].output_data == {"passed": True, "results": [True], "branch_index": 0}


@pytest.mark.asyncio
async def test_condition_false_branch(make_workflow, run_manual, service):
    workflow = await make_workflow(branching_steps())

    execution = await run_manual(workflow.id, {"status": "lost"})

    assert execution.context["variables"]["outcome"] == "lost"
    logs = await service.list_step_logs(execution.id)
    assert [log.step_id for log in logs] == ["check", "lost"]


@pytest.mark.asyncio
async def test_condition_without_targets_continues(make_workflow, run_manual):
    workflow = await make_workflow(
        [
            {
                "id": "check",
                "kind": "condition",
                "config": {
                    "operator": "or",
                    "conditions": [
                        {"field": "trigger.amount", "operator": "gt", "value": 100},
                        {"field": "trigger.vip", "operator": "equals", "value": True},
                    ],
                },
            },
            set_var("next", "continued", True),
        ]
    )

    execution = await run_manual(workflow.id, {"amount": 5, "vip": False})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.context["variables"]["continued"] is True


@pytest.mark.asyncio
async def test_delay_pauses_and_resumes_at_next_step(make_workflow, run_manual, engine, repo, clock):
    workflow = await make_workflow(
        [
            set_var("before", "a", 1),
            {"id": "wait", "kind": "delay", "config": {"mode": "fixed", "value": "10m"}},
            set_var("after", "b", 2),
        ]
    )

    paused = await run_manual(workflow.id)

    assert paused.status == ExecutionStatus.PAUSED
    assert paused.current_step_index == 2
    assert paused.resume_at == clock.now.replace(minute=40)

    again = await engine.run(paused.id)
    assert again.status == ExecutionStatus.PAUSED

    clock.advance(minutes=11)
    result = await engine.sweep()
    assert result.executed == {paused.id: "completed"}

    finished = await repo.get_execution(paused.id)
    assert finished.context["variables"] == {"a": 1, "b": 2}
    assert finished.paused_seconds == pytest.approx(660)
    logs = await repo.list_step_logs(paused.id)
    assert [(log.step_id, log.status) for log in logs] == [
        ("before", StepLogStatus.COMPLETED),
        ("wait", StepLogStatus.COMPLETED),
        ("after", StepLogStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_delay_until_timestamp(make_workflow, run_manual):
    workflow = await make_workflow(
        [{"id": "wait", "kind": "delay", "config": {"mode": "until", "value": "{{trigger.at}}"}}]
    )

    paused = await run_manual(workflow.id, {"at": "2026-02-01T10:00:00Z"})

    assert paused.status == ExecutionStatus.PAUSED
    assert paused.resume_at.isoformat() == "2026-02-01T10:00:00+00:00"


@pytest.mark.asyncio
async def test_invalid_delay_fails(make_workflow, run_manual):
    workflow = await make_workflow(
        [{"id": "wait", "kind": "delay", "config": {"mode": "fixed", "value": "soon"}}]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.startswith("Invalid delay")


@pytest.mark.asyncio
async def test_cancel_paused_execution(make_workflow, run_manual, service, engine, clock):
    workflow = await make_workflow(
        [
            {"id": "wait", "kind": "delay", "config": {"value": "5m"}},
            set_var("after", "b", 2),
        ]
    )
    paused = await run_manual(workflow.id)

    cancelled = await service.cancel_execution(paused.id)
    assert cancelled.status == ExecutionStatus.CANCELLED

    clock.advance(minutes=10)
    result = await engine.sweep()
    assert result.executed == {}

    with pytest.raises(InvalidExecutionStateError):
        await service.cancel_execution(paused.id)
    with pytest.raises(ExecutionNotFoundError):
        await service.cancel_execution("missing")


@pytest.mark.asyncio
async def test_run_on_terminal_execution_is_a_no_op(make_workflow, run_manual, engine):
    workflow = await make_workflow([set_var("a", "x", 1)])
    execution = await run_manual(workflow.id)

    again = await engine.run(execution.id)

    assert again.status == ExecutionStatus.COMPLETED
    assert again.completed_at == execution.completed_at
    with pytest.raises(ExecutionNotFoundError):
        await engine.run("missing")


@pytest.mark.asyncio
async def test_timeout_marks_execution_timed_out(make_workflow, run_manual, registry, clock):
    async def slow(action_type, data, context):
        clock.advance(seconds=120)
        return ActionResult.ok({"done": True})

    registry.register(ActionDescriptor(id="test.slow", name="Slow"), slow)
    workflow = await make_workflow(
        [
            {"id": "slow", "kind": "action", "config": {"action_type": "test.slow"}},
            set_var("late", "x", 1),
        ],
        timeout_seconds=60,
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.TIMED_OUT
    assert "timeout" in execution.error
    assert execution.error_details["step_id"] == "late"


@pytest.mark.asyncio
async def test_paused_time_does_not_count_towards_timeout(make_workflow, run_manual, engine, clock):
    workflow = await make_workflow(
        [
            {"id": "wait", "kind": "delay", "config": {"value": "10m"}},
            set_var("after", "x", 1),
        ],
        timeout_seconds=60,
    )
    paused = await run_manual(workflow.id)

    clock.advance(minutes=10)
    result = await engine.sweep()

    assert result.executed[paused.id] == "completed"


@pytest.mark.asyncio
async def test_unknown_step_kind_is_fatal(make_workflow, run_manual, repo):
    workflow = await make_workflow([])
    rogue = WorkflowStep.model_construct(
        id="rogue",
        workflow_id=workflow.id,
        position=0,
        kind="teleport",
        config=StopStepConfig(),
        on_error=OnError.CONTINUE,
    )
    await repo.save_steps(workflow.id, [rogue])

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Unknown step kind: teleport"


@pytest.mark.asyncio
async def test_step_transition_budget_stops_loops(make_workflow, service, repo, registry, clock):
    workflow = await make_workflow(
        [
            set_var("tick", "ticks", 1),
            {"id": "again", "kind": "condition", "config": {"conditions": [], "true_step_id": "tick"}},
        ]
    )
    engine = ExecutionEngine(repo, registry, EngineConfig(max_step_transitions=10), clock=clock)
    execution = await service.trigger(workflow.id)

    finished = await engine.run(execution.id)

    assert finished.status == ExecutionStatus.FAILED
    assert finished.error == "Exceeded 10 step transitions"


@pytest.mark.asyncio
async def test_inactive_steps_are_skipped(make_workflow, run_manual, service):
    workflow = await make_workflow([set_var("a", "x", 1), set_var("b", "y", 2)])
    await service.update_step(workflow.id, "a", is_active=False)

    execution = await run_manual(workflow.id)

    assert execution.context["variables"] == {"y": 2}
    assert execution.steps_total == 1


@pytest.mark.asyncio
async def test_loop_runs_action_per_item(make_workflow, run_manual):
    workflow = await make_workflow(
        [
            {
                "id": "greet",
                "kind": "loop",
                "config": {
                    "source": "trigger.people",
                    "item_variable": "person",
                    "action_type": "transform.template",
                    "config": {
                        "template": "Hi {{name}} #{{index}}",
                        "variables": {"name": "{{variables.person.name}}", "index": "{{variables.loop_index}}"},
                    },
                },
            }
        ]
    )

    execution = await run_manual(workflow.id, {"people": [{"name": "Ann"}, {"name": "Bob"}]})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.output["greet"] == {
        "items": [{"result": "Hi Ann #0"}, {"result": "Hi Bob #1"}],
        "count": 2,
    }


@pytest.mark.asyncio
async def test_loop_truncates_to_max_iterations(make_workflow, run_manual):
    workflow = await make_workflow(
        [
            {
                "id": "sum",
                "kind": "loop",
                "config": {
                    "source": "{{trigger.numbers}}",
                    "action_type": "transform.math",
                    "config": {"operation": "multiply", "a": "{{variables.item}}", "b": 10},
                    "max_iterations": 2,
                },
            }
        ]
    )

    execution = await run_manual(workflow.id, {"numbers": [1, 2, 3]})

    assert execution.output["sum"] == {"items": [{"result": 10}, {"result": 20}], "count": 2}


@pytest.mark.asyncio
async def test_loop_over_non_list_fails(make_workflow, run_manual):
    workflow = await make_workflow(
        [
            {
                "id": "bad",
                "kind": "loop",
                "config": {"source": "trigger.missing", "action_type": "transform.math", "config": {}},
            }
        ]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.FAILED
    assert "did not resolve to a list" in execution.error


def parallel_steps(wait_for_all):
    return [
        {
            "id": "fan",
            "kind": "parallel",
            "config": {
                "wait_for_all": wait_for_all,
                "branches": [
                    {"name": "sum", "action_type": "transform.math", "config": {"operation": "add", "a": 1, "b": 2}},
                    {"name": "bad", "action_type": "transform.math", "config": {"operation": "pow", "a": 2}},
                ],
            },
        }
    ]


@pytest.mark.asyncio
async def test_parallel_wait_for_all_fails_on_branch_error(make_workflow, run_manual):
    workflow = await make_workflow(parallel_steps(wait_for_all=True))

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Parallel branches failed: bad"


@pytest.mark.asyncio
async def test_parallel_collects_results_and_errors(make_workflow, run_manual):
    workflow = await make_workflow(parallel_steps(wait_for_all=False))

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.output["fan"] == {
        "results": {"sum": {"result": 3}},
        "errors": {"bad": "Unknown math operation: pow"},
    }


@pytest.mark.asyncio
async def test_transform_maps_paths_and_templates(make_workflow, run_manual):
    workflow = await make_workflow(
        [
            {
                "id": "shape",
                "kind": "transform",
                "config": {
                    "mapping": {
                        "email": "trigger.email",
                        "greeting": "Hello {{trigger.name}}",
                        "fixed": 42,
                    }
                },
            },
            {
                "id": "pick",
                "kind": "transform",
                "config": {"source": "steps.shape", "mapping": {"address": "email"}},
            },
        ]
    )

    execution = await run_manual(workflow.id, {"email": "ann@example.com", "name": "Ann"})

    assert execution.output["shape"] == {
        "email": "ann@example.com",
        "greeting": "Hello Ann",
        "fixed": 42,
    }
    assert execution.output["pick"] == {"address": "ann@example.com"}


@pytest.mark.asyncio
async def test_stop_ends_execution_successfully(make_workflow, run_manual, service):
    workflow = await make_workflow(
        [{"id": "halt", "kind": "stop", "config": {"reason": "nothing to do"}}, set_var("never", "x", 1)]
    )

    execution = await run_manual(workflow.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.steps_completed == 1
    assert len(await service.list_step_logs(execution.id)) == 1


@pytest.mark.asyncio
async def test_secret_variables_are_redacted_in_stored_context(make_workflow, run_manual, service):
    workflow = await make_workflow(
        [
            {
                "id": "auth",
                "kind": "transform",
                "config": {"mapping": {"header": "Bearer {{variables.api_key}}"}},
            }
        ]
    )
    await service.set_variable(workflow.id, "api_key", "s3cret", is_secret=True)
    await service.set_variable(workflow.id, "region", "eu")

    execution = await run_manual(workflow.id)

    assert execution.output["auth"] == {"header": "Bearer s3cret"}
    assert execution.context["variables"]["api_key"] == REDACTED
    assert execution.context["variables"]["region"] == "eu"


@pytest.mark.asyncio
async def test_execution_context_exposes_metadata(make_workflow, run_manual):
    workflow = await make_workflow(
        [{"id": "who", "kind": "transform", "config": {"mapping": {"tenant": "execution.tenant_id"}}}]
    )

    execution = await run_manual(workflow.id)

    assert execution.output["who"] == {"tenant": workflow.tenant_id}
    assert execution.context["execution"]["trigger_type"] == "manual"


@pytest.mark.asyncio
async def test_step_kind_enum_covers_every_handler(engine):
    assert set(engine._handlers) == set(StepKind)


GATED_STEP = {"id": "slow", "kind": "action", "config": {"action_type": "test.gated"}}


@pytest.mark.asyncio
async def test_heartbeat_keeps_a_slow_step_from_being_taken_over(
    make_workflow, service, repo, registry, clock
):
    calls, gates = register_gated(registry)
    workflow = await make_workflow([GATED_STEP])
    config = EngineConfig(stale_after_seconds=60, heartbeat_interval=0.01)
    worker_a = ExecutionEngine(repo, registry, config, clock=clock, worker_id="worker-a")
    worker_b = ExecutionEngine(repo, registry, config, clock=clock, worker_id="worker-b")
    execution = await service.trigger(workflow.id)

    running = asyncio.create_task(worker_a.run(execution.id))

    async def started():
        return len(calls) == 1

    async def beat_seen():
        stored = await repo.get_execution(execution.id)
        return stored.heartbeat_at == clock.now

    await until(started)
    clock.advance(seconds=120)
    await until(beat_seen)
    sweep = await worker_b.sweep()
    gates[0].set()
    finished = await running

    assert sweep.requeued == []
    assert sweep.executed == {}
    assert calls == ["test.gated"]
    assert finished.status == ExecutionStatus.COMPLETED
    assert finished.output == {"slow": {"call": 1}}
    assert len(await service.list_step_logs(execution.id)) == 1


@pytest.mark.asyncio
async def test_worker_that_lost_its_claim_cannot_overwrite_new_owner(
    make_workflow, service, repo, registry, clock
):
    calls, gates = register_gated(registry)
    workflow = await make_workflow([GATED_STEP])
    # The heartbeat never fires within the test, so worker A goes stale.
    config = EngineConfig(stale_after_seconds=60, heartbeat_interval=50)
    worker_a = ExecutionEngine(repo, registry, config, clock=clock, worker_id="worker-a")
    worker_b = ExecutionEngine(repo, registry, config, clock=clock, worker_id="worker-b")
    execution = await service.trigger(workflow.id)

    running = asyncio.create_task(worker_a.run(execution.id))

    async def called(count):
        return len(calls) == count

    await until(lambda: called(1))
    clock.advance(seconds=120)
    takeover = asyncio.create_task(worker_b.sweep())
    await until(lambda: called(2))

    gates[0].set()
    stale = await running
    gates[1].set()
    sweep = await takeover
    final = await repo.get_execution(execution.id)

    assert stale.status == ExecutionStatus.RUNNING
    assert stale.claimed_by == "worker-b"
    assert sweep.requeued == [execution.id]
    assert sweep.executed == {execution.id: "completed"}
    assert final.status == ExecutionStatus.COMPLETED
    assert final.output == {"slow": {"call": 2}}
    assert final.claimed_by is None
    stored = await repo.get_workflow(workflow.id)
    assert stored.total_runs == 1
