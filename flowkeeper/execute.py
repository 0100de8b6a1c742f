"""Execution engine: a resumable state machine walking the steps of a workflow."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from .actions import ActionRegistry
from .conditions import evaluate_conditions
from .config import EngineConfig
from .constants import REDACTED
from .contracts import SweepResult
from .dispatch import build_trigger_context
from .errors import ExecutionNotFoundError, InvalidExecutionStateError
from .models import (
    ActionStepConfig,
    ConditionStepConfig,
    DelayStepConfig,
    ExecutionStatus,
    LoopStepConfig,
    OnError,
    ParallelStepConfig,
    SetVariableStepConfig,
    StepExecutionLog,
    StepKind,
    StepLogStatus,
    StopStepConfig,
    TransformStepConfig,
    WaitCondition,
    WaitForEventStepConfig,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowVariable,
    new_id,
    utcnow,
)
from .persistence import WorkflowRepository
from .templating import get_value_by_path, has_markers, resolve
from .utils.durations import parse_duration, parse_timestamp
from .utils.retry import compute_backoff, schedule_retry

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """Outcome of one attempt of one step."""

    status: StepLogStatus
    output: Any = None
    error: Optional[str] = None
    # Fatal failures end the execution regardless of ``on_error``.
    fatal: bool = False
    store: bool = True
    jump_to: Optional[str] = None
    pause_until: Optional[datetime] = None
    waiting_for: Optional[WaitCondition] = None
    stop: bool = False
    input: Optional[Dict[str, Any]] = None

    @classmethod
    def completed(cls, output: Any = None, **kwargs: Any) -> "StepResult":
        return cls(status=StepLogStatus.COMPLETED, output=output, **kwargs)

    @classmethod
    def failed(cls, error: str, **kwargs: Any) -> "StepResult":
        return cls(status=StepLogStatus.FAILED, error=error, **kwargs)


@dataclass
class _RunState:
    execution: WorkflowExecution
    workflow: Optional[WorkflowDefinition]
    steps: List[WorkflowStep]
    context: Dict[str, Any]
    secret_keys: Set[str] = field(default_factory=set)
    transitions: int = 0

    def index_of(self, step_id: Optional[str]) -> Optional[int]:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None


StepHandler = Callable[[_RunState, WorkflowStep, Dict[str, Any]], Awaitable[StepResult]]


def _resolve_reference(value: Any, context: Dict[str, Any]) -> Any:
    """A bare dotted path is looked up; anything else is templated."""
    if isinstance(value, str) and not has_markers(value):
        return get_value_by_path(context, value)
    return resolve(value, context)


class ExecutionEngine:
    """Claims executions and walks their steps, checkpointing after each one.

    Pausing (delays, waits, long retry delays) means persisting the execution
    as ``paused`` with a ``resume_at`` marker and returning; :meth:`sweep`
    picks it up again once the marker has passed.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        actions: ActionRegistry,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        worker_id: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._actions = actions
        self.config = config or EngineConfig()
        self._clock = clock
        self.worker_id = worker_id or f"worker-{new_id()[:8]}"
        self._handlers: Dict[str, StepHandler] = {
            StepKind.ACTION: self._run_action,
            StepKind.CONDITION: self._run_condition,
            StepKind.DELAY: self._run_delay,
            StepKind.WAIT_FOR_EVENT: self._run_wait_for_event,
            StepKind.LOOP: self._run_loop,
            StepKind.PARALLEL: self._run_parallel,
            StepKind.TRANSFORM: self._run_transform,
            StepKind.SET_VARIABLE: self._run_set_variable,
            StepKind.STOP: self._run_stop,
        }

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def run(self, execution_id: str) -> WorkflowExecution:
        """Claim ``execution_id`` and run it until it pauses or finishes.

        When the execution cannot be claimed (running elsewhere, terminal,
        cancelled, or paused with a future ``resume_at``) the stored execution
        is returned unchanged.
        """
        execution = await self._repository.claim_execution(
            execution_id, self.worker_id, self._clock()
        )
        if execution is None:
            stored = await self._repository.get_execution(execution_id)
            if stored is None:
                raise ExecutionNotFoundError(execution_id)
            logger.debug(f"Execution {execution_id} not claimable in state {stored.status.value}")
            return stored

        logger.info(
            f"Worker {self.worker_id} claimed execution {execution_id} "
            f"at step index {execution.current_step_index}"
        )
        run = await self._prepare(execution)
        if run.workflow is None:
            return await self._finish(
                run, ExecutionStatus.FAILED, error=f"Workflow not found: {execution.workflow_id}"
            )
        try:
            return await self._walk(run)
        except Exception as exc:
            logger.exception(f"Execution {execution_id} failed with an internal error")
            return await self._finish(run, ExecutionStatus.FAILED, error=f"Internal error: {exc}")

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """``pending|running|paused -> cancelled``.

        A running execution notices the cancellation at its next step boundary.
        """
        cancelled = await self._repository.cancel_execution(execution_id, self._clock())
        if cancelled is None:
            stored = await self._repository.get_execution(execution_id)
            if stored is None:
                raise ExecutionNotFoundError(execution_id)
            raise InvalidExecutionStateError(execution_id, stored.status.value, "cancel")
        logger.info(f"Execution {execution_id} cancelled")
        return cancelled

    async def sweep(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> SweepResult:
        """Requeue stale executions, then run every due one concurrently."""
        now = now or self._clock()
        result = SweepResult(started_at=now)
        stale_before = now - timedelta(seconds=self.config.stale_after_seconds)
        result.requeued = await self._repository.requeue_stale_executions(stale_before)
        for execution_id in result.requeued:
            logger.warning(f"Requeued stale execution {execution_id}")

        due = await self._repository.list_due_executions(now, limit or self.config.batch_size)
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def run_one(execution_id: str) -> WorkflowExecution:
            async with semaphore:
                return await self.run(execution_id)

        outcomes = await asyncio.gather(
            *(run_one(execution.id) for execution in due), return_exceptions=True
        )
        for execution, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Sweep could not run execution {execution.id}: {outcome!r}")
                continue
            result.executed[outcome.id] = outcome.status.value
        return result

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Sweep every ``poll_interval`` seconds until ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.info(f"Worker {self.worker_id} started")
        while lifespan is None or loop.time() - started < lifespan:
            result = await self.sweep()
            if result.executed:
                logger.info(f"Sweep ran {len(result.executed)} executions")
            await asyncio.sleep(self.config.poll_interval)
        logger.info(f"Worker {self.worker_id} stopped")

    # ------------------------------------------------------------------
    # run lifecycle
    # ------------------------------------------------------------------
    async def _prepare(self, execution: WorkflowExecution) -> _RunState:
        workflow = await self._repository.get_workflow(execution.workflow_id)
        if workflow is None:
            return _RunState(execution, None, [], copy.deepcopy(execution.context))

        steps = await self._repository.list_steps(workflow.id, active_only=True)
        variables = await self._repository.list_variables(workflow.id)
        secret_keys = {variable.key for variable in variables if variable.is_secret}
        execution.steps_total = len(steps)
        context = self._build_context(execution, variables, secret_keys)
        return _RunState(execution, workflow, steps, context, secret_keys)

    @staticmethod
    def _build_context(
        execution: WorkflowExecution,
        variables: List[WorkflowVariable],
        secret_keys: Set[str],
    ) -> Dict[str, Any]:
        context = copy.deepcopy(execution.context)
        context.setdefault("trigger", build_trigger_context(execution.trigger_data))
        context.setdefault("steps", {})

        merged = {variable.key: copy.deepcopy(variable.value) for variable in variables}
        for key, value in (context.get("variables") or {}).items():
            if key in secret_keys and value == REDACTED:
                continue
            merged[key] = value
        context["variables"] = merged
        context["execution"] = {
            "id": execution.id,
            "workflow_id": execution.workflow_id,
            "tenant_id": execution.tenant_id,
            "trigger_type": execution.trigger_type.value,
            "attempt_number": execution.attempt_number,
            "started_at": execution.started_at.isoformat() if execution.started_at else None,
        }
        return context

    def _persistable(self, run: _RunState) -> Dict[str, Any]:
        context = copy.deepcopy(run.context)
        variables = context.get("variables") or {}
        for key in run.secret_keys:
            if key in variables:
                variables[key] = REDACTED
        return context

    def _timed_out(self, run: _RunState, now: datetime) -> bool:
        timeout = run.workflow.timeout_seconds if run.workflow else None
        started = run.execution.started_at
        if timeout is None or started is None:
            return False
        active = (now - started).total_seconds() - run.execution.paused_seconds
        return active > timeout

    async def _walk(self, run: _RunState) -> WorkflowExecution:
        execution = run.execution
        steps = run.steps
        index = execution.current_step_index

        while index < len(steps):
            stored = await self._repository.get_execution(execution.id)
            if (
                stored is None
                or stored.status != ExecutionStatus.RUNNING
                or stored.claimed_by != self.worker_id
            ):
                logger.info(f"Execution {execution.id} is no longer running here; stopping")
                return stored or execution

            step = steps[index]
            now = self._clock()
            if self._timed_out(run, now):
                return await self._finish(
                    run,
                    ExecutionStatus.TIMED_OUT,
                    error=f"Execution exceeded timeout of {run.workflow.timeout_seconds}s",
                    step=step,
                )
            run.transitions += 1
            if run.transitions > self.config.max_step_transitions:
                return await self._finish(
                    run,
                    ExecutionStatus.FAILED,
                    error=f"Exceeded {self.config.max_step_transitions} step transitions",
                    step=step,
                )

            execution.current_step_index = index
            execution.current_step_id = step.id
            attempt = execution.current_attempt or 1
            async with self._heartbeat(execution):
                result = await self._attempt(run, step, attempt)

            if result.status == StepLogStatus.FAILED:
                if (
                    not result.fatal
                    and step.on_error == OnError.RETRY
                    and attempt <= step.max_retries
                ):
                    execution.current_attempt = attempt + 1
                    delay = compute_backoff(
                        attempt, step.retry_delay_seconds, self.config.retry_backoff_factor
                    )
                    logger.info(
                        f"Retrying step {step.id} of execution {execution.id} "
                        f"(attempt {attempt + 1}/{step.max_retries + 1}) in {delay}s"
                    )
                    if delay <= self.config.inline_retry_max_delay:
                        async with self._heartbeat(execution):
                            await schedule_retry(delay)
                        continue
                    return await self._pause(run, self._clock() + timedelta(seconds=delay))

                if result.fatal or step.on_error in (OnError.FAIL, OnError.RETRY):
                    return await self._finish(
                        run, ExecutionStatus.FAILED, error=result.error, step=step, attempt=attempt
                    )
                if step.on_error == OnError.CONTINUE:
                    run.context.setdefault("errors", []).append(
                        {"step_id": step.id, "position": step.position, "error": result.error}
                    )
                    next_index = index + 1
                else:
                    target = run.index_of(step.error_branch_step_id)
                    if target is None:
                        return await self._finish(
                            run,
                            ExecutionStatus.FAILED,
                            error=f"Error branch target not found: {step.error_branch_step_id}",
                            step=step,
                            attempt=attempt,
                        )
                    logger.info(f"Step {step.id} failed; branching to {step.error_branch_step_id}")
                    next_index = target

            elif result.status == StepLogStatus.PAUSED:
                execution.waiting_for = result.waiting_for
                return await self._pause(run, result.pause_until)

            else:
                if result.store:
                    run.context["steps"][step.result_key] = result.output
                if result.stop:
                    execution.steps_completed += 1
                    return await self._finish(run, ExecutionStatus.COMPLETED)
                next_index = index + 1
                if result.jump_to:
                    target = run.index_of(result.jump_to)
                    if target is None:
                        return await self._finish(
                            run,
                            ExecutionStatus.FAILED,
                            error=f"Branch target not found: {result.jump_to}",
                            step=step,
                        )
                    next_index = target
                if result.pause_until is not None:
                    self._advance(run, next_index)
                    return await self._pause(run, result.pause_until)

            self._advance(run, next_index)
            index = next_index
            if not await self._checkpoint(run):
                logger.info(f"Execution {execution.id} changed state during step {step.id}")
                return await self._stored(execution)

        return await self._finish(run, ExecutionStatus.COMPLETED)

    def _advance(self, run: _RunState, next_index: int) -> None:
        execution = run.execution
        execution.current_attempt = 0
        execution.steps_completed += 1
        execution.current_step_index = next_index
        execution.current_step_id = (
            run.steps[next_index].id if next_index < len(run.steps) else None
        )

    async def _attempt(self, run: _RunState, step: WorkflowStep, attempt: int) -> StepResult:
        """Run one attempt of ``step`` and record it in the step log."""
        kind = getattr(step.kind, "value", step.kind)
        log = StepExecutionLog(
            execution_id=run.execution.id,
            step_id=step.id,
            step_kind=str(kind),
            position=step.position,
            attempt_number=attempt,
            started_at=self._clock(),
        )
        await self._repository.add_step_log(log)

        handler = self._handlers.get(step.kind)
        input_data: Dict[str, Any] = {}
        if handler is None:
            result = StepResult.failed(f"Unknown step kind: {kind}", fatal=True)
        else:
            try:
                input_data = resolve(step.input_mapping, run.context)
                result = await handler(run, step, input_data)
            except Exception as exc:
                logger.exception(f"Step {step.id} of execution {run.execution.id} raised")
                result = StepResult.failed(str(exc) or exc.__class__.__name__)

        finished = self._clock()
        log.input_data = result.input if result.input is not None else input_data
        log.status = result.status
        log.output_data = result.output
        log.error = result.error
        log.completed_at = finished
        log.duration_ms = int((finished - log.started_at).total_seconds() * 1000)
        await self._repository.update_step_log(log)

        if result.status == StepLogStatus.FAILED:
            logger.warning(
                f"Step {step.id} ({kind}) of execution {run.execution.id} failed "
                f"on attempt {attempt}: {result.error}"
            )
        return result

    @contextlib.asynccontextmanager
    async def _heartbeat(self, execution: WorkflowExecution) -> AsyncIterator[None]:
        """Keep ``heartbeat_at`` fresh while the body runs."""
        task = asyncio.create_task(self._beat(execution.id))
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _beat(self, execution_id: str) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                alive = await self._repository.touch_execution(
                    execution_id, self.worker_id, self._clock()
                )
            except Exception:
                logger.exception(f"Heartbeat for execution {execution_id} failed")
                continue
            if not alive:
                logger.warning(
                    f"Worker {self.worker_id} no longer holds execution {execution_id}"
                )
                return

    async def _checkpoint(self, run: _RunState) -> bool:
        execution = run.execution
        execution.context = self._persistable(run)
        execution.heartbeat_at = self._clock()
        return await self._repository.save_checkpoint(execution)

    async def _stored(self, execution: WorkflowExecution) -> WorkflowExecution:
        stored = await self._repository.get_execution(execution.id)
        return stored or execution

    async def _pause(
        self, run: _RunState, resume_at: Optional[datetime]
    ) -> WorkflowExecution:
        execution = run.execution
        now = self._clock()
        execution.context = self._persistable(run)
        execution.paused_at = now
        execution.resume_at = resume_at
        execution.heartbeat_at = now
        if not await self._repository.pause_execution(execution):
            logger.info(f"Execution {execution.id} could not be paused; no longer running")
            return await self._stored(execution)
        execution.status = ExecutionStatus.PAUSED
        execution.claimed_by = None
        logger.info(
            f"Execution {execution.id} paused at step index "
            f"{execution.current_step_index} until {resume_at.isoformat() if resume_at else 'event'}"
        )
        return execution

    async def _finish(
        self,
        run: _RunState,
        status: ExecutionStatus,
        error: Optional[str] = None,
        step: Optional[WorkflowStep] = None,
        attempt: Optional[int] = None,
    ) -> WorkflowExecution:
        execution = run.execution
        now = self._clock()
        execution.context = self._persistable(run)
        execution.status = status
        execution.completed_at = now
        execution.heartbeat_at = now
        execution.output = copy.deepcopy(execution.context.get("steps") or {})
        execution.error = error
        if status != ExecutionStatus.COMPLETED:
            execution.error_details = {
                "error": error,
                "step_id": step.id if step else None,
                "position": step.position if step else None,
                "attempt": attempt,
                "trigger_data": copy.deepcopy(execution.trigger_data),
            }
        started = execution.started_at or now
        execution.duration_ms = int((now - started).total_seconds() * 1000)

        if not await self._repository.finish_execution(execution):
            logger.info(f"Execution {execution.id} was no longer running when finishing")
            return await self._stored(execution)
        execution.claimed_by = None

        if run.workflow is not None:
            await self._repository.record_run_result(
                run.workflow.id, status == ExecutionStatus.COMPLETED, now, error
            )
        if status == ExecutionStatus.COMPLETED:
            logger.info(f"Execution {execution.id} completed in {execution.duration_ms}ms")
        else:
            logger.error(f"Execution {execution.id} ended as {status.value}: {error}")
        return execution

    # ------------------------------------------------------------------
    # step kinds
    # ------------------------------------------------------------------
    async def _run_action(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: ActionStepConfig = step.config
        data = {**input_data, **resolve(config.config, run.context)}
        result = await self._actions.execute(config.action_type, data, run.context)
        if result.succeeded:
            return StepResult.completed(result.output, input=data)
        return StepResult.failed(
            result.error or f"Action {config.action_type} failed",
            output=result.output,
            input=data,
        )

    async def _run_condition(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: ConditionStepConfig = step.config
        passed, results = evaluate_conditions(config.conditions, run.context, config.operator)
        return StepResult.completed(
            {"passed": passed, "results": results, "branch_index": 0 if passed else 1},
            store=False,
            jump_to=config.true_step_id if passed else config.false_step_id,
        )

    async def _run_delay(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: DelayStepConfig = step.config
        now = self._clock()
        value = resolve(config.value, run.context)
        if has_markers(value):
            return StepResult.failed(f"Delay value has unresolved variables: {value}")
        try:
            if config.mode == "fixed":
                resume_at = now + parse_duration(value)
            elif config.mode == "until":
                resume_at = parse_timestamp(value)
            else:
                try:
                    resume_at = now + parse_duration(value)
                except ValueError:
                    resume_at = parse_timestamp(value)
        except ValueError as exc:
            return StepResult.failed(f"Invalid delay: {exc}")
        return StepResult.completed(
            {"delay_until": resume_at.isoformat()}, store=False, pause_until=resume_at
        )

    async def _run_wait_for_event(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: WaitForEventStepConfig = step.config
        execution = run.execution
        waiting = execution.waiting_for
        if waiting is not None and waiting.step_id == step.id:
            event = execution.wait_event
            execution.waiting_for = None
            execution.wait_event = None
            if event is not None:
                return StepResult.completed(copy.deepcopy(event.get("payload") or {}))
            if config.on_timeout == "fail":
                return StepResult.failed(f"Timed out waiting for event {config.event_type}")
            return StepResult.completed({"timed_out": True})

        deadline = None
        if config.timeout is not None:
            try:
                deadline = self._clock() + parse_duration(resolve(config.timeout, run.context))
            except ValueError as exc:
                return StepResult.failed(f"Invalid wait timeout: {exc}")
        condition = WaitCondition(
            step_id=step.id,
            event_type=config.event_type,
            filter=resolve(config.filter, run.context),
            deadline=deadline,
        )
        return StepResult(
            status=StepLogStatus.PAUSED,
            output={"waiting_for": config.event_type},
            waiting_for=condition,
            pause_until=deadline,
        )

    async def _run_loop(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: LoopStepConfig = step.config
        items = _resolve_reference(config.source, run.context)
        if not isinstance(items, list):
            return StepResult.failed(f"Loop source did not resolve to a list: {config.source}")
        if len(items) > config.max_iterations:
            logger.warning(
                f"Loop step {step.id} truncated from {len(items)} to {config.max_iterations} items"
            )
            items = items[: config.max_iterations]

        outputs = []
        for index, item in enumerate(items):
            scope = dict(run.context)
            scope["variables"] = {
                **run.context["variables"],
                config.item_variable: item,
                "loop_index": index,
            }
            data = {**input_data, **resolve(config.config, scope)}
            result = await self._actions.execute(config.action_type, data, scope)
            if not result.succeeded:
                return StepResult.failed(
                    f"Loop iteration {index} failed: {result.error}",
                    output={"items": outputs, "count": len(outputs)},
                )
            outputs.append(result.output)
        return StepResult.completed({"items": outputs, "count": len(outputs)})

    async def _run_parallel(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: ParallelStepConfig = step.config

        async def run_branch(branch):
            data = {**input_data, **resolve(branch.config, run.context)}
            return branch.name, await self._actions.execute(branch.action_type, data, run.context)

        outcomes = await asyncio.gather(*(run_branch(branch) for branch in config.branches))
        results = {name: result.output for name, result in outcomes if result.succeeded}
        errors = {name: result.error for name, result in outcomes if not result.succeeded}
        output = {"results": results, "errors": errors}
        if errors and config.wait_for_all:
            return StepResult.failed(
                f"Parallel branches failed: {', '.join(sorted(errors))}", output=output
            )
        return StepResult.completed(output)

    async def _run_transform(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: TransformStepConfig = step.config
        if config.source is not None:
            base = _resolve_reference(config.source, run.context)
        else:
            base = input_data or run.context

        result = {}
        for target, expression in config.mapping.items():
            if isinstance(expression, str) and has_markers(expression):
                result[target] = resolve(expression, run.context)
            elif isinstance(expression, str):
                result[target] = get_value_by_path(base, expression)
            else:
                result[target] = resolve(expression, run.context)
        return StepResult.completed(result)

    async def _run_set_variable(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: SetVariableStepConfig = step.config
        value = resolve(config.value, run.context)
        run.context["variables"][config.key] = value
        return StepResult.completed({config.key: value})

    async def _run_stop(
        self, run: _RunState, step: WorkflowStep, input_data: Dict[str, Any]
    ) -> StepResult:
        config: StopStepConfig = step.config
        return StepResult.completed({"stopped": True, "reason": config.reason}, stop=True)
