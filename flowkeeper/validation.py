"""Save-time checks for workflow step graphs."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

from .errors import DefinitionValidationError
from .models import (
    ActionStepConfig,
    ConditionStepConfig,
    LoopStepConfig,
    OnError,
    ParallelStepConfig,
    WorkflowStep,
)

if TYPE_CHECKING:
    from .actions import ActionRegistry


def _action_types(step: WorkflowStep) -> List[str]:
    config = step.config
    if isinstance(config, (ActionStepConfig, LoopStepConfig)):
        return [config.action_type]
    if isinstance(config, ParallelStepConfig):
        return [branch.action_type for branch in config.branches]
    return []


def find_problems(
    workflow_id: str,
    steps: Sequence[WorkflowStep],
    registry: Optional["ActionRegistry"] = None,
) -> List[str]:
    """Return a human readable list of everything wrong with ``steps``."""
    problems: List[str] = []
    ids = [step.id for step in steps]
    known = set(ids)
    # The engine only loads active steps, so they cannot be jumped to.
    inactive = {step.id for step in steps if not step.is_active}
    if len(known) != len(ids):
        problems.append("step ids must be unique")

    positions = sorted(step.position for step in steps)
    if positions != list(range(len(steps))):
        problems.append(
            f"step positions must be unique and contiguous from 0, got {positions}"
        )

    for step in steps:
        label = f"step {step.id} (position {step.position})"
        if step.workflow_id != workflow_id:
            problems.append(f"{label} belongs to workflow {step.workflow_id}")

        targets = []
        if step.on_error == OnError.BRANCH:
            if not step.error_branch_step_id:
                problems.append(f"{label} uses on_error=branch without error_branch_step_id")
        if step.error_branch_step_id:
            targets.append(("error_branch_step_id", step.error_branch_step_id))
        if isinstance(step.config, ConditionStepConfig):
            if step.config.true_step_id:
                targets.append(("true_step_id", step.config.true_step_id))
            if step.config.false_step_id:
                targets.append(("false_step_id", step.config.false_step_id))

        for field_name, target in targets:
            if target == step.id:
                problems.append(f"{label} {field_name} points at itself")
            elif target not in known:
                problems.append(
                    f"{label} {field_name} references unknown step {target}"
                )
            elif step.is_active and target in inactive:
                problems.append(
                    f"{label} {field_name} references inactive step {target}"
                )

        if registry is not None:
            for action_type in _action_types(step):
                if registry.get(action_type) is None:
                    problems.append(f"{label} uses unknown action type {action_type}")
    return problems


def validate_steps(
    workflow_id: str,
    steps: Sequence[WorkflowStep],
    registry: Optional["ActionRegistry"] = None,
) -> None:
    """Raise :class:`DefinitionValidationError` when ``steps`` are inconsistent."""
    problems = find_problems(workflow_id, steps, registry)
    if problems:
        raise DefinitionValidationError(problems)
