"""Registry mapping ``category.action`` identifiers to handlers."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..contracts import ActionResult
from ..templating import find_unresolved
from .models import ActionDescriptor

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str, Dict[str, Any], Mapping[str, Any]], Awaitable[ActionResult]]


@dataclass
class RegisteredAction:
    descriptor: ActionDescriptor
    handler: ActionHandler


class ActionRegistry:
    """Registry of action handlers, built once at startup and injected.

    Handlers share one signature, ``async handler(action_type, data, context)``,
    and return an :class:`ActionResult`. The registry validates required inputs
    against the descriptor and never lets a handler exception escape.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, RegisteredAction] = {}

    def register(self, descriptor: ActionDescriptor, handler: ActionHandler) -> None:
        if descriptor.id in self._actions:
            logger.warning(f"Replacing handler for action {descriptor.id}")
        self._actions[descriptor.id] = RegisteredAction(descriptor, handler)

    def action(self, descriptor: ActionDescriptor) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: ActionHandler) -> ActionHandler:
            self.register(descriptor, handler)
            return handler

        return decorator

    def get(self, action_type: str) -> Optional[RegisteredAction]:
        return self._actions.get(action_type)

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._actions

    def descriptors(self, category: Optional[str] = None) -> List[ActionDescriptor]:
        return [
            entry.descriptor
            for key, entry in sorted(self._actions.items())
            if category is None or entry.descriptor.category == category
        ]

    def categories(self) -> List[str]:
        return sorted({entry.descriptor.category for entry in self._actions.values()})

    def _prepare_input(
        self, descriptor: ActionDescriptor, data: Mapping[str, Any]
    ) -> tuple[Dict[str, Any], List[str]]:
        prepared = dict(data)
        missing = []
        for spec in descriptor.inputs:
            value = prepared.get(spec.name)
            if value is None or value == "":
                if spec.default_json is not None:
                    prepared[spec.name] = copy.deepcopy(spec.default_json)
                elif spec.required:
                    missing.append(spec.name)
        return prepared, missing

    async def execute(
        self,
        action_type: str,
        data: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> ActionResult:
        """Run ``action_type`` with ``data``. Never raises."""
        entry = self.get(action_type)
        if entry is None:
            return ActionResult.fail(f"Unknown action type: {action_type}")

        prepared, missing = self._prepare_input(entry.descriptor, data)
        if missing:
            return ActionResult.fail(
                f"Missing required input for {action_type}: {', '.join(missing)}"
            )

        unresolved = find_unresolved(prepared)
        if unresolved:
            logger.warning(
                f"Action {action_type} called with unresolved variables: {unresolved}"
            )

        try:
            result = await entry.handler(action_type, prepared, context)
        except Exception as exc:
            logger.exception(f"Action {action_type} raised")
            return ActionResult.fail(str(exc) or exc.__class__.__name__)

        if not isinstance(result, ActionResult):
            return ActionResult.ok(result)
        return result


def tenant_from_context(context: Mapping[str, Any]) -> str:
    """Tenant of the execution an action runs in."""
    execution = context.get("execution") or {}
    tenant_id = execution.get("tenant_id")
    if not tenant_id:
        raise ValueError("Tenant id not available in execution context")
    return tenant_id
