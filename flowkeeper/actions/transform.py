"""Pure data transformation actions."""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo

from ..conditions import evaluate_operator
from ..contracts import ActionResult
from ..templating import get_value_by_path, resolve, to_text
from ..utils.durations import parse_timestamp
from .collaborators import ActionCollaborators
from .models import ActionDescriptor, param
from .registry import ActionRegistry

DATE_TOKENS = [
    ("YYYY", "%Y"),
    ("MM", "%m"),
    ("DD", "%d"),
    ("HH", "%H"),
    ("mm", "%M"),
    ("ss", "%S"),
]


def _numbers(items: List[Any], field: Optional[str]) -> List[float]:
    values = []
    for item in items:
        raw = get_value_by_path(item, field) if field else item
        if isinstance(raw, bool) or raw is None:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if not math.isnan(value):
            values.append(value)
    return values


AGGREGATES: Dict[str, Callable[[List[float]], float]] = {
    "sum": lambda values: sum(values),
    "average": lambda values: sum(values) / len(values) if values else 0,
    "count": lambda values: len(values),
    "min": lambda values: min(values) if values else 0,
    "max": lambda values: max(values) if values else 0,
}

MATH: Dict[str, Callable[[float, Optional[float]], float]] = {
    "add": lambda a, b: a + (b if b is not None else 0),
    "subtract": lambda a, b: a - (b if b is not None else 0),
    "multiply": lambda a, b: a * (b if b is not None else 1),
    "divide": lambda a, b: a / b if b else 0,
    "round": lambda a, b: round(a),
    "floor": lambda a, b: math.floor(a),
    "ceil": lambda a, b: math.ceil(a),
    "abs": lambda a, b: abs(a),
}


def format_date(value: Any, pattern: str, tz: Optional[str] = None) -> str:
    moment = parse_timestamp(value)
    if tz:
        moment = moment.astimezone(ZoneInfo(tz))
    strftime_pattern = pattern
    for token, directive in DATE_TOKENS:
        strftime_pattern = strftime_pattern.replace(token, directive)
    return moment.strftime(strftime_pattern)


def register_transform_actions(registry: ActionRegistry, collaborators: ActionCollaborators) -> None:
    @registry.action(
        ActionDescriptor(
            id="transform.map",
            name="Map fields",
            inputs=[param("source", "object"), param("mapping", "object")],
            outputs=[param("result", "object")],
        )
    )
    async def map_fields(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        source = data["source"]
        result = {target: get_value_by_path(source, path) for target, path in data["mapping"].items()}
        return ActionResult.ok({"result": result})

    @registry.action(
        ActionDescriptor(
            id="transform.filter",
            name="Filter list",
            inputs=[param("array", "array"), param("conditions", "array", required=False, default=[])],
            outputs=[param("result", "array"), param("count", "number")],
        )
    )
    async def filter_items(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        items = data["array"]
        if not isinstance(items, list):
            return ActionResult.fail("transform.filter expects 'array' to be a list")
        conditions = data["conditions"]
        kept = [
            item
            for item in items
            if all(
                evaluate_operator(
                    get_value_by_path(item, cond["field"]),
                    cond.get("operator", "equals"),
                    cond.get("value"),
                )
                for cond in conditions
            )
        ]
        return ActionResult.ok({"result": kept, "count": len(kept)})

    @registry.action(
        ActionDescriptor(
            id="transform.aggregate",
            name="Aggregate list",
            inputs=[param("array", "array"), param("operation", "string"), param("field", "string", required=False)],
            outputs=[param("result", "number")],
        )
    )
    async def aggregate(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        operation = AGGREGATES.get(data["operation"])
        if operation is None:
            return ActionResult.fail(f"Unknown aggregate operation: {data['operation']}")
        return ActionResult.ok({"result": operation(_numbers(data["array"], data.get("field")))})

    @registry.action(
        ActionDescriptor(
            id="transform.format_date",
            name="Format date",
            inputs=[
                param("date", "string"),
                param("format", "string", required=False, default="YYYY-MM-DD"),
                param("timezone", "string", required=False),
            ],
            outputs=[param("formatted", "string")],
        )
    )
    async def format_date_action(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        try:
            formatted = format_date(data["date"], data["format"], data.get("timezone"))
        except ValueError as exc:
            return ActionResult.fail(f"Invalid date: {exc}")
        return ActionResult.ok({"formatted": formatted})

    @registry.action(
        ActionDescriptor(
            id="transform.template",
            name="Render template",
            inputs=[param("template", "string"), param("variables", "object", required=False, default={})],
            outputs=[param("result", "string")],
        )
    )
    async def template(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        return ActionResult.ok({"result": to_text(resolve(data["template"], data["variables"]))})

    @registry.action(
        ActionDescriptor(
            id="transform.math",
            name="Math operation",
            inputs=[param("operation", "string"), param("a", "number"), param("b", "number", required=False)],
            outputs=[param("result", "number")],
        )
    )
    async def math_action(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        operation = MATH.get(data["operation"])
        if operation is None:
            return ActionResult.fail(f"Unknown math operation: {data['operation']}")
        a = float(data["a"])
        b = float(data["b"]) if data.get("b") is not None else None
        result = operation(a, b)
        if isinstance(result, float) and result.is_integer():
            result = int(result)
        return ActionResult.ok({"result": result})
