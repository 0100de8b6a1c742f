"""Generic record actions against module tables."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from ..contracts import ActionResult
from .collaborators import ActionCollaborators
from .models import ActionDescriptor, param
from .registry import ActionRegistry, tenant_from_context


def table_name(table: str, module: Optional[str] = None) -> str:
    """``mod_<module>_<table>`` when a module is given, else ``table``."""
    if not module:
        return table
    return f"mod_{module.replace('-', '')}_{table}"


_TABLE_INPUTS = [
    param("table", "string"),
    param("module", "string", required=False),
]


def register_data_actions(registry: ActionRegistry, collaborators: ActionCollaborators) -> None:
    records = collaborators.records

    def _table(data: Mapping[str, Any]) -> str:
        return table_name(data["table"], data.get("module"))

    @registry.action(
        ActionDescriptor(
            id="data.lookup",
            name="Look up record",
            inputs=[*_TABLE_INPUTS, param("field", "string"), param("value")],
            outputs=[param("record", "object"), param("found", "boolean")],
        )
    )
    async def lookup(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        matches = await records.find(
            tenant_from_context(context), _table(data), {data["field"]: data["value"]}, limit=1
        )
        record = matches[0] if matches else None
        return ActionResult.ok({"record": record, "found": record is not None})

    @registry.action(
        ActionDescriptor(
            id="data.create",
            name="Create record",
            inputs=[*_TABLE_INPUTS, param("data", "object")],
            outputs=[param("record", "object"), param("id", "string")],
            side_effects=["records"],
        )
    )
    async def create(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        record = await records.insert(tenant_from_context(context), _table(data), dict(data["data"]))
        return ActionResult.ok({"record": record, "id": record["id"]})

    @registry.action(
        ActionDescriptor(
            id="data.update",
            name="Update record",
            inputs=[*_TABLE_INPUTS, param("id", "string"), param("data", "object")],
            outputs=[param("record", "object"), param("success", "boolean")],
            side_effects=["records"],
        )
    )
    async def update(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        record = await records.update(
            tenant_from_context(context), _table(data), data["id"], dict(data["data"])
        )
        if record is None:
            return ActionResult.fail(f"Record not found: {data['id']}")
        return ActionResult.ok({"record": record, "success": True})

    @registry.action(
        ActionDescriptor(
            id="data.delete",
            name="Delete record",
            inputs=[*_TABLE_INPUTS, param("id", "string")],
            outputs=[param("success", "boolean")],
            side_effects=["records"],
        )
    )
    async def delete(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        deleted = await records.delete(tenant_from_context(context), _table(data), data["id"])
        return ActionResult.ok({"success": deleted})
