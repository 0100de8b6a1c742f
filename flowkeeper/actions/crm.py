"""CRM actions against the tenant's contact, deal, task and activity records."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from ..contracts import ActionResult
from ..models import utcnow
from .collaborators import ActionCollaborators
from .models import ActionDescriptor, param
from .registry import ActionRegistry, tenant_from_context

CRM_TABLE_PREFIX = "mod_crm"
CONTACTS = f"{CRM_TABLE_PREFIX}_contacts"
DEALS = f"{CRM_TABLE_PREFIX}_deals"
TASKS = f"{CRM_TABLE_PREFIX}_tasks"
ACTIVITIES = f"{CRM_TABLE_PREFIX}_activities"


def register_crm_actions(registry: ActionRegistry, collaborators: ActionCollaborators) -> None:
    records = collaborators.records

    async def _contact(tenant_id: str, contact_id: str) -> Dict[str, Any]:
        contact = await records.get(tenant_id, CONTACTS, contact_id)
        if contact is None:
            raise LookupError(f"Contact not found: {contact_id}")
        return contact

    @registry.action(
        ActionDescriptor(
            id="crm.create_contact",
            name="Create contact",
            inputs=[
                param("email", "string"),
                param("first_name", "string", required=False),
                param("last_name", "string", required=False),
                param("phone", "string", required=False),
                param("company", "string", required=False),
                param("tags", "array", required=False),
                param("custom_fields", "object", required=False),
            ],
            outputs=[param("contact_id", "string"), param("contact", "object")],
            side_effects=["crm.contacts"],
        )
    )
    async def create_contact(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        contact = await records.insert(
            tenant_from_context(context),
            CONTACTS,
            {
                "email": data["email"],
                "first_name": data.get("first_name"),
                "last_name": data.get("last_name"),
                "phone": data.get("phone"),
                "company": data.get("company"),
                "tags": list(data.get("tags") or []),
                "custom_fields": dict(data.get("custom_fields") or {}),
                "status": "active",
                "lead_status": "new",
            },
        )
        return ActionResult.ok({"contact_id": contact["id"], "contact": contact})

    @registry.action(
        ActionDescriptor(
            id="crm.update_contact",
            name="Update contact",
            inputs=[param("contact_id", "string"), param("fields", "object")],
            outputs=[param("contact", "object")],
            side_effects=["crm.contacts"],
        )
    )
    async def update_contact(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        contact = await records.update(
            tenant_from_context(context), CONTACTS, data["contact_id"], dict(data["fields"])
        )
        if contact is None:
            return ActionResult.fail(f"Contact not found: {data['contact_id']}")
        return ActionResult.ok({"contact": contact})

    @registry.action(
        ActionDescriptor(
            id="crm.add_tag",
            name="Add tag to contact",
            inputs=[param("contact_id", "string"), param("tag", "string")],
            outputs=[param("success", "boolean"), param("tags", "array")],
            side_effects=["crm.contacts"],
        )
    )
    async def add_tag(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        tenant_id = tenant_from_context(context)
        contact = await _contact(tenant_id, data["contact_id"])
        tags = list(contact.get("tags") or [])
        if data["tag"] not in tags:
            tags.append(data["tag"])
        await records.update(tenant_id, CONTACTS, data["contact_id"], {"tags": tags})
        return ActionResult.ok({"success": True, "tags": tags})

    @registry.action(
        ActionDescriptor(
            id="crm.remove_tag",
            name="Remove tag from contact",
            inputs=[param("contact_id", "string"), param("tag", "string")],
            outputs=[param("success", "boolean"), param("tags", "array")],
            side_effects=["crm.contacts"],
        )
    )
    async def remove_tag(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        tenant_id = tenant_from_context(context)
        contact = await _contact(tenant_id, data["contact_id"])
        tags = [tag for tag in contact.get("tags") or [] if tag != data["tag"]]
        await records.update(tenant_id, CONTACTS, data["contact_id"], {"tags": tags})
        return ActionResult.ok({"success": True, "tags": tags})

    @registry.action(
        ActionDescriptor(
            id="crm.find_contact",
            name="Find contact",
            inputs=[param("field", "string", required=False, default="email"), param("value")],
            outputs=[param("contact", "object"), param("found", "boolean")],
        )
    )
    async def find_contact(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        matches = await records.find(
            tenant_from_context(context), CONTACTS, {data["field"]: data["value"]}, limit=1
        )
        contact = matches[0] if matches else None
        return ActionResult.ok({"contact": contact, "found": contact is not None})

    @registry.action(
        ActionDescriptor(
            id="crm.create_deal",
            name="Create deal",
            inputs=[
                param("title", "string"),
                param("value", "number", required=False, default=0),
                param("contact_id", "string", required=False),
                param("company_id", "string", required=False),
                param("stage", "string", required=False),
                param("pipeline_id", "string", required=False),
            ],
            outputs=[param("deal_id", "string"), param("deal", "object")],
            side_effects=["crm.deals"],
        )
    )
    async def create_deal(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        deal = await records.insert(
            tenant_from_context(context),
            DEALS,
            {
                "title": data["title"],
                "value": data.get("value", 0),
                "contact_id": data.get("contact_id"),
                "company_id": data.get("company_id"),
                "stage_id": data.get("stage"),
                "pipeline_id": data.get("pipeline_id"),
                "status": "open",
            },
        )
        return ActionResult.ok({"deal_id": deal["id"], "deal": deal})

    @registry.action(
        ActionDescriptor(
            id="crm.move_deal_stage",
            name="Move deal to stage",
            inputs=[param("deal_id", "string"), param("stage", "string")],
            outputs=[param("deal", "object")],
            side_effects=["crm.deals"],
        )
    )
    async def move_deal_stage(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        deal = await records.update(
            tenant_from_context(context), DEALS, data["deal_id"], {"stage_id": data["stage"]}
        )
        if deal is None:
            return ActionResult.fail(f"Deal not found: {data['deal_id']}")
        return ActionResult.ok({"deal": deal})

    @registry.action(
        ActionDescriptor(
            id="crm.create_task",
            name="Create task",
            inputs=[
                param("title", "string"),
                param("description", "string", required=False),
                param("due_date", "string", required=False),
                param("assigned_to", "string", required=False),
                param("contact_id", "string", required=False),
                param("deal_id", "string", required=False),
            ],
            outputs=[param("task_id", "string")],
            side_effects=["crm.tasks"],
        )
    )
    async def create_task(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        fields = ("title", "description", "due_date", "assigned_to", "contact_id", "deal_id")
        task = await records.insert(
            tenant_from_context(context),
            TASKS,
            {**{name: data.get(name) for name in fields}, "status": "pending"},
        )
        return ActionResult.ok({"task_id": task["id"]})

    @registry.action(
        ActionDescriptor(
            id="crm.log_activity",
            name="Log activity",
            inputs=[
                param("contact_id", "string"),
                param("type", "string"),
                param("description", "string", required=False),
            ],
            outputs=[param("activity_id", "string")],
            side_effects=["crm.activities"],
        )
    )
    async def log_activity(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        activity = await records.insert(
            tenant_from_context(context),
            ACTIVITIES,
            {
                "contact_id": data["contact_id"],
                "type": data["type"],
                "description": data.get("description"),
                "occurred_at": utcnow().isoformat(),
            },
        )
        return ActionResult.ok({"activity_id": activity["id"]})
