"""Email actions delivered through the injected :class:`EmailSender`."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from ..contracts import ActionResult
from .collaborators import ActionCollaborators, EmailMessage
from .models import ActionDescriptor, param
from .registry import ActionRegistry, tenant_from_context


def register_email_actions(registry: ActionRegistry, collaborators: ActionCollaborators) -> None:
    sender = collaborators.email

    @registry.action(
        ActionDescriptor(
            id="email.send",
            name="Send email",
            inputs=[
                param("to", "string"),
                param("subject", "string"),
                param("body", "string"),
                param("to_name", "string", required=False),
                param("from_name", "string", required=False),
            ],
            outputs=[param("success", "boolean"), param("message_id", "string")],
            side_effects=["email"],
        )
    )
    async def send(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        message = EmailMessage(
            to=data["to"],
            to_name=data.get("to_name"),
            subject=data["subject"],
            body=data["body"],
            from_name=data.get("from_name"),
        )
        message_id = await sender.send(tenant_from_context(context), message)
        return ActionResult.ok({"success": True, "message_id": message_id})

    @registry.action(
        ActionDescriptor(
            id="email.send_template",
            name="Send template email",
            inputs=[
                param("to", "string"),
                param("template_id", "string"),
                param("variables", "object", required=False, default={}),
            ],
            outputs=[param("success", "boolean"), param("message_id", "string")],
            side_effects=["email"],
        )
    )
    async def send_template(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        message = EmailMessage(
            to=data["to"],
            template_id=data["template_id"],
            variables=dict(data.get("variables") or {}),
        )
        message_id = await sender.send(tenant_from_context(context), message)
        return ActionResult.ok({"success": True, "message_id": message_id})
