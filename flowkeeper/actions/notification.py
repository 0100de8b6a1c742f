"""Notification actions: in-app, Slack, Discord and SMS."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

import httpx

from ..contracts import ActionResult
from .collaborators import ActionCollaborators
from .models import ActionDescriptor, param
from .registry import ActionRegistry, tenant_from_context

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"


def register_notification_actions(registry: ActionRegistry, collaborators: ActionCollaborators) -> None:
    connections = collaborators.connections

    async def _post_to_webhook(service: str, tenant_id: str, body: Dict[str, Any]) -> ActionResult:
        credentials = await connections.get_credentials(tenant_id, service)
        if not credentials or not credentials.get("webhook_url"):
            return ActionResult.fail(f"{service.capitalize()} connection not found")
        try:
            response = await collaborators.http_client().post(credentials["webhook_url"], json=body)
        except httpx.HTTPError as exc:
            logger.error(f"{service} webhook call failed: {exc}")
            return ActionResult.fail(f"Failed to send {service} message: {exc}")
        if response.is_error:
            return ActionResult.fail(f"{service.capitalize()} API error: {response.status_code}")
        return ActionResult.ok({"success": True, "status_code": response.status_code})

    @registry.action(
        ActionDescriptor(
            id="notification.in_app",
            name="In-app notification",
            inputs=[
                param("user_id", "string"),
                param("title", "string"),
                param("message", "string"),
                param("type", "string", required=False, default="info"),
                param("link", "string", required=False),
            ],
            outputs=[param("notification_id", "string")],
            side_effects=["notifications"],
        )
    )
    async def in_app(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        notification_id = await collaborators.notifications.notify(
            tenant_from_context(context),
            {
                "user_id": data["user_id"],
                "title": data["title"],
                "message": data["message"],
                "type": data["type"],
                "link": data.get("link"),
                "read": False,
            },
        )
        return ActionResult.ok({"notification_id": notification_id})

    @registry.action(
        ActionDescriptor(
            id="notification.send_slack",
            name="Send Slack message",
            inputs=[
                param("message", "string"),
                param("channel", "string", required=False),
                param("blocks", "array", required=False),
            ],
            outputs=[param("success", "boolean")],
            side_effects=["slack"],
            requires_connection="slack",
        )
    )
    async def send_slack(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        body = {"text": data["message"]}
        if data.get("channel"):
            body["channel"] = data["channel"]
        if data.get("blocks"):
            body["blocks"] = data["blocks"]
        return await _post_to_webhook("slack", tenant_from_context(context), body)

    @registry.action(
        ActionDescriptor(
            id="notification.send_discord",
            name="Send Discord message",
            inputs=[param("content", "string"), param("embeds", "array", required=False)],
            outputs=[param("success", "boolean")],
            side_effects=["discord"],
            requires_connection="discord",
        )
    )
    async def send_discord(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        body = {"content": data["content"]}
        if data.get("embeds"):
            body["embeds"] = data["embeds"]
        return await _post_to_webhook("discord", tenant_from_context(context), body)

    @registry.action(
        ActionDescriptor(
            id="notification.send_sms",
            name="Send SMS",
            inputs=[param("to", "string"), param("body", "string")],
            outputs=[param("message_sid", "string"), param("success", "boolean")],
            side_effects=["sms"],
            requires_connection="twilio",
        )
    )
    async def send_sms(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        credentials = await connections.get_credentials(tenant_from_context(context), "twilio")
        if not credentials:
            return ActionResult.fail("Twilio connection not found")
        account_sid = credentials["account_sid"]
        try:
            response = await collaborators.http_client().post(
                TWILIO_MESSAGES_URL.format(account_sid=account_sid),
                auth=(account_sid, credentials["auth_token"]),
                data={"To": data["to"], "From": credentials["from_number"], "Body": data["body"]},
            )
        except httpx.HTTPError as exc:
            logger.error(f"Twilio call failed: {exc}")
            return ActionResult.fail(f"Failed to send SMS: {exc}")
        if response.is_error:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = response.text
            return ActionResult.fail(f"Twilio error: {detail}")
        return ActionResult.ok({"message_sid": response.json().get("sid"), "success": True})
