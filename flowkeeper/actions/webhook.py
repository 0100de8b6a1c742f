"""Outbound HTTP webhook action."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

import httpx

from ..contracts import ActionResult, ActionStatus
from .collaborators import ActionCollaborators
from .models import ActionDescriptor, param
from .registry import ActionRegistry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000


def _response_body(response: httpx.Response) -> Any:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def register_webhook_actions(registry: ActionRegistry, collaborators: ActionCollaborators) -> None:
    @registry.action(
        ActionDescriptor(
            id="webhook.send",
            name="Send webhook",
            inputs=[
                param("url", "string"),
                param("method", "string", required=False, default="POST"),
                param("headers", "object", required=False, default={}),
                param("body", required=False),
                param("timeout_ms", "number", required=False, default=DEFAULT_TIMEOUT_MS),
            ],
            outputs=[
                param("status_code", "number"),
                param("response_body"),
                param("success", "boolean"),
            ],
            side_effects=["http"],
        )
    )
    async def send(action_type: str, data: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        timeout_ms = data["timeout_ms"]
        headers = {"Content-Type": "application/json", **dict(data["headers"])}
        body = data.get("body")
        try:
            response = await collaborators.http_client().request(
                str(data["method"]).upper(),
                data["url"],
                headers=headers,
                json=body if body is not None else None,
                timeout=float(timeout_ms) / 1000,
            )
        except httpx.TimeoutException:
            return ActionResult.fail(f"Request timed out after {timeout_ms}ms")
        except httpx.HTTPError as exc:
            logger.error(f"Webhook request to {data['url']} failed: {exc}")
            return ActionResult.fail(f"Webhook request failed: {exc}")

        success = not response.is_error
        return ActionResult(
            status=ActionStatus.COMPLETED if success else ActionStatus.FAILED,
            output={
                "status_code": response.status_code,
                "response_body": _response_body(response),
                "success": success,
            },
            error=None if success else f"HTTP {response.status_code}",
        )
