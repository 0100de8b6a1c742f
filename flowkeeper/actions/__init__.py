"""Action registry and the built-in action catalogue."""

from __future__ import annotations

from typing import Optional

from .collaborators import (
    ActionCollaborators,
    ConnectionStore,
    EmailMessage,
    EmailSender,
    InMemoryConnectionStore,
    InMemoryEmailSender,
    InMemoryNotificationSink,
    InMemoryRecordStore,
    NotificationSink,
    RecordStore,
)
from .crm import register_crm_actions
from .data import register_data_actions
from .email import register_email_actions
from .models import ActionDescriptor, ParamDescriptor, param
from .notification import register_notification_actions
from .registry import ActionHandler, ActionRegistry, RegisteredAction
from .transform import register_transform_actions
from .webhook import register_webhook_actions


def build_default_registry(
    collaborators: Optional[ActionCollaborators] = None,
) -> ActionRegistry:
    """Create a registry holding every built-in action."""
    collaborators = collaborators or ActionCollaborators()
    registry = ActionRegistry()
    for register in (
        register_crm_actions,
        register_email_actions,
        register_notification_actions,
        register_webhook_actions,
        register_data_actions,
        register_transform_actions,
    ):
        register(registry, collaborators)
    return registry


__all__ = [
    "ActionCollaborators",
    "ActionDescriptor",
    "ActionHandler",
    "ActionRegistry",
    "ConnectionStore",
    "EmailMessage",
    "EmailSender",
    "InMemoryConnectionStore",
    "InMemoryEmailSender",
    "InMemoryNotificationSink",
    "InMemoryRecordStore",
    "NotificationSink",
    "ParamDescriptor",
    "RecordStore",
    "RegisteredAction",
    "build_default_registry",
    "param",
]
