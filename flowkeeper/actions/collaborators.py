"""External systems reached by the built-in actions."""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..models import new_id, utcnow


class RecordStore(Protocol):
    """Tenant-scoped record storage used by CRM and data actions."""

    async def insert(self, tenant_id: str, table: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get(self, tenant_id: str, table: str, record_id: str) -> Optional[Dict[str, Any]]: ...

    async def find(
        self, tenant_id: str, table: str, filters: Dict[str, Any], limit: Optional[int] = None
    ) -> List[Dict[str, Any]]: ...

    async def update(
        self, tenant_id: str, table: str, record_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]: ...

    async def delete(self, tenant_id: str, table: str, record_id: str) -> bool: ...


class ConnectionStore(Protocol):
    """Stored credentials for third-party services (Slack, Discord, Twilio)."""

    async def get_credentials(self, tenant_id: str, service: str) -> Optional[Dict[str, Any]]: ...


class EmailMessage(BaseModel):
    to: str
    to_name: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    from_name: Optional[str] = None
    template_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class EmailSender(Protocol):
    async def send(self, tenant_id: str, message: EmailMessage) -> str:
        """Deliver ``message`` and return the provider message id."""
        ...


class NotificationSink(Protocol):
    async def notify(self, tenant_id: str, notification: Dict[str, Any]) -> str:
        """Store an in-app notification and return its id."""
        ...


class InMemoryRecordStore:
    """Dictionary backed :class:`RecordStore` for development and tests."""

    def __init__(self) -> None:
        self._tables: Dict[tuple[str, str], Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _table(self, tenant_id: str, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault((tenant_id, table), {})

    async def insert(self, tenant_id: str, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            stored = {"id": new_id(), **record, "created_at": utcnow().isoformat()}
            self._table(tenant_id, table)[stored["id"]] = stored
            return copy.deepcopy(stored)

    async def get(self, tenant_id: str, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._table(tenant_id, table).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def find(
        self, tenant_id: str, table: str, filters: Dict[str, Any], limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        matches = [
            copy.deepcopy(record)
            for record in self._table(tenant_id, table).values()
            if all(record.get(key) == value for key, value in filters.items())
        ]
        return matches[:limit] if limit is not None else matches

    async def update(
        self, tenant_id: str, table: str, record_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._table(tenant_id, table).get(record_id)
            if record is None:
                return None
            record.update(changes)
            record["updated_at"] = utcnow().isoformat()
            return copy.deepcopy(record)

    async def delete(self, tenant_id: str, table: str, record_id: str) -> bool:
        async with self._lock:
            return self._table(tenant_id, table).pop(record_id, None) is not None


class InMemoryConnectionStore:
    def __init__(self, credentials: Optional[Dict[tuple[str, str], Dict[str, Any]]] = None) -> None:
        self._credentials = dict(credentials or {})

    def add(self, tenant_id: str, service: str, credentials: Dict[str, Any]) -> None:
        self._credentials[(tenant_id, service)] = dict(credentials)

    async def get_credentials(self, tenant_id: str, service: str) -> Optional[Dict[str, Any]]:
        return self._credentials.get((tenant_id, service))


class InMemoryEmailSender:
    """Collects messages instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[tuple[str, EmailMessage]] = []

    async def send(self, tenant_id: str, message: EmailMessage) -> str:
        self.sent.append((tenant_id, message))
        return f"msg-{len(self.sent)}"


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self.notifications: List[Dict[str, Any]] = []

    async def notify(self, tenant_id: str, notification: Dict[str, Any]) -> str:
        notification_id = new_id()
        self.notifications.append({"id": notification_id, "tenant_id": tenant_id, **notification})
        return notification_id


@dataclass
class ActionCollaborators:
    """Bundle of the external seams handed to the built-in catalogue."""

    records: RecordStore = field(default_factory=InMemoryRecordStore)
    connections: ConnectionStore = field(default_factory=InMemoryConnectionStore)
    email: EmailSender = field(default_factory=InMemoryEmailSender)
    notifications: NotificationSink = field(default_factory=InMemoryNotificationSink)
    http: Optional[httpx.AsyncClient] = None
    http_timeout: float = 30.0

    def http_client(self) -> httpx.AsyncClient:
        if self.http is None:
            self.http = httpx.AsyncClient(timeout=self.http_timeout)
        return self.http

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()
            self.http = None
