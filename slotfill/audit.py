"""
Audit trail for waitlist activity.

Events carry ids and timestamps only, never names, phone numbers or message
bodies. ``InMemoryAuditLog`` is the default sink; production deployments
should pass a sink that writes to immutable storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from slotfill.models import new_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    tenant_id: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    actor: str = "system"
    status: str = "success"
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class InMemoryAuditLog:
    def __init__(self):
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)
        logger.info(
            "audit %s %s/%s status=%s actor=%s",
            event.action,
            event.resource_type,
            event.resource_id,
            event.status,
            event.actor,
        )

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


async def audit(
    sink: AuditSink,
    tenant_id: str,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    *,
    actor: str = "system",
    status: str = "success",
    **metadata: Any,
) -> None:
    """Record an event; a failing sink is logged and never breaks the caller."""
    event = AuditEvent(
        tenant_id=tenant_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        actor=actor,
        status=status,
        metadata=metadata,
    )
    try:
        await sink.record(event)
    except Exception as exc:
        logger.error("Audit write failed for %s %s: %s", action, resource_id, exc)
