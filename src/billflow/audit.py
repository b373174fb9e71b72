"""Audit event sink."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from billflow.models import AuditEvent, RiskLevel

if TYPE_CHECKING:
    from uuid import UUID

logger = logging.getLogger(__name__)


@runtime_checkable
class AuditSink(Protocol):
    """Receives one event per state transition."""

    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the ``billflow.audit`` logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def record(self, event: AuditEvent) -> None:
        self._log.info(
            "audit %s %s=%s actor=%s risk=%s: %s",
            event.event_type,
            event.entity_type,
            event.entity_id,
            event.actor_id,
            event.risk.value,
            event.description,
        )


class MemoryAuditSink:
    """Keeps events in a list."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


def emit(
    sink: AuditSink,
    event_type: str,
    *,
    entity_type: str,
    entity_id: UUID | str,
    description: str,
    owner_id: str | None = None,
    actor_id: str | None = None,
    risk: RiskLevel = RiskLevel.LOW,
    **metadata: Any,
) -> None:
    """Send an event to ``sink``; a failing sink never blocks the caller."""
    event = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        owner_id=owner_id,
        actor_id=actor_id,
        risk=risk,
        description=description,
        metadata=metadata,
    )
    try:
        sink.record(event)
    except Exception:
        logger.warning(
            "Audit sink failed for %s on %s %s",
            event_type,
            entity_type,
            entity_id,
            exc_info=True,
        )
