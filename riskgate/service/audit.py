from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from riskgate.logging import get_logger
from riskgate.service.collaborators import AuditSink

logger = get_logger(__name__)


@dataclass
class AuditEvent:
    entity_type: str
    entity_id: str
    action: str
    actor_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    recorded_at: float = 0.0


class LogAuditSink:
    """Writes audit events to the structured log stream."""

    def __init__(self, *, logger_name: str = "riskgate.audit") -> None:
        self._logger = get_logger(logger_name)

    async def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        self._logger.info(
            "audit_event",
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            metadata=metadata,
        )


class MemoryAuditSink:
    """Keeps events in a list; handy for dev and tests."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.events: List[AuditEvent] = []
        self._clock = clock

    async def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        self.events.append(
            AuditEvent(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor_id=actor_id,
                metadata=dict(metadata),
                recorded_at=self._clock(),
            )
        )

    def actions(self, entity_type: Optional[str] = None) -> list[str]:
        return [
            event.action
            for event in self.events
            if entity_type is None or event.entity_type == entity_type
        ]


async def safe_record(
    sink: AuditSink,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """Record an audit event; a failing sink is logged, never raised."""
    try:
        await sink.record(entity_type, entity_id, action, actor_id, metadata or {})
    except Exception as exc:
        logger.error(
            "audit_record_failed",
            entity_type=entity_type,
            action=action,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return False
    return True
