"""
Audit trail shared by the pipeline components.
"""

from typing import Optional

import structlog

from pipeline.repositories import IAuditLog, InMemoryAuditLog
from schemas.commerce import AuditEventType, AuditLogEntry


class AuditTrail:

    def __init__(self, log: Optional[IAuditLog] = None):
        self.log = log or InMemoryAuditLog()
        self._logger = structlog.get_logger().bind(component="audit")

    async def emit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        correlation_id: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
        actor: str = "system",
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        )
        await self.log.append(entry)

        self._logger.info("audit_event",
                          event_type=event_type.value,
                          entity_type=entity_type,
                          entity_id=entity_id,
                          correlation_id=correlation_id,
                          actor=actor)
        return entry
