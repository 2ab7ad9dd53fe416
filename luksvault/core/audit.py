"""Durable audit trail.

Every unlock, rotation, backup, restore and remote session attempt is
recorded in the ``audit_events`` table.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from luksvault.core.logging import get_logger
from luksvault.database import Database
from luksvault.models import AuditEvent

logger = get_logger(__name__)


class AuditStore:
    """Writes and queries audit events."""

    def __init__(self, db: Database):
        self._db = db

    async def record(
        self,
        event_type: str,
        outcome: str,
        device_id: str | None = None,
        actor: str | None = None,
        source: str | None = None,
        details: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=timestamp or datetime.now(timezone.utc),
            event_type=event_type,
            device_id=device_id,
            actor=actor,
            source=source,
            outcome=outcome,
            details=details,
        )
        async with self._db.session() as db:
            db.add(event)
            await db.commit()
            await db.refresh(event)
        logger.debug("Audit event recorded", event_type=event_type, outcome=outcome)
        return event

    async def record_many(self, events: list[dict[str, Any]]) -> int:
        """Insert several events in one transaction."""
        if not events:
            return 0
        async with self._db.session() as db:
            for data in events:
                db.add(AuditEvent(**data))
            await db.commit()
        return len(events)

    async def query(
        self,
        event_type: str | None = None,
        device_id: str | None = None,
        outcome: str | None = None,
        limit: Optional[int] = 100,
    ) -> list[AuditEvent]:
        """Most recent events first."""
        stmt = select(AuditEvent)
        if event_type:
            stmt = stmt.where(AuditEvent.event_type == event_type)
        if device_id:
            stmt = stmt.where(AuditEvent.device_id == device_id)
        if outcome:
            stmt = stmt.where(AuditEvent.outcome == outcome)
        stmt = stmt.order_by(AuditEvent.id.desc())
        if limit:
            stmt = stmt.limit(limit)
        async with self._db.session() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
