"""
Batch event outbox.

Lifecycle changes write a BatchEvent row in the same transaction as the change
itself (see ``record_batch_event``). ``relay_pending_events`` later publishes
the unpublished rows in ``performed_at`` order and stamps ``published_at``, so
subscribers never hear about a change that was rolled back.
"""

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import BatchEvent
from events.publisher import EventPublisher, LifecycleEvent

logger = structlog.get_logger()

DEFAULT_RELAY_BATCH_SIZE = 500


def record_batch_event(
    db: AsyncSession,
    *,
    site_id: uuid.UUID,
    batch_id: uuid.UUID,
    event_type: str,
    performed_by: uuid.UUID,
    payload: dict[str, Any] | None = None,
) -> BatchEvent:
    event = BatchEvent(
        site_id=site_id,
        batch_id=batch_id,
        event_type=event_type,
        payload=payload or {},
        performed_by=performed_by,
        performed_at=datetime.utcnow(),
    )
    db.add(event)
    return event


async def relay_pending_events(
    db: AsyncSession,
    publisher: EventPublisher,
    limit: int = DEFAULT_RELAY_BATCH_SIZE,
) -> int:
    """Publish unpublished batch events. Returns how many rows were stamped."""
    result = await db.execute(
        select(BatchEvent)
        .where(BatchEvent.published_at.is_(None))
        .order_by(BatchEvent.performed_at, BatchEvent.event_id)
        .limit(limit)
    )
    pending = list(result.scalars().all())
    if not pending:
        return 0

    await publisher.publish_many(
        [
            LifecycleEvent(
                event_type=row.event_type,
                site_id=row.site_id,
                occurred_at=row.performed_at,
                payload={
                    "event_id": str(row.event_id),
                    "batch_id": str(row.batch_id),
                    "performed_by": str(row.performed_by),
                    **(row.payload or {}),
                },
            )
            for row in pending
        ]
    )

    stamped_at = datetime.utcnow()
    for row in pending:
        row.published_at = stamped_at
    await db.flush()

    logger.info("events.relayed", count=len(pending))
    return len(pending)
