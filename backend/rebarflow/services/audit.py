"""Append-only audit trail with per-(entity, event) dedupe keys."""
import logging
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rebarflow.models.orm_models import Event

logger = logging.getLogger("rebarflow-audit")


def dedupe_key(entity_type: str, entity_id: str, event_type: str, suffix: Optional[str] = None) -> str:
    key = f"{entity_type}:{entity_id}:{event_type}"
    return f"{key}:{suffix}" if suffix else key


async def record_event(
    db: AsyncSession,
    *,
    tenant_id: Optional[str],
    entity_type: str,
    entity_id: str,
    event_type: str,
    description: str,
    actor_id: Optional[str] = None,
    actor_type: str = "user",
    metadata: Optional[Dict[str, Any]] = None,
    suffix: Optional[str] = None,
) -> Optional[Event]:
    """
    Add an audit event to the current transaction. Returns None when an event
    with the same dedupe key already exists (retried request).
    """
    key = dedupe_key(entity_type, entity_id, event_type, suffix)
    existing = await db.execute(select(Event.id).where(Event.dedupe_key == key))
    if existing.scalar_one_or_none():
        logger.debug(f"Audit event {key} already recorded — skipping")
        return None

    event = Event(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        actor_id=actor_id,
        actor_type=actor_type,
        description=description,
        metadata_json=metadata or {},
        dedupe_key=key,
    )
    db.add(event)
    await db.flush()
    return event
