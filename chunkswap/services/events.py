from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.logger import get_logger
from chunkswap.models.event import Event

_logger = get_logger("services.events")


async def list_events(
    session: AsyncSession,
    limit: int = 200,
    chunkserver_id: Optional[str] = None,
) -> List[Event]:
    query = select(Event).order_by(Event.created_at.desc())
    if chunkserver_id:
        query = query.where(Event.chunkserver_id == chunkserver_id)
    result = await session.execute(query.limit(limit))
    return list(result.scalars().all())


def record_event(
    session: AsyncSession,
    *,
    category: str,
    name: str,
    level: str = "INFO",
    chunkserver_id: Optional[str] = None,
    host: Optional[str] = None,
    fields: Optional[Dict[str, Any]] = None,
) -> Event:
    """Stage an audit event; it is persisted with the caller's next commit."""
    event = Event(
        id=str(uuid4()),
        category=category,
        name=name,
        level=level,
        chunkserver_id=chunkserver_id,
        host=host,
        fields=fields or {},
    )
    session.add(event)
    _logger.debug(
        "events.record",
        "Recorded event",
        category=category,
        name=name,
        chunkserver_id=chunkserver_id or "",
    )
    return event
