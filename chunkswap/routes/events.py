from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.database import get_db_session
from chunkswap.schemas.events import EventOut
from chunkswap.services import events as event_service

router = APIRouter(prefix="/events", tags=["events"])


@router.get("", response_model=List[EventOut])
async def list_events(
    limit: int = 200,
    chunkserver_id: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
) -> List[EventOut]:
    bounded_limit = max(1, min(limit, 1000))
    events = await event_service.list_events(session, limit=bounded_limit, chunkserver_id=chunkserver_id)
    return [EventOut.model_validate(event) for event in events]
