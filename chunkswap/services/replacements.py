from __future__ import annotations

from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.logger import get_logger
from chunkswap.models.disk_replacement import (
    IN_FLIGHT_STATUSES,
    STATUS_DONE,
    STATUS_PENDING,
    STATUS_RUNNING,
    DiskReplacement,
)

_logger = get_logger("services.replacements")


def compute_progress(formatted: str) -> int:
    """Percentage for a ``used/target`` pair, floored and clamped to 0..100.

    Malformed input and a zero target both read as no progress.
    """
    used_raw, sep, target_raw = (formatted or "").strip().partition("/")
    if not sep:
        return 0
    try:
        used = int(used_raw.strip())
        target = int(target_raw.strip())
    except ValueError:
        return 0
    if target <= 0 or used <= 0:
        return 0
    return min(100, used * 100 // target)


def apply_progress(ticket: DiskReplacement, formatted: str, finished: bool) -> bool:
    """Fold a format observation into ``ticket``; returns whether anything changed.

    A finished ticket never moves again.
    """
    if ticket.status == STATUS_DONE:
        return False
    progress = compute_progress(formatted)
    if finished or progress >= 100:
        ticket.status = STATUS_DONE
        ticket.progress = 100
        return True
    changed = ticket.status != STATUS_RUNNING or ticket.progress != progress
    ticket.status = STATUS_RUNNING
    ticket.progress = progress
    return changed


async def list_replacements(
    session: AsyncSession,
    chunkserver_id: Optional[str] = None,
) -> List[DiskReplacement]:
    query = select(DiskReplacement).order_by(DiskReplacement.created_at, DiskReplacement.id)
    if chunkserver_id:
        query = query.where(DiskReplacement.chunkserver_id == chunkserver_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_replacement(session: AsyncSession, ticket_id: str) -> Optional[DiskReplacement]:
    result = await session.execute(select(DiskReplacement).where(DiskReplacement.id == ticket_id))
    return result.scalar_one_or_none()


async def list_in_flight(session: AsyncSession) -> List[DiskReplacement]:
    result = await session.execute(
        select(DiskReplacement)
        .where(DiskReplacement.status.in_(IN_FLIGHT_STATUSES))
        .order_by(DiskReplacement.created_at)
    )
    return list(result.scalars().all())


async def get_in_flight(session: AsyncSession, chunkserver_id: str) -> Optional[DiskReplacement]:
    for ticket in await list_in_flight(session):
        if ticket.chunkserver_id == chunkserver_id:
            return ticket
    return None


def create_replacement(
    session: AsyncSession,
    *,
    chunkserver_id: str,
    host: str,
    old_device: str,
    device: str,
    mount_point: str,
    old_disk_uri: str,
    old_disk_size: str,
) -> DiskReplacement:
    ticket = DiskReplacement(
        id=str(uuid4()),
        chunkserver_id=chunkserver_id,
        host=host,
        old_device=old_device,
        device=device,
        mount_point=mount_point,
        old_disk_uri=old_disk_uri,
        old_disk_size=old_disk_size,
        new_record_existed=False,
        new_record_mount_point="",
        new_record_size="",
        old_entry_provisioned=True,
        committed=False,
        status=STATUS_PENDING,
        progress=0,
    )
    session.add(ticket)
    _logger.debug(
        "replacement.stage",
        "Staged replacement ticket",
        chunkserver_id=chunkserver_id,
        host=host,
        device=device,
    )
    return ticket


async def delete_replacement(session: AsyncSession, ticket: DiskReplacement) -> None:
    await session.delete(ticket)
