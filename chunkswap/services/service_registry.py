from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.database import commit
from chunkswap.errors import ConcurrencyError, DiskInUseError, NotFoundError, PreconditionError
from chunkswap.logger import get_logger
from chunkswap.models.disk import UNOWNED_SERVICE_ID
from chunkswap.models.service import ROLE_CHUNKSERVER, Service
from chunkswap.services.disks import get_disk, list_disks_for_service
from chunkswap.services.events import record_event
from chunkswap.services.replacements import get_in_flight

_logger = get_logger("services.service_registry")


async def list_services(session: AsyncSession, host: Optional[str] = None) -> List[Service]:
    query = select(Service).order_by(Service.host, Service.id)
    if host:
        query = query.where(Service.host == host)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_service(session: AsyncSession, chunkserver_id: str) -> Optional[Service]:
    result = await session.execute(select(Service).where(Service.id == chunkserver_id))
    return result.scalar_one_or_none()


async def list_peers(session: AsyncSession, service: Service) -> List[Service]:
    """Other chunkservers sharing the host of ``service``."""
    return [
        peer
        for peer in await list_services(session, service.host)
        if peer.id != service.id and peer.role == ROLE_CHUNKSERVER
    ]


async def register_service(
    session: AsyncSession,
    *,
    chunkserver_id: str,
    host: str,
    container_id: str = "",
    device: Optional[str] = None,
    role: str = ROLE_CHUNKSERVER,
) -> Service:
    """Record a deployed service and, with ``device``, bind it to that disk record."""
    chunkserver_id = chunkserver_id.strip()
    host = host.strip()
    if not chunkserver_id or not host:
        raise PreconditionError("service_identity_required", "service id and host are required")

    async with _logger.operation(
        "service.register",
        "Registering service",
        chunkserver_id=chunkserver_id,
        host=host,
        device=device or "",
    ) as op:
        if device:
            ticket = await get_in_flight(session, chunkserver_id)
            if ticket is not None:
                raise ConcurrencyError(
                    "replacement_in_flight",
                    f"chunkserver {chunkserver_id} is being moved to {ticket.host}:{ticket.device}; "
                    "wait for it or stop it before rebinding its disk",
                )

        service = await get_service(session, chunkserver_id)
        if service is None:
            service = Service(id=chunkserver_id, host=host, role=role, container_id=container_id)
            session.add(service)
        else:
            service.host = host
            service.role = role
            service.container_id = container_id
        op.step("db.upsert", "Prepared service row")

        if device:
            disk = await get_disk(session, host, device)
            if disk is None:
                raise NotFoundError(
                    "disk_not_found",
                    f"disk {host}:{device} is not committed; commit the disks document first",
                )
            if disk.owned and disk.chunkserver_id != chunkserver_id:
                raise DiskInUseError(
                    "disk_in_use",
                    f"disk {host}:{device} is used by chunkserver {disk.chunkserver_id}",
                )
            disk.chunkserver_id = chunkserver_id
            op.step("disk.claim", "Bound disk to service", device=device)

            # A chunkserver owns exactly one disk.
            for previous in await list_disks_for_service(session, chunkserver_id):
                if (previous.host, previous.device) == (host, device):
                    continue
                previous.chunkserver_id = UNOWNED_SERVICE_ID
                op.step("disk.release", "Released previous disk", released=f"{previous.host}:{previous.device}")

        record_event(
            session,
            category="services",
            name="service.register",
            chunkserver_id=chunkserver_id,
            host=host,
            fields={"container_id": container_id, "device": device or ""},
        )
        await commit(session, "service.register")
        op.step("db.commit", "Committed service registration")
    return service
