from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.database import commit
from chunkswap.errors import ChunkswapError, PreconditionError
from chunkswap.logger import get_logger
from chunkswap.models.disk import UNOWNED_SERVICE_ID, Disk
from chunkswap.services import locks, topology
from chunkswap.services.cluster_settings import get_disks_document, stage_disks_document
from chunkswap.services.events import record_event
from chunkswap.services.remote import RemoteRunner, disk_size, disk_uuid

_logger = get_logger("services.disks")


async def list_disks(session: AsyncSession, host: Optional[str] = None) -> List[Disk]:
    query = select(Disk).order_by(Disk.host, Disk.device)
    if host:
        query = query.where(Disk.host == host)
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_disks(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Disk))
    return int(result.scalar_one())


async def get_disk(session: AsyncSession, host: str, device: str) -> Optional[Disk]:
    result = await session.execute(select(Disk).where(Disk.host == host, Disk.device == device))
    return result.scalar_one_or_none()


async def list_disks_for_service(session: AsyncSession, chunkserver_id: str) -> List[Disk]:
    result = await session.execute(
        select(Disk).where(Disk.chunkserver_id == chunkserver_id).order_by(Disk.id)
    )
    return list(result.scalars().all())


async def get_disk_for_service(session: AsyncSession, chunkserver_id: str) -> Optional[Disk]:
    disks = await list_disks_for_service(session, chunkserver_id)
    return disks[0] if disks else None


async def stage_disk(
    session: AsyncSession,
    *,
    host: str,
    device: str,
    mount_point: str,
    container_image: str = "",
    format_percent: int = topology.DEFAULT_FORMAT_PERCENT,
    service_mount_device: bool = False,
    chunkserver_id: Optional[str] = None,
    uri: Optional[str] = None,
    size: Optional[str] = None,
) -> Disk:
    """Insert or update the record for ``(host, device)`` without committing.

    ``None`` leaves the stored ownership, URI and size untouched on an existing record.
    """
    disk = await get_disk(session, host, device)
    if disk is None:
        disk = Disk(
            host=host,
            device=device,
            mount_point=mount_point,
            chunkserver_id=UNOWNED_SERVICE_ID,
            uri="",
            size="",
        )
        session.add(disk)
    disk.mount_point = mount_point
    disk.container_image = container_image
    disk.format_percent = format_percent
    disk.service_mount_device = service_mount_device
    if chunkserver_id is not None:
        disk.chunkserver_id = chunkserver_id or UNOWNED_SERVICE_ID
    if uri is not None:
        disk.uri = uri
    if size is not None:
        disk.size = size
    return disk


async def delete_disk(session: AsyncSession, host: str, device: str) -> bool:
    disk = await get_disk(session, host, device)
    if disk is None:
        return False
    await session.delete(disk)
    return True


@dataclass
class CommitResult:
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)


def _label(host: str, device: str) -> str:
    return f"{host}:{device}"


async def commit_disks(session: AsyncSession, raw: str) -> CommitResult:
    """Store a new disks document and sync one record per provisioned (host, device).

    Records owned by a chunkserver are never removed by a commit, even when the
    document no longer provisions them; they are reported as retained.
    """
    configs = topology.parse_disks(raw)
    hosts = topology.load_document(raw).hosts
    if configs and not hosts:
        raise PreconditionError(
            "empty_hosts",
            "global.host must list the cluster hosts before disks can be committed",
        )

    result = CommitResult()
    async with _logger.operation("disks.commit", "Committing disks document", disks=len(configs)) as op:
        async with locks.hold_lock(session, purpose="disks commit"):
            desired: dict[tuple[str, str], topology.DiskConfig] = {}
            for dc in configs:
                for host in dc.provisioned_hosts(hosts):
                    desired[(host, dc.device)] = dc
            op.step("topology.expand", "Expanded disks per host", records=len(desired))

            existing = {(disk.host, disk.device): disk for disk in await list_disks(session)}
            for (host, device), dc in desired.items():
                label = _label(host, device)
                current = existing.get((host, device))
                if current is None:
                    result.added.append(label)
                elif (
                    current.mount_point != dc.mount_point
                    or current.container_image != dc.container_image
                    or current.format_percent != dc.format_percent
                    or current.service_mount_device != dc.service_mount_device
                ):
                    result.updated.append(label)
                await stage_disk(
                    session,
                    host=host,
                    device=device,
                    mount_point=dc.mount_point,
                    container_image=dc.container_image,
                    format_percent=dc.format_percent,
                    service_mount_device=dc.service_mount_device,
                )

            for key, disk in existing.items():
                if key in desired:
                    continue
                label = _label(*key)
                if disk.owned:
                    result.retained.append(label)
                    op.step_warning(
                        "disks.retain",
                        "Kept disk record still owned by a chunkserver",
                        disk=label,
                        chunkserver_id=disk.chunkserver_id,
                    )
                    continue
                await session.delete(disk)
                result.removed.append(label)

            await stage_disks_document(session, raw)
            record_event(
                session,
                category="disks",
                name="disks.commit",
                fields={
                    "added": len(result.added),
                    "updated": len(result.updated),
                    "removed": len(result.removed),
                    "retained": len(result.retained),
                },
            )
            await commit(session, "disks.commit")
            op.step(
                "db.commit",
                "Committed disk records",
                added=len(result.added),
                updated=len(result.updated),
                removed=len(result.removed),
            )
    return result


async def show_disks_document(session: AsyncSession) -> str:
    return await get_disks_document(session)


async def probe_disks(
    session: AsyncSession,
    runner: RemoteRunner,
    host: Optional[str] = None,
) -> List[Disk]:
    """Refresh the URI and size of every record from the block devices themselves.

    Unreachable hosts are skipped with a warning so one dead host does not block the rest.
    """
    disks = await list_disks(session, host)
    async with _logger.operation("disks.probe", "Probing disks", host=host or "*", disks=len(disks)) as op:
        probed = 0
        for disk in disks:
            try:
                uuid = await disk_uuid(runner, disk.host, disk.device)
                size = await disk_size(runner, disk.host, disk.device)
            except ChunkswapError as exc:
                op.step_warning(
                    "disk.probe",
                    "Failed to probe disk",
                    disk=_label(disk.host, disk.device),
                    error=exc.detail,
                )
                continue
            if uuid:
                disk.uri = str(topology.DiskURI.fs_uuid(uuid))
            if size:
                disk.size = size
            probed += 1
        await commit(session, "disks.probe")
        op.step("db.commit", "Stored probed disk identities", probed=probed)
    return disks
