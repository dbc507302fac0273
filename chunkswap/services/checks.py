"""Pre-flight checks run against the live host before a disk is touched.

Each check is a frozen dataclass holding only its own inputs; :func:`run_checks`
interprets them in order and stops at the first rejection. Values probed along the
way (new disk size and UUID, unreachable peers) come back in a :class:`CheckReport`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, ClassVar, Dict, List, Sequence, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.errors import (
    ChunkswapError,
    ClusterUnhealthyError,
    DiskInUseError,
    DiskNotEmptyError,
    DiskTooSmallError,
    PreconditionError,
    RemoteExecutionError,
    SameDiskError,
)
from chunkswap.logger import get_logger
from chunkswap.metrics import record_check
from chunkswap.services import remote
from chunkswap.services.disks import get_disk
from chunkswap.services.remote import RemoteRunner
from chunkswap.services.topology import disk_id_from_uri

_logger = get_logger("services.checks")

HEALTH_UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class Peer:
    chunkserver_id: str
    container_id: str


@dataclass(frozen=True)
class CheckClusterHealth:
    name: ClassVar[str] = "cluster_health"
    host: str
    peers: Tuple[Peer, ...]


@dataclass(frozen=True)
class CheckDiskSize:
    name: ClassVar[str] = "disk_size"
    host: str
    device: str
    old_device: str
    old_size: str


@dataclass(frozen=True)
class CheckDiskUsed:
    name: ClassVar[str] = "disk_used"
    host: str
    device: str
    chunkserver_id: str


@dataclass(frozen=True)
class CheckSameDisk:
    name: ClassVar[str] = "same_disk"
    host: str
    device: str
    old_disk_uri: str


@dataclass(frozen=True)
class CheckDiskEmpty:
    name: ClassVar[str] = "disk_empty"
    host: str
    device: str


@dataclass(frozen=True)
class UnmountOldDisk:
    name: ClassVar[str] = "unmount_old_disk"
    host: str
    mount_point: str


Check = Union[CheckClusterHealth, CheckDiskSize, CheckDiskUsed, CheckSameDisk, CheckDiskEmpty, UnmountOldDisk]


@dataclass
class CheckReport:
    passed: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    unreachable_peers: List[str] = field(default_factory=list)
    new_disk_size: str = ""
    new_disk_uuid: str = ""


def replacement_checks(
    *,
    chunkserver_id: str,
    host: str,
    device: str,
    old_device: str,
    old_size: str,
    old_disk_uri: str,
    old_mount_point: str,
    peers: Sequence[Peer],
) -> List[Check]:
    """The ordered checks guarding a replacement of ``old_device`` by ``device``."""
    return [
        CheckClusterHealth(host=host, peers=tuple(peers)),
        CheckDiskSize(host=host, device=device, old_device=old_device, old_size=old_size),
        CheckDiskUsed(host=host, device=device, chunkserver_id=chunkserver_id),
        CheckSameDisk(host=host, device=device, old_disk_uri=old_disk_uri),
        CheckDiskEmpty(host=host, device=device),
        UnmountOldDisk(host=host, mount_point=old_mount_point),
    ]


async def _probe_peer(runner: RemoteRunner, host: str, peer: Peer) -> str:
    if not peer.container_id:
        raise RemoteExecutionError(
            "container.health",
            f"chunkserver {peer.chunkserver_id} has no registered container",
            host=host,
        )
    return await remote.container_health(runner, host, peer.container_id)


async def _check_cluster_health(
    session: AsyncSession,
    runner: RemoteRunner,
    check: CheckClusterHealth,
    report: CheckReport,
) -> None:
    results = await asyncio.gather(
        *(_probe_peer(runner, check.host, peer) for peer in check.peers),
        return_exceptions=True,
    )
    unhealthy: List[str] = []
    for peer, outcome in zip(check.peers, results):
        if isinstance(outcome, RemoteExecutionError):
            report.unreachable_peers.append(peer.chunkserver_id)
        elif isinstance(outcome, BaseException):
            raise outcome
        elif outcome == HEALTH_UNHEALTHY:
            unhealthy.append(peer.chunkserver_id)

    if unhealthy:
        raise ClusterUnhealthyError(
            "cluster_unhealthy",
            f"chunkservers {', '.join(unhealthy)} on host {check.host} report unhealthy",
        )
    if report.unreachable_peers:
        warning = (
            f"health of chunkservers {', '.join(report.unreachable_peers)} on host "
            f"{check.host} could not be determined"
        )
        report.warnings.append(warning)
        _logger.warning(
            "checks.health.unknown",
            "Some peer health probes failed",
            host=check.host,
            unreachable=len(report.unreachable_peers),
            peers=len(check.peers),
        )


async def _check_disk_size(
    session: AsyncSession,
    runner: RemoteRunner,
    check: CheckDiskSize,
    report: CheckReport,
) -> None:
    old_size = check.old_size.strip()
    if not old_size.isdigit():
        raise PreconditionError(
            "disk_size_unknown",
            f"size of old disk {check.host}:{check.old_device} is unknown; probe disks first",
        )
    new_size = await remote.disk_size(runner, check.host, check.device)
    if not new_size.isdigit():
        raise RemoteExecutionError(
            "lsblk.size",
            f"unexpected size {new_size!r} for disk {check.host}:{check.device}",
            host=check.host,
        )
    if int(new_size) < int(old_size):
        raise DiskTooSmallError(
            "disk_too_small",
            f"new disk {check.host}:{check.device} has {new_size} bytes, smaller than "
            f"{old_size} bytes of old disk {check.old_device}",
        )
    report.new_disk_size = new_size


async def _check_disk_used(
    session: AsyncSession,
    runner: RemoteRunner,
    check: CheckDiskUsed,
    report: CheckReport,
) -> None:
    disk = await get_disk(session, check.host, check.device)
    if disk is not None and disk.owned and disk.chunkserver_id != check.chunkserver_id:
        raise DiskInUseError(
            "disk_in_use",
            f"disk {check.host}:{check.device} is used by chunkserver {disk.chunkserver_id}",
        )


async def _check_same_disk(
    session: AsyncSession,
    runner: RemoteRunner,
    check: CheckSameDisk,
    report: CheckReport,
) -> None:
    uuid = await remote.disk_uuid(runner, check.host, check.device)
    report.new_disk_uuid = uuid
    old_id = disk_id_from_uri(check.old_disk_uri)
    if uuid and old_id and uuid == old_id:
        raise SameDiskError(
            "same_disk",
            f"disk {check.host}:{check.device} is the same physical disk (uuid {uuid}) as the old one",
        )


async def _check_disk_empty(
    session: AsyncSession,
    runner: RemoteRunner,
    check: CheckDiskEmpty,
    report: CheckReport,
) -> None:
    fstype = await remote.disk_fstype(runner, check.host, check.device)
    if fstype:
        raise DiskNotEmptyError(
            "disk_not_empty",
            f"disk {check.host}:{check.device} already carries a {fstype} filesystem",
        )


async def _unmount_old_disk(
    session: AsyncSession,
    runner: RemoteRunner,
    check: UnmountOldDisk,
    report: CheckReport,
) -> None:
    await remote.unmount(runner, check.host, check.mount_point)


_Handler = Callable[[AsyncSession, RemoteRunner, "Check", CheckReport], Awaitable[None]]

_HANDLERS: Dict[type, _Handler] = {
    CheckClusterHealth: _check_cluster_health,
    CheckDiskSize: _check_disk_size,
    CheckDiskUsed: _check_disk_used,
    CheckSameDisk: _check_same_disk,
    CheckDiskEmpty: _check_disk_empty,
    UnmountOldDisk: _unmount_old_disk,
}


async def run_checks(
    session: AsyncSession,
    runner: RemoteRunner,
    checks: Sequence[Check],
) -> CheckReport:
    report = CheckReport()
    async with _logger.operation("checks.run", "Running replacement checks", checks=len(checks)) as op:
        for check in checks:
            handler = _HANDLERS[type(check)]
            try:
                await handler(session, runner, check, report)
            except ChunkswapError:
                record_check(check=check.name, ok=False)
                raise
            record_check(check=check.name, ok=True)
            report.passed.append(check.name)
            op.step(check.name, "Check passed")
    return report
