"""Disk replacement playbook: replace, report and cancel.

A replacement runs as an ordered list of :class:`Step` values interpreted by
:func:`_execute`. The validating and mutating steps run while the ``disk-topology``
lock is held; progress tracking and the optional service restart run after it is
released, because formatting can take hours.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.database import commit
from chunkswap.errors import (
    ChunkswapError,
    ConcurrencyError,
    NotFoundError,
    PreconditionError,
    RemoteExecutionError,
)
from chunkswap.logger import Operation, get_logger
from chunkswap.metrics import record_replacement
from chunkswap.models.disk import UNOWNED_SERVICE_ID, Disk
from chunkswap.models.disk_replacement import STATUS_DONE, DiskReplacement
from chunkswap.models.service import Service
from chunkswap.services import remote
from chunkswap.services.checks import CheckReport, Peer, replacement_checks, run_checks
from chunkswap.services.cluster_settings import get_disks_document, stage_disks_document
from chunkswap.services.disks import (
    count_disks,
    delete_disk,
    get_disk,
    get_disk_for_service,
    stage_disk,
)
from chunkswap.services.events import record_event
from chunkswap.services.formatter import format_status, start_format
from chunkswap.services.locks import hold_lock
from chunkswap.services.remote import RemoteRunner
from chunkswap.services.replacements import (
    apply_progress,
    create_replacement,
    delete_replacement,
    get_in_flight,
    list_in_flight,
    list_replacements,
)
from chunkswap.services.service_registry import get_service, list_peers
from chunkswap.services.topology import (
    DEFAULT_FORMAT_PERCENT,
    DiskURI,
    parse_disks,
    reconcile_replacement,
    reconcile_revert,
)

_logger = get_logger("services.playbook")

_FORMAT_FAILED = "format.failed"


class Step(str, Enum):
    CHECK_DISK = "check_disk"
    STOP_SERVICE = "stop_service"
    FORMAT_DISK = "format_disk"
    REPLACE_DISK = "replace_disk"
    TRACK_PROGRESS = "track_progress"
    START_SERVICE = "start_service"


LOCKED_STEPS = (Step.CHECK_DISK, Step.STOP_SERVICE, Step.FORMAT_DISK, Step.REPLACE_DISK)
TRACKING_STEPS = (Step.TRACK_PROGRESS, Step.START_SERVICE)


@dataclass(frozen=True)
class DiskSnapshot:
    """Plain copy of a disk record, safe to read after the session rolls back."""

    host: str
    device: str
    mount_point: str
    container_image: str
    format_percent: int
    service_mount_device: bool
    uri: str
    size: str

    @classmethod
    def from_record(cls, disk: Disk) -> "DiskSnapshot":
        return cls(
            host=disk.host,
            device=disk.device,
            mount_point=disk.mount_point,
            container_image=disk.container_image,
            format_percent=disk.format_percent,
            service_mount_device=disk.service_mount_device,
            uri=disk.uri,
            size=disk.size,
        )


@dataclass
class ReplaceContext:
    session: AsyncSession
    runner: RemoteRunner
    chunkserver_id: str
    container_id: str
    device: str
    old: DiskSnapshot
    ticket: DiskReplacement
    created_ticket: bool
    restart: bool = False
    wait: bool = False
    report: CheckReport = field(default_factory=CheckReport)
    new_disk_uuid: str = ""
    executed: List[Step] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def host(self) -> str:
        return self.old.host


@dataclass
class ReplaceResult:
    ticket: DiskReplacement
    report: CheckReport
    steps: List[Step]
    warnings: List[str]
    resumed: bool = False

    @property
    def status(self) -> str:
        return self.ticket.status

    @property
    def progress(self) -> int:
        return self.ticket.progress


@dataclass(frozen=True)
class StopResult:
    stopped: bool
    chunkserver_id: str
    reverted: bool = False
    message: str = ""


# --- steps -----------------------------------------------------------------


async def _check_disk(ctx: ReplaceContext, op: Operation) -> None:
    service = await get_service(ctx.session, ctx.chunkserver_id)
    peers = await list_peers(ctx.session, service) if service is not None else []
    checks = replacement_checks(
        chunkserver_id=ctx.chunkserver_id,
        host=ctx.host,
        device=ctx.device,
        old_device=ctx.old.device,
        old_size=ctx.old.size,
        old_disk_uri=ctx.old.uri,
        old_mount_point=ctx.old.mount_point,
        peers=[Peer(peer.id, peer.container_id) for peer in peers],
    )
    try:
        ctx.report = await run_checks(ctx.session, ctx.runner, checks)
    except ChunkswapError as exc:
        if ctx.created_ticket:
            await delete_replacement(ctx.session, ctx.ticket)
        record_event(
            ctx.session,
            category="replacements",
            name="replacement.rejected",
            level="WARNING",
            chunkserver_id=ctx.chunkserver_id,
            host=ctx.host,
            fields={"device": ctx.device, "code": exc.code, "detail": exc.detail},
        )
        await commit(ctx.session, "replacement.reject")
        raise
    ctx.warnings.extend(ctx.report.warnings)
    op.step("checks.pass", "Validated new disk", checks=len(ctx.report.passed))


async def _stop_service(ctx: ReplaceContext, op: Operation) -> None:
    if not ctx.container_id:
        ctx.warnings.append(f"chunkserver {ctx.chunkserver_id} has no registered container; not stopped")
        op.step_warning("service.stop", "No container registered for service; skipped")
        return
    await remote.stop_container(ctx.runner, ctx.host, ctx.container_id)
    op.step("service.stop", "Stopped chunkserver", container_id=ctx.container_id)


async def _format_disk(ctx: ReplaceContext, op: Operation) -> None:
    name = await start_format(
        ctx.runner,
        host=ctx.host,
        device=ctx.device,
        mount=ctx.old.mount_point,
        percent=ctx.old.format_percent,
        image=ctx.old.container_image,
    )
    ctx.new_disk_uuid = await remote.disk_uuid(ctx.runner, ctx.host, ctx.device)
    op.step("format.start", "Formatting new disk", container=name, uuid=ctx.new_disk_uuid)


async def _replace_disk(ctx: ReplaceContext, op: Operation) -> None:
    session = ctx.session
    raw = await get_disks_document(session)
    existing = await get_disk(session, ctx.host, ctx.device)
    new_record_exists = existing is not None
    if existing is not None:
        ctx.ticket.new_record_mount_point = existing.mount_point
        ctx.ticket.new_record_size = existing.size
    ctx.ticket.old_entry_provisioned = any(
        dc.device == ctx.old.device and ctx.host in dc.provisioned_hosts() for dc in parse_disks(raw)
    )
    patched = reconcile_replacement(
        raw,
        host=ctx.host,
        new_device=ctx.device,
        old_device=ctx.old.device,
        mount=ctx.old.mount_point,
        new_record_exists=new_record_exists,
    )

    await stage_disk(
        session,
        host=ctx.host,
        device=ctx.device,
        mount_point=ctx.old.mount_point,
        container_image=ctx.old.container_image,
        format_percent=ctx.old.format_percent,
        service_mount_device=ctx.old.service_mount_device,
        chunkserver_id=ctx.chunkserver_id,
        uri=str(DiskURI.fs_uuid(ctx.new_disk_uuid)) if ctx.new_disk_uuid else "",
        size=ctx.report.new_disk_size,
    )
    await session.flush()
    await delete_disk(session, ctx.host, ctx.old.device)
    await stage_disks_document(session, patched)

    ctx.ticket.new_record_existed = new_record_exists
    ctx.ticket.committed = True
    record_event(
        session,
        category="replacements",
        name="replacement.commit",
        chunkserver_id=ctx.chunkserver_id,
        host=ctx.host,
        fields={"old_device": ctx.old.device, "device": ctx.device},
    )
    await commit(session, "replacement.commit")
    op.step("bookkeeping.commit", "Moved chunkserver to new disk", new_record_existed=new_record_exists)


async def _refresh_progress(ctx: ReplaceContext) -> None:
    status = await format_status(
        ctx.runner,
        host=ctx.host,
        device=ctx.device,
        mount=ctx.ticket.mount_point,
        percent=ctx.old.format_percent,
    )
    if apply_progress(ctx.ticket, status.formatted, status.finished):
        await commit(ctx.session, "replacement.progress")


async def _track_progress(ctx: ReplaceContext, op: Operation) -> None:
    settings = ctx.runner.settings
    deadline = monotonic() + settings.format_wait_timeout_seconds
    while True:
        try:
            await _refresh_progress(ctx)
        except RemoteExecutionError as exc:
            if exc.code == _FORMAT_FAILED:
                raise
            ctx.warnings.append(f"format progress unavailable: {exc.detail}")
            op.step_warning("progress.refresh", "Could not read format progress", error=exc.detail)
            return
        op.step_debug("progress.refresh", "Refreshed format progress", progress=ctx.ticket.progress)
        if not ctx.wait or ctx.ticket.status == STATUS_DONE:
            break
        if monotonic() >= deadline:
            ctx.warnings.append("gave up waiting for format to finish")
            op.step_warning("progress.timeout", "Stopped waiting for format", progress=ctx.ticket.progress)
            break
        await asyncio.sleep(settings.format_poll_interval_seconds)
    op.step("progress.track", "Format progress", status=ctx.ticket.status, progress=ctx.ticket.progress)


async def _start_service(ctx: ReplaceContext, op: Operation) -> None:
    if ctx.ticket.status != STATUS_DONE:
        ctx.warnings.append("format still running; start the chunkserver once it completes")
        op.step_warning("service.start", "Format not finished; service left stopped")
        return
    if not ctx.container_id:
        op.step_warning("service.start", "No container registered for service; skipped")
        return
    await remote.start_container(ctx.runner, ctx.host, ctx.container_id)
    op.step("service.start", "Started chunkserver", container_id=ctx.container_id)


_STEP_HANDLERS: Dict[Step, Callable[[ReplaceContext, Operation], Awaitable[None]]] = {
    Step.CHECK_DISK: _check_disk,
    Step.STOP_SERVICE: _stop_service,
    Step.FORMAT_DISK: _format_disk,
    Step.REPLACE_DISK: _replace_disk,
    Step.TRACK_PROGRESS: _track_progress,
    Step.START_SERVICE: _start_service,
}


async def _execute(ctx: ReplaceContext, steps: Sequence[Step], op: Operation) -> None:
    for step in steps:
        if step is Step.START_SERVICE and not ctx.restart:
            continue
        await _STEP_HANDLERS[step](ctx, op)
        ctx.executed.append(step)


# --- replace ---------------------------------------------------------------


async def _require_service(session: AsyncSession, chunkserver_id: str) -> tuple[Service, Disk]:
    if await count_disks(session) == 0:
        raise PreconditionError(
            "empty_disks",
            "no disk records found; commit the disks document before replacing a disk",
        )
    service = await get_service(session, chunkserver_id)
    if service is None:
        raise NotFoundError("service_not_found", f"chunkserver {chunkserver_id} is not registered")
    disk = await get_disk_for_service(session, chunkserver_id)
    if disk is None:
        raise NotFoundError("disk_not_found", f"no disk record is owned by chunkserver {chunkserver_id}")
    return service, disk


async def _claim_ticket(
    session: AsyncSession,
    *,
    chunkserver_id: str,
    device: str,
    old: DiskSnapshot,
) -> tuple[DiskReplacement, bool]:
    mine: Optional[DiskReplacement] = None
    for ticket in await list_in_flight(session):
        if ticket.chunkserver_id != chunkserver_id:
            raise ConcurrencyError(
                "replacement_in_flight",
                f"disk replacement of chunkserver {ticket.chunkserver_id} "
                f"({ticket.host}:{ticket.device}) is {ticket.status}; one replacement runs at a time",
            )
        mine = ticket
    if mine is not None:
        if mine.device != device:
            raise ConcurrencyError(
                "replacement_exists",
                f"chunkserver {chunkserver_id} is already being moved to {mine.device}; stop it first",
            )
        return mine, False

    ticket = create_replacement(
        session,
        chunkserver_id=chunkserver_id,
        host=old.host,
        old_device=old.device,
        device=device,
        mount_point=old.mount_point,
        old_disk_uri=old.uri,
        old_disk_size=old.size,
    )
    record_event(
        session,
        category="replacements",
        name="replacement.create",
        chunkserver_id=chunkserver_id,
        host=old.host,
        fields={"old_device": old.device, "device": device},
    )
    await commit(session, "replacement.create")
    return ticket, True


async def replace_disk(
    session: AsyncSession,
    chunkserver_id: str,
    device: str,
    runner: RemoteRunner,
    restart: bool = False,
    wait: bool = False,
) -> ReplaceResult:
    """Move ``chunkserver_id`` from its current disk to ``device``.

    Re-running with the same arguments resumes an interrupted attempt.
    """
    chunkserver_id = (chunkserver_id or "").strip()
    device = (device or "").strip()
    if not chunkserver_id:
        raise PreconditionError("chunkserver_id_required", "chunkserver id is required")
    if not device:
        raise PreconditionError("device_required", "new disk device path is required")

    service, disk = await _require_service(session, chunkserver_id)
    old = DiskSnapshot.from_record(disk)
    container_id = service.container_id

    async with _logger.operation(
        "replace_disk",
        "Replacing chunkserver disk",
        chunkserver_id=chunkserver_id,
        host=old.host,
        device=device,
    ) as op:
        try:
            current = await get_in_flight(session, chunkserver_id)
            if current is not None and current.committed and current.device == device:
                # Bookkeeping already points at the new disk; only tracking is left.
                ctx = ReplaceContext(
                    session=session,
                    runner=runner,
                    chunkserver_id=chunkserver_id,
                    container_id=container_id,
                    device=device,
                    old=old,
                    ticket=current,
                    created_ticket=False,
                    restart=restart,
                    wait=wait,
                )
                op.step("ticket.resume", "Resuming committed replacement", ticket_id=current.id)
                await _execute(ctx, TRACKING_STEPS, op)
                record_replacement(action="replace", ok=True)
                return ReplaceResult(ctx.ticket, ctx.report, ctx.executed, ctx.warnings, resumed=True)

            if old.device == device:
                raise PreconditionError(
                    "same_device",
                    f"chunkserver {chunkserver_id} already uses {old.host}:{device}",
                )
            if not old.container_image:
                raise PreconditionError(
                    "container_image_missing",
                    f"disk {old.host}:{old.device} has no container image to format with",
                )
            target = await get_disk(session, old.host, device)
            if target is not None and not target.owned and target.mount_point != old.mount_point:
                # The format always mounts the new disk at the chunkserver's existing mount point.
                raise PreconditionError(
                    "mount_point_mismatch",
                    f"disk {old.host}:{device} is provisioned at {target.mount_point} but chunkserver "
                    f"{chunkserver_id} mounts {old.mount_point}; update the disks document first",
                )

            async with hold_lock(session, purpose=f"replace-disk {chunkserver_id} {device}"):
                ticket, created = await _claim_ticket(
                    session,
                    chunkserver_id=chunkserver_id,
                    device=device,
                    old=old,
                )
                op.step("ticket.claim", "Claimed replacement ticket", ticket_id=ticket.id, created=created)
                ctx = ReplaceContext(
                    session=session,
                    runner=runner,
                    chunkserver_id=chunkserver_id,
                    container_id=container_id,
                    device=device,
                    old=old,
                    ticket=ticket,
                    created_ticket=created,
                    restart=restart,
                    wait=wait,
                )
                await _execute(ctx, LOCKED_STEPS, op)
            await _execute(ctx, TRACKING_STEPS, op)
        except ChunkswapError:
            record_replacement(action="replace", ok=False)
            raise
        record_replacement(action="replace", ok=True)
    return ReplaceResult(ctx.ticket, ctx.report, ctx.executed, ctx.warnings, resumed=not created)


# --- status ----------------------------------------------------------------


async def replacement_status(
    session: AsyncSession,
    runner: RemoteRunner,
    chunkserver_id: Optional[str] = None,
) -> List[DiskReplacement]:
    """List tickets, refreshing live progress for the ones still formatting."""
    tickets = await list_replacements(session, chunkserver_id)
    changed = False
    async with _logger.operation(
        "replacement_status",
        "Reading disk replacement status",
        chunkserver_id=chunkserver_id or "*",
        tickets=len(tickets),
    ) as op:
        for ticket in tickets:
            if not ticket.in_flight or not ticket.committed:
                continue
            disk = await get_disk(session, ticket.host, ticket.device)
            percent = disk.format_percent if disk is not None else DEFAULT_FORMAT_PERCENT
            try:
                status = await format_status(
                    runner,
                    host=ticket.host,
                    device=ticket.device,
                    mount=ticket.mount_point,
                    percent=percent,
                )
            except RemoteExecutionError as exc:
                op.step_warning(
                    "progress.refresh",
                    "Could not read format progress; reporting stored value",
                    chunkserver_id=ticket.chunkserver_id,
                    error=exc.detail,
                )
                continue
            changed = apply_progress(ticket, status.formatted, status.finished) or changed
        if changed:
            await commit(session, "replacement.progress")
            op.step("db.commit", "Stored refreshed progress")
    return tickets


# --- stop ------------------------------------------------------------------


async def _revert_bookkeeping(session: AsyncSession, ticket: DiskReplacement) -> None:
    raw = await get_disks_document(session)
    restored = reconcile_revert(
        raw,
        host=ticket.host,
        new_device=ticket.device,
        old_device=ticket.old_device,
        mount=ticket.mount_point,
        new_record_existed=ticket.new_record_existed,
        readmit_old=ticket.old_entry_provisioned,
    )
    new_record = await get_disk(session, ticket.host, ticket.device)
    await stage_disk(
        session,
        host=ticket.host,
        device=ticket.old_device,
        mount_point=ticket.mount_point,
        container_image=new_record.container_image if new_record is not None else "",
        format_percent=new_record.format_percent if new_record is not None else DEFAULT_FORMAT_PERCENT,
        service_mount_device=new_record.service_mount_device if new_record is not None else False,
        chunkserver_id=ticket.chunkserver_id,
        uri=ticket.old_disk_uri,
        size=ticket.old_disk_size,
    )
    await session.flush()
    if new_record is not None:
        if ticket.new_record_existed:
            # mkfs gave the disk a fresh filesystem identity; the next probe fills in the uri.
            new_record.chunkserver_id = UNOWNED_SERVICE_ID
            new_record.uri = ""
            new_record.mount_point = ticket.new_record_mount_point or new_record.mount_point
            new_record.size = ticket.new_record_size or new_record.size
        else:
            await session.delete(new_record)
    await stage_disks_document(session, restored)


async def stop_replacement(
    session: AsyncSession,
    chunkserver_id: str,
    runner: RemoteRunner,
) -> StopResult:
    """Cancel the in-flight replacement of ``chunkserver_id`` and restore its old disk.

    A running format is not interrupted. Stopping when nothing is in flight is a no-op.
    """
    chunkserver_id = (chunkserver_id or "").strip()
    if not chunkserver_id:
        raise PreconditionError("chunkserver_id_required", "chunkserver id is required")

    idle = StopResult(
        stopped=False,
        chunkserver_id=chunkserver_id,
        message=f"no disk replacement in progress for chunkserver {chunkserver_id}",
    )
    if await get_in_flight(session, chunkserver_id) is None:
        _logger.info("replacement.stop.idle", idle.message, chunkserver_id=chunkserver_id)
        return idle

    async with _logger.operation("stop_replacement", "Stopping disk replacement", chunkserver_id=chunkserver_id) as op:
        try:
            async with hold_lock(session, purpose=f"stop-replacement {chunkserver_id}"):
                ticket = await get_in_flight(session, chunkserver_id)
                if ticket is None:
                    return idle
                host, device, reverted = ticket.host, ticket.device, ticket.committed

                await remote.randomize_disk_uuid(runner, host, device)
                op.step("disk.uuid", "Randomized new disk identity", device=device)
                if reverted:
                    await _revert_bookkeeping(session, ticket)
                    op.step("bookkeeping.revert", "Restored old disk records", old_device=ticket.old_device)
                await delete_replacement(session, ticket)
                record_event(
                    session,
                    category="replacements",
                    name="replacement.stop",
                    chunkserver_id=chunkserver_id,
                    host=host,
                    fields={"device": device, "reverted": reverted},
                )
                await commit(session, "replacement.stop")
        except ChunkswapError:
            record_replacement(action="stop", ok=False)
            raise
        record_replacement(action="stop", ok=True)
    return StopResult(
        stopped=True,
        chunkserver_id=chunkserver_id,
        reverted=reverted,
        message=f"stopped disk replacement of chunkserver {chunkserver_id} on {host}:{device}",
    )
