from __future__ import annotations

import argparse
import asyncio
import difflib
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

import uvicorn
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.config import get_settings
from chunkswap.database import create_schema, get_engine, session_scope
from chunkswap.errors import ChunkswapError, PreconditionError
from chunkswap.logger import configure_logging
from chunkswap.models.disk_replacement import DiskReplacement
from chunkswap.services import disks as disk_service
from chunkswap.services import playbook, service_registry
from chunkswap.services.remote import get_runner

STATUS_HEADERS = ("Host", "Device Path", "Service ID", "Progress", "Status")


def _run(args: argparse.Namespace, handler: Callable[[AsyncSession], Awaitable[int]]) -> int:
    url = args.database_url or get_settings().database_url

    async def _main() -> int:
        try:
            async with session_scope(url) as session:
                return await handler(session)
        finally:
            await get_engine(url).dispose()

    return asyncio.run(_main())


def _confirm(prompt: str, assume_yes: bool) -> None:
    if assume_yes:
        return
    answer = input(f"{prompt} [y/N] ").strip().lower()
    if answer not in {"y", "yes"}:
        raise PreconditionError("cancelled", "cancelled by operator")


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise PreconditionError("read_file_failed", f"{path}: {exc.strerror}") from exc


def render_diff(old: str, new: str) -> str:
    lines = difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile="disks (stored)",
        tofile="disks (new)",
    )
    return "".join(lines)


def render_table(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    cells = [[str(value) for value in row] for row in rows]
    widths = [len(header) for header in headers]
    for row in cells:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(value))
    lines = ["  ".join(header.ljust(width) for header, width in zip(headers, widths)).rstrip()]
    lines.append("  ".join("-" * width for width in widths))
    for row in cells:
        lines.append("  ".join(value.ljust(width) for value, width in zip(row, widths)).rstrip())
    return "\n".join(lines)


def format_status_table(tickets: Sequence[DiskReplacement]) -> str:
    rows = [
        (ticket.host, ticket.device, ticket.chunkserver_id, f"{ticket.progress}%", ticket.status)
        for ticket in tickets
    ]
    return render_table(STATUS_HEADERS, rows)


def cmd_init_db(args: argparse.Namespace) -> int:
    url = args.database_url or get_settings().database_url

    async def _main() -> None:
        engine = get_engine(url)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()

    asyncio.run(_main())
    print(f"schema ready: {url}")
    return 0


def cmd_disks_commit(args: argparse.Namespace) -> int:
    raw = _read_text(args.file)

    async def handler(session: AsyncSession) -> int:
        current = await disk_service.show_disks_document(session)
        diff = render_diff(current, raw)
        if not diff:
            print("disks document unchanged")
            return 0
        if not args.silent:
            print(diff, end="" if diff.endswith("\n") else "\n")
        _confirm("Commit disks document?", args.yes)
        result = await disk_service.commit_disks(session, raw)
        print(
            f"committed disks: added={len(result.added)} updated={len(result.updated)} "
            f"removed={len(result.removed)} retained={len(result.retained)}"
        )
        for label in result.retained:
            print(f"warning: kept {label}, still owned by a chunkserver", file=sys.stderr)
        return 0

    return _run(args, handler)


def cmd_disks_show(args: argparse.Namespace) -> int:
    async def handler(session: AsyncSession) -> int:
        print(await disk_service.show_disks_document(session), end="")
        return 0

    return _run(args, handler)


def cmd_disks_list(args: argparse.Namespace) -> int:
    async def handler(session: AsyncSession) -> int:
        rows = [
            (disk.host, disk.device, disk.mount_point, disk.chunkserver_id, disk.size or "-", disk.uri or "-")
            for disk in await disk_service.list_disks(session, args.host)
        ]
        print(render_table(("Host", "Device Path", "Mount Point", "Service ID", "Size", "URI"), rows))
        return 0

    return _run(args, handler)


def cmd_disks_probe(args: argparse.Namespace) -> int:
    async def handler(session: AsyncSession) -> int:
        disks = await disk_service.probe_disks(session, get_runner(), args.host)
        print(f"probed {len(disks)} disk(s)")
        return 0

    return _run(args, handler)


def cmd_service_register(args: argparse.Namespace) -> int:
    async def handler(session: AsyncSession) -> int:
        service = await service_registry.register_service(
            session,
            chunkserver_id=args.id,
            host=args.host,
            container_id=args.container_id,
            device=args.device,
        )
        print(f"registered chunkserver {service.id} on {service.host}")
        return 0

    return _run(args, handler)


def cmd_replace_disk(args: argparse.Namespace) -> int:
    _confirm(
        f"Replace the disk of chunkserver {args.chunkserver_id} with {args.device}? "
        "The new disk will be formatted.",
        args.yes,
    )

    async def handler(session: AsyncSession) -> int:
        result = await playbook.replace_disk(
            session,
            args.chunkserver_id,
            args.device,
            get_runner(),
            restart=args.restart,
            wait=args.wait,
        )
        for warning in result.warnings:
            print(f"warning: {warning}", file=sys.stderr)
        print(format_status_table([result.ticket]))
        return 0

    return _run(args, handler)


def cmd_replace_disk_status(args: argparse.Namespace) -> int:
    async def handler(session: AsyncSession) -> int:
        tickets = await playbook.replacement_status(session, get_runner(), args.chunkserver_id)
        print(format_status_table(tickets))
        return 0

    return _run(args, handler)


def cmd_replace_disk_stop(args: argparse.Namespace) -> int:
    _confirm(f"Stop the disk replacement of chunkserver {args.chunkserver_id}?", args.yes)

    async def handler(session: AsyncSession) -> int:
        result = await playbook.stop_replacement(session, args.chunkserver_id, get_runner())
        print(result.message)
        return 0

    return _run(args, handler)


def cmd_serve(args: argparse.Namespace) -> int:
    settings = get_settings()
    uvicorn.run(
        "chunkswap.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_config=None,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chunkswap", description="Chunkserver disk replacement CLI")
    parser.add_argument("--database-url", help="Override CHUNKSWAP_DATABASE_URL")

    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(func=cmd_init_db)

    disks_commit = sub.add_parser("disks-commit", help="Validate and store the disks document")
    disks_commit.add_argument("file", help="YAML disks document, or - for stdin")
    disks_commit.add_argument(
        "--silent",
        "--slient",
        "-s",
        dest="silent",
        action="store_true",
        help="Don't show the difference",
    )
    disks_commit.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    disks_commit.set_defaults(func=cmd_disks_commit)

    disks_show = sub.add_parser("disks-show", help="Print the stored disks document")
    disks_show.set_defaults(func=cmd_disks_show)

    disks_list = sub.add_parser("disks-list", help="List disk records")
    disks_list.add_argument("--host")
    disks_list.set_defaults(func=cmd_disks_list)

    disks_probe = sub.add_parser("disks-probe", help="Refresh disk UUID and size from the hosts")
    disks_probe.add_argument("--host")
    disks_probe.set_defaults(func=cmd_disks_probe)

    service_register = sub.add_parser("service-register", help="Register a chunkserver service")
    service_register.add_argument("--id", required=True)
    service_register.add_argument("--host", required=True)
    service_register.add_argument("--container-id", default="")
    service_register.add_argument("--device", help="Disk device the chunkserver runs on")
    service_register.set_defaults(func=cmd_service_register)

    replace = sub.add_parser("replace-disk", help="Replace the disk of a chunkserver")
    replace.add_argument("--chunkserver-id", required=True)
    replace.add_argument("--device", required=True, help="New disk device path")
    replace.add_argument("--restart", action="store_true", help="Start the chunkserver once formatted")
    replace.add_argument("--wait", action="store_true", help="Wait for the format to finish")
    replace.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    replace.set_defaults(func=cmd_replace_disk)

    replace_status = sub.add_parser("replace-disk-status", help="Show disk replacement progress")
    replace_status.add_argument("--chunkserver-id")
    replace_status.set_defaults(func=cmd_replace_disk_status)

    replace_stop = sub.add_parser("replace-disk-stop", help="Cancel a disk replacement")
    replace_stop.add_argument("--chunkserver-id", required=True)
    replace_stop.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    replace_stop.set_defaults(func=cmd_replace_disk_stop)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    try:
        exit_code = args.func(args)
    except ChunkswapError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(exc.exit_code) from exc
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
