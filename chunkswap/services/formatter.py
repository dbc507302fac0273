from __future__ import annotations

import re
from dataclasses import dataclass

from chunkswap.errors import RemoteExecutionError
from chunkswap.logger import get_logger
from chunkswap.services.remote import RemoteRunner

_logger = get_logger("services.formatter")
_NAME_SAFE_RE = re.compile(r"[^a-z0-9-]")
_NO_SUCH_CONTAINER = ("no such container", "no such object")


@dataclass(frozen=True)
class FormatStatus:
    formatted: str
    finished: bool


def _sanitize_label(raw: str, fallback: str) -> str:
    value = raw.strip().lower().replace("_", "-").replace("/", "-").replace(" ", "-")
    value = _NAME_SAFE_RE.sub("-", value)
    value = re.sub(r"-{2,}", "-", value).strip("-")
    if not value:
        value = fallback
    return value[:63]


def format_container_name(prefix: str, host: str, device: str) -> str:
    return _sanitize_label(f"{prefix}-{host}-{device.rsplit('/', 1)[-1]}", fallback=prefix)


def format_argv(*, image: str, command: str, name: str, mount: str, percent: int, runtime: str) -> list[str]:
    pool_dir = f"{mount.rstrip('/')}/chunkfilepool"
    return [
        runtime,
        "run",
        "-d",
        "--name",
        name,
        "-v",
        f"{mount}:{mount}",
        image,
        command,
        f"-filePoolDir={pool_dir}",
        f"-filePoolMetaPath={pool_dir}.meta",
        f"-fileSystemPath={pool_dir}",
        "-allocateByPercent=true",
        f"-allocatePercent={percent}",
    ]


async def start_format(
    runner: RemoteRunner,
    *,
    host: str,
    device: str,
    mount: str,
    percent: int,
    image: str,
) -> str:
    """Create a filesystem on ``device``, mount it and launch the chunk pool formatter.

    The formatter runs detached; poll it with :func:`format_status`. Returns the
    formatter container name.
    """
    settings = runner.settings
    name = format_container_name(settings.format_container_prefix, host, device)
    async with _logger.operation(
        "format.start",
        "Starting disk format",
        host=host,
        device=device,
        mount=mount,
        percent=percent,
    ) as op:
        await runner.run_checked(host, ["mkfs.ext4", "-F", device], action="format.mkfs")
        op.step("format.mkfs", "Created filesystem", device=device)
        await runner.run_checked(host, ["mkdir", "-p", mount], action="format.mkdir")
        await runner.run_checked(host, ["mount", device, mount], action="format.mount")
        op.step("format.mount", "Mounted device", mount=mount)
        await runner.run_checked(
            host,
            [runner.container_runtime, "rm", "-f", name],
            action="format.cleanup",
            ignore=_NO_SUCH_CONTAINER,
        )
        await runner.run_checked(
            host,
            format_argv(
                image=image,
                command=settings.format_image_command,
                name=name,
                mount=mount,
                percent=percent,
                runtime=runner.container_runtime,
            ),
            action="format.run",
        )
        op.step("format.launch", "Launched formatter container", container=name)
    return name


def _parse_df(out: str) -> tuple[int, int]:
    lines = [line.split() for line in out.splitlines() if line.strip()]
    for fields in reversed(lines):
        if len(fields) >= 2 and fields[0].isdigit() and fields[1].isdigit():
            return int(fields[0]), int(fields[1])
    return 0, 0


async def format_status(
    runner: RemoteRunner,
    *,
    host: str,
    device: str,
    mount: str,
    percent: int,
) -> FormatStatus:
    """Report formatted units as ``used/target`` GiB and whether the formatter exited cleanly."""
    name = format_container_name(runner.settings.format_container_prefix, host, device)
    df_out = await runner.run_checked(
        host,
        ["df", "--block-size=1G", "--output=used,size", mount],
        action="format.df",
    )
    used, size = _parse_df(df_out)
    target = size * percent // 100
    state = await runner.run_checked(
        host,
        [runner.container_runtime, "inspect", "--format", "{{.State.Status}} {{.State.ExitCode}}", name],
        action="format.inspect",
    )
    parts = state.split()
    status = parts[0].lower() if parts else ""
    exit_code = parts[1] if len(parts) > 1 else ""
    if status == "exited" and exit_code not in {"", "0"}:
        raise RemoteExecutionError(
            "format.failed",
            f"formatter {name} for disk {host}:{device} exited with code {exit_code}",
            host=host,
        )
    return FormatStatus(formatted=f"{used}/{target}", finished=status == "exited")
