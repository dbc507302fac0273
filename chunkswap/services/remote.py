from __future__ import annotations

import asyncio
import shlex
import subprocess
from dataclasses import dataclass
from functools import lru_cache
from time import perf_counter
from typing import Iterable, Optional, Sequence

from chunkswap.config import Settings, get_settings
from chunkswap.errors import RemoteExecutionError, RemoteUnavailableError
from chunkswap.logger import get_logger
from chunkswap.metrics import record_remote_command

_logger = get_logger("remote")

_UMOUNT_IGNORED = ("not mounted", "no mount point specified", "not found")
_NO_FILESYSTEM = ("bad magic number", "couldn't find valid filesystem superblock")


@dataclass(frozen=True)
class CommandResult:
    code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.code == 0


def _trim(value: str, max_len: int = 240) -> str:
    text = value.strip()
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


class RemoteRunner:
    """Runs commands on cluster hosts over SSH."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    @property
    def container_runtime(self) -> str:
        return self._settings.container_runtime

    @property
    def settings(self) -> Settings:
        return self._settings

    def ssh_argv(self, host: str, argv: Sequence[str]) -> list[str]:
        settings = self._settings
        cmd = [settings.ssh_command]
        cmd.extend(shlex.split(settings.ssh_options))
        cmd.extend(["-p", str(settings.ssh_port)])
        target = f"{settings.ssh_user}@{host}" if settings.ssh_user else host
        cmd.extend([target, "--", shlex.join(list(argv))])
        return cmd

    def _run(self, host: str, argv: Sequence[str]) -> CommandResult:
        cmd = self.ssh_argv(host, argv)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._settings.remote_timeout_seconds,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RemoteUnavailableError("ssh.command", str(exc), host=host) from exc
        except subprocess.TimeoutExpired as exc:
            raise RemoteExecutionError(
                "ssh.timeout",
                f"{shlex.join(list(argv))} on host {host} timed out after {exc.timeout}s",
                host=host,
            ) from exc
        return CommandResult(
            code=proc.returncode,
            stdout=(proc.stdout or "").strip(),
            stderr=(proc.stderr or "").strip(),
        )

    async def run(self, host: str, argv: Sequence[str], *, action: str) -> CommandResult:
        start = perf_counter()
        try:
            result = await asyncio.to_thread(self._run, host, tuple(argv))
        except RemoteExecutionError:
            record_remote_command(action=action, ok=False, duration_seconds=perf_counter() - start)
            raise
        record_remote_command(action=action, ok=result.ok, duration_seconds=perf_counter() - start)
        return result

    async def run_checked(
        self,
        host: str,
        argv: Sequence[str],
        *,
        action: str,
        ignore: Iterable[str] = (),
    ) -> str:
        result = await self.run(host, argv, action=action)
        if result.ok:
            _logger.debug("remote.command.ok", "Remote command succeeded", action=action, host=host)
            return result.stdout
        output = f"{result.stderr}\n{result.stdout}".lower()
        ignored = [marker for marker in ignore if marker in output]
        if ignored:
            _logger.info(
                "remote.command.ignored",
                "Remote command failure ignored",
                action=action,
                host=host,
                reason=ignored[0],
            )
            return ""
        _logger.warning(
            "remote.command.fail",
            "Remote command failed",
            action=action,
            host=host,
            args=shlex.join(list(argv)),
            exit_code=result.code,
            stderr=_trim(result.stderr),
        )
        raise RemoteExecutionError(
            action,
            f"host {host}: {result.stderr or result.stdout or f'exit_{result.code}'}",
            host=host,
            exit_status=result.code,
        )


@lru_cache
def get_runner() -> RemoteRunner:
    return RemoteRunner(get_settings())


# --- block devices ---------------------------------------------------------


def lsblk_argv(device: str, column: str) -> list[str]:
    argv = ["lsblk", "--nodeps", "--noheadings"]
    if column == "SIZE":
        argv.append("--bytes")
    argv.extend(["--output", column, device])
    return argv


async def block_device_attribute(runner: RemoteRunner, host: str, device: str, column: str) -> str:
    out = await runner.run_checked(host, lsblk_argv(device, column), action=f"lsblk.{column.lower()}")
    lines = [line.strip() for line in out.splitlines() if line.strip()]
    return lines[0] if lines else ""


async def disk_uuid(runner: RemoteRunner, host: str, device: str) -> str:
    return await block_device_attribute(runner, host, device, "UUID")


async def disk_size(runner: RemoteRunner, host: str, device: str) -> str:
    return await block_device_attribute(runner, host, device, "SIZE")


async def disk_fstype(runner: RemoteRunner, host: str, device: str) -> str:
    return await block_device_attribute(runner, host, device, "FSTYPE")


async def randomize_disk_uuid(runner: RemoteRunner, host: str, device: str) -> None:
    await runner.run_checked(
        host,
        ["tune2fs", "-U", "random", device],
        action="disk.uuid.randomize",
        ignore=_NO_FILESYSTEM,
    )
    _logger.info("disk.uuid.randomize", "Assigned random filesystem UUID", host=host, device=device)


async def unmount(runner: RemoteRunner, host: str, mount_point: str) -> None:
    await runner.run_checked(host, ["umount", mount_point], action="disk.umount", ignore=_UMOUNT_IGNORED)


# --- containers ------------------------------------------------------------


async def container_health(runner: RemoteRunner, host: str, container_id: str) -> str:
    out = await runner.run_checked(
        host,
        [runner.container_runtime, "inspect", "--format", runner.settings.health_probe_format, container_id],
        action="container.health",
    )
    return out.strip().lower()


async def stop_container(runner: RemoteRunner, host: str, container_id: str) -> None:
    await runner.run_checked(host, [runner.container_runtime, "stop", container_id], action="container.stop")
    _logger.info("container.stop", "Stopped service container", host=host, container_id=container_id)


async def start_container(runner: RemoteRunner, host: str, container_id: str) -> None:
    await runner.run_checked(host, [runner.container_runtime, "start", container_id], action="container.start")
    _logger.info("container.start", "Started service container", host=host, container_id=container_id)
