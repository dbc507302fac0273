"""Shared fixtures: a throwaway SQLite database, a scripted remote runner and a seeded cluster.

The seeded cluster has one host ``h1`` carrying two chunkservers:

* ``cs-1`` on ``/dev/sdb`` (uuid ``A``) mounted at ``/data/chunkserver0``
* ``cs-2`` on ``/dev/sdd`` (uuid ``D``) mounted at ``/data/chunkserver1``

``/dev/sdc`` is a blank spare disk with uuid ``B`` and the same size as ``/dev/sdb``.
"""

from __future__ import annotations

import os

os.environ.setdefault("CHUNKSWAP_LOG_FILE", "")

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Sequence

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chunkswap.config import Settings
from chunkswap.database import create_schema
from chunkswap.services.disks import commit_disks, probe_disks
from chunkswap.services.remote import CommandResult, RemoteRunner
from chunkswap.services.service_registry import register_service

OLD_SIZE = "1000000000000"

DISKS_YAML = """\
global:
  format_percent: 90
  container_image: opencurvedocker/curvebs:v1.2
  host:
  - h1
disk:
- device: /dev/sdb
  mount: /data/chunkserver0
- device: /dev/sdd
  mount: /data/chunkserver1
"""


@dataclass(frozen=True)
class _Rule:
    tokens: tuple[str, ...]
    host: Optional[str]
    result: CommandResult
    raises: Optional[BaseException]

    def matches(self, host: str, argv: tuple[str, ...]) -> bool:
        if self.host is not None and self.host != host:
            return False
        return all(token in argv for token in self.tokens)


class FakeRunner(RemoteRunner):
    """Answers remote commands from scripted rules; the latest matching rule wins.

    Commands without a matching rule succeed with empty output.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self._rules: list[_Rule] = []

    def on(
        self,
        *tokens: str,
        stdout: str = "",
        stderr: str = "",
        code: int = 0,
        host: Optional[str] = None,
        raises: Optional[BaseException] = None,
    ) -> "FakeRunner":
        self._rules.append(_Rule(tokens, host, CommandResult(code, stdout, stderr), raises))
        return self

    def ran(self, *tokens: str) -> bool:
        return any(all(token in argv for token in tokens) for _, argv in self.calls)

    async def run(self, host: str, argv: Sequence[str], *, action: str) -> CommandResult:
        command = tuple(argv)
        self.calls.append((host, command))
        for rule in reversed(self._rules):
            if rule.matches(host, command):
                if rule.raises is not None:
                    raise rule.raises
                return rule.result
        return CommandResult(0, "", "")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/chunkswap.db",
        log_file="",
        format_poll_interval_seconds=0.01,
        format_wait_timeout_seconds=2,
    )


@pytest.fixture
def runner(settings: Settings) -> FakeRunner:
    return FakeRunner(settings)


@pytest.fixture
async def session(settings: Settings) -> AsyncIterator[AsyncSession]:
    engine = create_async_engine(settings.database_url)
    await create_schema(engine)
    sessionmaker = async_sessionmaker(bind=engine, expire_on_commit=False)
    async with sessionmaker() as db:
        yield db
    await engine.dispose()


def script_cluster(runner: FakeRunner) -> None:
    runner.on("lsblk", "UUID", "/dev/sdb", stdout="A")
    runner.on("lsblk", "SIZE", "/dev/sdb", stdout=OLD_SIZE)
    runner.on("lsblk", "UUID", "/dev/sdd", stdout="D")
    runner.on("lsblk", "SIZE", "/dev/sdd", stdout=OLD_SIZE)
    runner.on("lsblk", "UUID", "/dev/sdc", stdout="B")
    runner.on("lsblk", "SIZE", "/dev/sdc", stdout=OLD_SIZE)
    runner.on("{{.State.Health.Status}}", "ctr-2", stdout="healthy")
    runner.on("df", stdout="Used 1G-blocks\n  45 100")
    runner.on("{{.State.Status}} {{.State.ExitCode}}", stdout="running 0")


@pytest.fixture
async def cluster(session: AsyncSession, runner: FakeRunner) -> AsyncSession:
    await commit_disks(session, DISKS_YAML)
    await register_service(session, chunkserver_id="cs-1", host="h1", container_id="ctr-1", device="/dev/sdb")
    await register_service(session, chunkserver_id="cs-2", host="h1", container_id="ctr-2", device="/dev/sdd")
    script_cluster(runner)
    await probe_disks(session, runner)
    runner.calls.clear()
    return session
