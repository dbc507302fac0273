"""Tests for services/formatter.py: the chunk pool formatter container."""

from __future__ import annotations

import pytest

from chunkswap.errors import RemoteExecutionError
from chunkswap.services.formatter import format_argv, format_container_name, format_status, start_format


class TestNaming:
    def test_container_name(self):
        assert format_container_name("chunkswap-format", "H1.example", "/dev/sdc") == "chunkswap-format-h1-example-sdc"

    def test_argv_allocates_by_percent(self):
        argv = format_argv(
            image="curvebs:v1.2",
            command="curve_format",
            name="fmt",
            mount="/data/chunkserver0/",
            percent=90,
            runtime="docker",
        )
        assert argv[:5] == ["docker", "run", "-d", "--name", "fmt"]
        assert "-filePoolDir=/data/chunkserver0/chunkfilepool" in argv
        assert argv[-1] == "-allocatePercent=90"


class TestStartFormat:
    async def test_runs_in_order(self, runner):
        name = await start_format(
            runner,
            host="h1",
            device="/dev/sdc",
            mount="/data/chunkserver0",
            percent=90,
            image="curvebs:v1.2",
        )
        commands = [argv[:2] for _, argv in runner.calls]
        assert commands == [
            ("mkfs.ext4", "-F"),
            ("mkdir", "-p"),
            ("mount", "/dev/sdc"),
            ("docker", "rm"),
            ("docker", "run"),
        ]
        assert name == "chunkswap-format-h1-sdc"

    async def test_mkfs_failure_stops_early(self, runner):
        runner.on("mkfs.ext4", code=1, stderr="device busy")
        with pytest.raises(RemoteExecutionError):
            await start_format(
                runner,
                host="h1",
                device="/dev/sdc",
                mount="/data/chunkserver0",
                percent=90,
                image="curvebs:v1.2",
            )
        assert not runner.ran("run")


class TestFormatStatus:
    async def test_running(self, runner):
        runner.on("df", stdout="Used 1G-blocks\n  45 100")
        runner.on("inspect", stdout="running 0")
        status = await format_status(runner, host="h1", device="/dev/sdc", mount="/data/chunkserver0", percent=90)
        assert (status.formatted, status.finished) == ("45/90", False)

    async def test_finished(self, runner):
        runner.on("df", stdout="Used 1G-blocks\n  90 100")
        runner.on("inspect", stdout="exited 0")
        status = await format_status(runner, host="h1", device="/dev/sdc", mount="/data/chunkserver0", percent=90)
        assert status.finished is True

    async def test_unparseable_df(self, runner):
        runner.on("df", stdout="garbage")
        runner.on("inspect", stdout="running 0")
        status = await format_status(runner, host="h1", device="/dev/sdc", mount="/data/chunkserver0", percent=90)
        assert status.formatted == "0/0"

    async def test_failed_formatter(self, runner):
        runner.on("inspect", stdout="exited 137")
        with pytest.raises(RemoteExecutionError) as excinfo:
            await format_status(runner, host="h1", device="/dev/sdc", mount="/data/chunkserver0", percent=90)
        assert excinfo.value.code == "format.failed"
