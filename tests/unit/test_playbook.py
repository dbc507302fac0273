"""Tests for services/playbook.py: replace, status and stop end to end against a fake host."""

from __future__ import annotations

import pytest

from chunkswap.errors import (
    ConcurrencyError,
    NotFoundError,
    PreconditionError,
    RemoteExecutionError,
    SameDiskError,
)
from chunkswap.models.disk_replacement import STATUS_DONE, STATUS_RUNNING
from chunkswap.services.cluster_settings import get_disks_document
from chunkswap.services.disks import commit_disks, get_disk, list_disks, probe_disks
from chunkswap.services.locks import TOPOLOGY_LOCK, acquire_lock
from chunkswap.services.playbook import Step, replace_disk, replacement_status, stop_replacement
from chunkswap.services.replacements import create_replacement, list_replacements
from chunkswap.services.topology import load_document, parse_disks

from conftest import DISKS_YAML, OLD_SIZE


async def _disk_state(session) -> list[tuple[str, str, str, str, str, str]]:
    return [
        (disk.host, disk.device, disk.mount_point, disk.chunkserver_id, disk.uri, disk.size)
        for disk in await list_disks(session)
    ]


class TestReplaceDisk:
    async def test_end_to_end(self, cluster, runner):
        result = await replace_disk(cluster, "cs-1", "/dev/sdc", runner)

        assert result.steps == [
            Step.CHECK_DISK,
            Step.STOP_SERVICE,
            Step.FORMAT_DISK,
            Step.REPLACE_DISK,
            Step.TRACK_PROGRESS,
        ]
        assert (result.status, result.progress) == (STATUS_RUNNING, 50)
        assert result.resumed is False

        new_disk = await get_disk(cluster, "h1", "/dev/sdc")
        assert new_disk.chunkserver_id == "cs-1"
        assert new_disk.uri == "fs:uuid//B"
        assert new_disk.size == OLD_SIZE
        assert new_disk.mount_point == "/data/chunkserver0"
        assert new_disk.container_image == "opencurvedocker/curvebs:v1.2"
        assert await get_disk(cluster, "h1", "/dev/sdb") is None

        document = load_document(await get_disks_document(cluster))
        assert document.find("/dev/sdb")["hosts_exclude"] == ["h1"]
        assert document.find("/dev/sdc")["hosts_only"] == ["h1"]
        provisioned = {dc.device: dc.provisioned_hosts() for dc in parse_disks(await get_disks_document(cluster))}
        assert provisioned["/dev/sdc"] == ["h1"]

        assert runner.ran("docker", "stop", "ctr-1")
        assert runner.ran("mkfs.ext4", "-F", "/dev/sdc")
        assert runner.ran("mount", "/dev/sdc", "/data/chunkserver0")
        assert not runner.ran("docker", "start", "ctr-1")

    async def test_status_reports_completion(self, cluster, runner):
        await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        runner.on("{{.State.Status}} {{.State.ExitCode}}", stdout="exited 0")

        tickets = await replacement_status(cluster, runner)
        assert [(t.chunkserver_id, t.status, t.progress) for t in tickets] == [("cs-1", STATUS_DONE, 100)]

        # A finished ticket is never rewound by later observations.
        runner.on("{{.State.Status}} {{.State.ExitCode}}", stdout="running 0")
        tickets = await replacement_status(cluster, runner, "cs-1")
        assert tickets[0].status == STATUS_DONE

    async def test_status_survives_unreadable_progress(self, cluster, runner):
        await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        runner.on("df", code=255, stderr="ssh: connect to host h1: Connection refused")
        tickets = await replacement_status(cluster, runner)
        assert (tickets[0].status, tickets[0].progress) == (STATUS_RUNNING, 50)

    async def test_wait_and_restart(self, cluster, runner):
        runner.on("{{.State.Status}} {{.State.ExitCode}}", stdout="exited 0")
        result = await replace_disk(cluster, "cs-1", "/dev/sdc", runner, restart=True, wait=True)
        assert result.status == STATUS_DONE
        assert result.steps[-1] is Step.START_SERVICE
        assert runner.ran("docker", "start", "ctr-1")

    async def test_restart_waits_for_format(self, cluster, runner):
        result = await replace_disk(cluster, "cs-1", "/dev/sdc", runner, restart=True)
        assert result.status == STATUS_RUNNING
        assert not runner.ran("docker", "start", "ctr-1")
        assert any("format still running" in warning for warning in result.warnings)

    async def test_failed_format_is_reported(self, cluster, runner):
        runner.on("{{.State.Status}} {{.State.ExitCode}}", stdout="exited 1")
        with pytest.raises(RemoteExecutionError) as excinfo:
            await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        assert excinfo.value.code == "format.failed"

    async def test_rerun_resumes_committed_ticket(self, cluster, runner):
        first = await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        runner.on("{{.State.Status}} {{.State.ExitCode}}", stdout="exited 0")
        again = await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        assert again.resumed is True
        assert again.ticket.id == first.ticket.id
        assert again.steps == [Step.TRACK_PROGRESS]
        assert again.status == STATUS_DONE


class TestReplaceRejections:
    async def test_same_physical_disk(self, cluster, runner):
        before = await _disk_state(cluster)
        document = await get_disks_document(cluster)
        runner.on("lsblk", "UUID", "/dev/sdc", stdout="A")

        with pytest.raises(SameDiskError):
            await replace_disk(cluster, "cs-1", "/dev/sdc", runner)

        assert await list_replacements(cluster) == []
        assert await _disk_state(cluster) == before
        assert await get_disks_document(cluster) == document
        assert not runner.ran("docker", "stop", "ctr-1")
        assert not runner.ran("mkfs.ext4")

    async def test_other_service_in_flight(self, cluster, runner):
        create_replacement(
            cluster,
            chunkserver_id="cs-2",
            host="h1",
            old_device="/dev/sdd",
            device="/dev/sde",
            mount_point="/data/chunkserver1",
            old_disk_uri="fs:uuid//D",
            old_disk_size=OLD_SIZE,
        )
        await cluster.commit()

        with pytest.raises(ConcurrencyError) as excinfo:
            await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        assert excinfo.value.code == "replacement_in_flight"
        assert [t.chunkserver_id for t in await list_replacements(cluster)] == ["cs-2"]

    async def test_same_service_other_device(self, cluster, runner):
        await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        with pytest.raises(ConcurrencyError) as excinfo:
            await replace_disk(cluster, "cs-1", "/dev/sde", runner)
        assert excinfo.value.code == "replacement_exists"

    async def test_topology_locked(self, cluster, runner):
        await acquire_lock(cluster, TOPOLOGY_LOCK, purpose="disks commit")
        with pytest.raises(ConcurrencyError) as excinfo:
            await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        assert excinfo.value.code == "operation_locked"

    async def test_no_disks_committed(self, session, runner):
        with pytest.raises(PreconditionError) as excinfo:
            await replace_disk(session, "cs-1", "/dev/sdc", runner)
        assert excinfo.value.code == "empty_disks"

    @pytest.mark.parametrize(("chunkserver_id", "device"), [("", "/dev/sdc"), ("cs-1", "  ")])
    async def test_missing_input(self, cluster, runner, chunkserver_id, device):
        with pytest.raises(PreconditionError):
            await replace_disk(cluster, chunkserver_id, device, runner)

    async def test_unknown_service(self, cluster, runner):
        with pytest.raises(NotFoundError) as excinfo:
            await replace_disk(cluster, "cs-404", "/dev/sdc", runner)
        assert excinfo.value.code == "service_not_found"

    async def test_same_device(self, cluster, runner):
        with pytest.raises(PreconditionError) as excinfo:
            await replace_disk(cluster, "cs-1", "/dev/sdb", runner)
        assert excinfo.value.code == "same_device"

    async def test_spare_provisioned_at_another_mount(self, cluster, runner):
        await commit_disks(cluster, DISKS_YAML + "- device: /dev/sdc\n  mount: /data/chunkserver2\n")
        await probe_disks(cluster, runner)
        before = await _disk_state(cluster)
        document = await get_disks_document(cluster)

        with pytest.raises(PreconditionError) as excinfo:
            await replace_disk(cluster, "cs-1", "/dev/sdc", runner)

        assert excinfo.value.code == "mount_point_mismatch"
        assert "/data/chunkserver2" in excinfo.value.detail
        assert await list_replacements(cluster) == []
        assert await _disk_state(cluster) == before
        assert await get_disks_document(cluster) == document
        assert not runner.ran("mkfs.ext4")


class TestStopReplacement:
    async def test_stop_restores_state(self, cluster, runner):
        before = await _disk_state(cluster)
        await replace_disk(cluster, "cs-1", "/dev/sdc", runner)

        result = await stop_replacement(cluster, "cs-1", runner)

        assert (result.stopped, result.reverted) == (True, True)
        assert await list_replacements(cluster) == []
        assert await _disk_state(cluster) == before
        assert await get_disk(cluster, "h1", "/dev/sdc") is None
        assert load_document(await get_disks_document(cluster)) == load_document(DISKS_YAML)
        assert runner.ran("tune2fs", "-U", "random", "/dev/sdc")

    async def test_stop_before_commit(self, cluster, runner):
        create_replacement(
            cluster,
            chunkserver_id="cs-1",
            host="h1",
            old_device="/dev/sdb",
            device="/dev/sdc",
            mount_point="/data/chunkserver0",
            old_disk_uri="fs:uuid//A",
            old_disk_size=OLD_SIZE,
        )
        await cluster.commit()
        before = await _disk_state(cluster)

        result = await stop_replacement(cluster, "cs-1", runner)

        assert (result.stopped, result.reverted) == (True, False)
        assert await _disk_state(cluster) == before
        assert await list_replacements(cluster) == []

    async def test_stop_without_ticket(self, cluster, runner):
        result = await stop_replacement(cluster, "cs-1", runner)
        assert result.stopped is False
        assert "no disk replacement" in result.message
        assert runner.calls == []

    async def test_replace_again_after_stop(self, cluster, runner):
        await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        await stop_replacement(cluster, "cs-1", runner)
        result = await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        assert result.resumed is False
        assert (await get_disk(cluster, "h1", "/dev/sdc")).chunkserver_id == "cs-1"

    async def test_stop_returns_preprovisioned_disk(self, cluster, runner):
        provisioned = (
            "global:\n  format_percent: 90\n  container_image: opencurvedocker/curvebs:v1.2\n  host: [h1]\n"
            "disk:\n"
            "- device: /dev/sdc\n  mount: /data/chunkserver0\n"
            "- device: /dev/sdd\n  mount: /data/chunkserver1\n"
        )
        committed = await commit_disks(cluster, provisioned)
        assert committed.retained == ["h1:/dev/sdb"]
        runner.on("lsblk", "SIZE", "/dev/sdc", stdout="2000000000000")
        await probe_disks(cluster, runner)
        before = await _disk_state(cluster)

        await replace_disk(cluster, "cs-1", "/dev/sdc", runner)
        assert (await get_disk(cluster, "h1", "/dev/sdc")).chunkserver_id == "cs-1"
        assert await get_disk(cluster, "h1", "/dev/sdb") is None

        result = await stop_replacement(cluster, "cs-1", runner)

        assert result.reverted is True
        assert await list_replacements(cluster) == []
        old_disk = await get_disk(cluster, "h1", "/dev/sdb")
        assert (old_disk.mount_point, old_disk.chunkserver_id) == ("/data/chunkserver0", "cs-1")
        assert (old_disk.uri, old_disk.size) == ("fs:uuid//A", OLD_SIZE)
        spare = await get_disk(cluster, "h1", "/dev/sdc")
        assert (spare.mount_point, spare.chunkserver_id) == ("/data/chunkserver0", "-")
        assert (spare.size, spare.uri) == ("2000000000000", "")
        assert load_document(await get_disks_document(cluster)) == load_document(provisioned)
        after = [row for row in await _disk_state(cluster) if row[1] != "/dev/sdc"]
        assert after == [row for row in before if row[1] != "/dev/sdc"]
