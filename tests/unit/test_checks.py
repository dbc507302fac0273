"""Tests for services/checks.py: the pre-flight validation pipeline."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from chunkswap.errors import (
    ClusterUnhealthyError,
    DiskInUseError,
    DiskNotEmptyError,
    DiskTooSmallError,
    PreconditionError,
    RemoteExecutionError,
    SameDiskError,
)
from chunkswap.services.checks import (
    CheckClusterHealth,
    CheckDiskEmpty,
    CheckDiskSize,
    CheckDiskUsed,
    CheckSameDisk,
    Peer,
    UnmountOldDisk,
    replacement_checks,
    run_checks,
)

from conftest import OLD_SIZE


def _size_check(old_size: str = OLD_SIZE) -> CheckDiskSize:
    return CheckDiskSize(host="h1", device="/dev/sdc", old_device="/dev/sdb", old_size=old_size)


class TestDiskSize:
    async def test_equal_size_accepted(self, session, runner):
        runner.on("lsblk", "SIZE", "/dev/sdc", stdout="1000000000000")
        report = await run_checks(session, runner, [_size_check("1000000000000")])
        assert report.new_disk_size == "1000000000000"
        assert report.passed == ["disk_size"]

    async def test_larger_disk_accepted(self, session, runner):
        runner.on("lsblk", "SIZE", "/dev/sdc", stdout="2000000000000")
        report = await run_checks(session, runner, [_size_check()])
        assert report.new_disk_size == "2000000000000"

    async def test_smaller_disk_rejected(self, session, runner):
        runner.on("lsblk", "SIZE", "/dev/sdc", stdout="999999999999")
        with pytest.raises(DiskTooSmallError) as excinfo:
            await run_checks(session, runner, [_size_check("1000000000000")])
        assert "h1:/dev/sdc" in excinfo.value.detail

    async def test_unknown_old_size(self, session, runner):
        with pytest.raises(PreconditionError) as excinfo:
            await run_checks(session, runner, [_size_check("")])
        assert excinfo.value.code == "disk_size_unknown"

    async def test_lsblk_failure_is_remote_error(self, session, runner):
        runner.on("lsblk", "SIZE", "/dev/sdc", code=32, stderr="lsblk: /dev/sdc: not a block device")
        with pytest.raises(RemoteExecutionError):
            await run_checks(session, runner, [_size_check()])

    async def test_remote_failure_counts_as_rejected_check(self, session, runner):
        labels = {"check": "disk_size", "result": "reject"}
        before = REGISTRY.get_sample_value("chunkswap_replacement_checks_total", labels) or 0.0
        runner.on("lsblk", "SIZE", "/dev/sdc", code=32, stderr="lsblk: /dev/sdc: not a block device")
        with pytest.raises(RemoteExecutionError):
            await run_checks(session, runner, [_size_check()])
        assert REGISTRY.get_sample_value("chunkswap_replacement_checks_total", labels) == before + 1


class TestDiskIdentity:
    async def test_same_physical_disk_rejected(self, session, runner):
        runner.on("lsblk", "UUID", "/dev/sdc", stdout="A")
        check = CheckSameDisk(host="h1", device="/dev/sdc", old_disk_uri="fs:uuid//A")
        with pytest.raises(SameDiskError):
            await run_checks(session, runner, [check])

    async def test_different_disk_reports_uuid(self, session, runner):
        runner.on("lsblk", "UUID", "/dev/sdc", stdout="B")
        check = CheckSameDisk(host="h1", device="/dev/sdc", old_disk_uri="fs:uuid//A")
        report = await run_checks(session, runner, [check])
        assert report.new_disk_uuid == "B"

    async def test_blank_disk_is_not_the_old_one(self, session, runner):
        check = CheckSameDisk(host="h1", device="/dev/sdc", old_disk_uri="fs:uuid//A")
        report = await run_checks(session, runner, [check])
        assert report.new_disk_uuid == ""

    async def test_filesystem_rejected(self, session, runner):
        runner.on("lsblk", "FSTYPE", "/dev/sdc", stdout="ext4")
        with pytest.raises(DiskNotEmptyError):
            await run_checks(session, runner, [CheckDiskEmpty(host="h1", device="/dev/sdc")])


class TestDiskUsed:
    async def test_disk_of_another_chunkserver_rejected(self, cluster, runner):
        check = CheckDiskUsed(host="h1", device="/dev/sdd", chunkserver_id="cs-1")
        with pytest.raises(DiskInUseError) as excinfo:
            await run_checks(cluster, runner, [check])
        assert "cs-2" in excinfo.value.detail

    async def test_unknown_disk_accepted(self, cluster, runner):
        check = CheckDiskUsed(host="h1", device="/dev/sdc", chunkserver_id="cs-1")
        report = await run_checks(cluster, runner, [check])
        assert report.passed == ["disk_used"]


class TestClusterHealth:
    async def test_unhealthy_peer_aborts(self, session, runner):
        runner.on("{{.State.Health.Status}}", "ctr-2", stdout="healthy")
        runner.on("{{.State.Health.Status}}", "ctr-3", stdout="unhealthy")
        check = CheckClusterHealth(host="h1", peers=(Peer("cs-2", "ctr-2"), Peer("cs-3", "ctr-3")))
        with pytest.raises(ClusterUnhealthyError) as excinfo:
            await run_checks(session, runner, [check])
        assert "cs-3" in excinfo.value.detail

    async def test_unreachable_peers_warn_once(self, session, runner):
        runner.on("{{.State.Health.Status}}", "ctr-2", stdout="healthy")
        runner.on("{{.State.Health.Status}}", "ctr-3", code=255, stderr="connection refused")
        check = CheckClusterHealth(
            host="h1",
            peers=(Peer("cs-2", "ctr-2"), Peer("cs-3", "ctr-3"), Peer("cs-4", "")),
        )
        report = await run_checks(session, runner, [check])
        assert report.unreachable_peers == ["cs-3", "cs-4"]
        assert len(report.warnings) == 1

    async def test_unhealthy_wins_over_unreachable(self, session, runner):
        runner.on("{{.State.Health.Status}}", "ctr-2", stdout="Unhealthy")
        runner.on("{{.State.Health.Status}}", "ctr-3", code=255)
        check = CheckClusterHealth(host="h1", peers=(Peer("cs-2", "ctr-2"), Peer("cs-3", "ctr-3")))
        with pytest.raises(ClusterUnhealthyError):
            await run_checks(session, runner, [check])

    async def test_no_peers(self, session, runner):
        report = await run_checks(session, runner, [CheckClusterHealth(host="h1", peers=())])
        assert report.warnings == []


class TestUnmount:
    async def test_not_mounted_is_fine(self, session, runner):
        runner.on("umount", code=32, stderr="umount: /data/chunkserver0: not mounted.")
        report = await run_checks(session, runner, [UnmountOldDisk(host="h1", mount_point="/data/chunkserver0")])
        assert report.passed == ["unmount_old_disk"]

    async def test_busy_mount_fails(self, session, runner):
        runner.on("umount", code=32, stderr="umount: /data/chunkserver0: target is busy.")
        with pytest.raises(RemoteExecutionError):
            await run_checks(session, runner, [UnmountOldDisk(host="h1", mount_point="/data/chunkserver0")])


class TestPipeline:
    async def test_order_and_short_circuit(self, session, runner):
        runner.on("lsblk", "SIZE", "/dev/sdc", stdout="1")
        checks = replacement_checks(
            chunkserver_id="cs-1",
            host="h1",
            device="/dev/sdc",
            old_device="/dev/sdb",
            old_size=OLD_SIZE,
            old_disk_uri="fs:uuid//A",
            old_mount_point="/data/chunkserver0",
            peers=[],
        )
        assert [check.name for check in checks] == [
            "cluster_health",
            "disk_size",
            "disk_used",
            "same_disk",
            "disk_empty",
            "unmount_old_disk",
        ]
        with pytest.raises(DiskTooSmallError):
            await run_checks(session, runner, checks)
        assert not runner.ran("umount")
