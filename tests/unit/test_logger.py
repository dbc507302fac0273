"""Tests for logger.py: operation correlation and record formatting."""

from __future__ import annotations

import logging

import pytest

from chunkswap.errors import SameDiskError
from chunkswap.logger import _ChunkswapFormatter, get_logger


class _Collector(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def collected():
    root = logging.getLogger("chunkswap")
    handler = _Collector()
    previous = root.level
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    yield handler.records
    root.removeHandler(handler)
    root.setLevel(previous)


class TestOperation:
    async def test_nested_records_share_op_id(self, collected):
        outer = get_logger("services.playbook")
        inner = get_logger("remote")
        async with outer.operation("replace.disk", "Replacing disk", chunkserver_id="cs-1") as op:
            inner.info("remote.command.ok", "Remote command succeeded")
            op.step("checks.pass", "Validated new disk")
        inner.info("after", "Outside any operation")

        op_ids = [record.fields.get("op_id") for record in collected]
        assert op_ids[:4] == [op.op_id] * 4
        assert op_ids[4] is None

    def test_domain_failure_logged_without_traceback(self, collected):
        logger = get_logger("services.checks")
        with pytest.raises(SameDiskError):
            with logger.operation("checks.run", "Running checks"):
                raise SameDiskError("same_disk", "disk h1:/dev/sdc is the disk being replaced")
        failure = collected[-1]
        assert failure.levelno == logging.WARNING
        assert failure.exc_info is None
        assert failure.fields["code"] == "same_disk"


class TestFormatter:
    def _record(self, event: str, message: str, **fields) -> logging.LogRecord:
        record = logging.LogRecord("chunkswap", logging.INFO, __file__, 1, message, None, None)
        record.category = "services.playbook"
        record.event = event
        record.fields = fields
        return record

    def test_subject_and_fields(self):
        line = _ChunkswapFormatter().format(
            self._record("replace.commit", "Committed", chunkserver_id="cs-1", host="h1", device="/dev/sdc", steps=4)
        )
        assert line.split(" | ")[2:] == ["services.playbook", "(*) replace.commit", "cs-1@h1:/dev/sdc", "Committed", "steps=4"]

    def test_step_name(self):
        line = _ChunkswapFormatter().format(self._record("operation.step", "Stopped", step="service.stop", op_id="ab12"))
        assert "op=ab12 | (*) >> service.stop | Stopped" in line
