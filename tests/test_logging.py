"""Tests for structured logging."""

import json
import logging

import pytest

from luksvault.core.errors import WrongPassphrase
from luksvault.core.logging import (
    HumanFormatter,
    StructuredFormatter,
    get_logger,
    log_context,
    log_operation,
    mask_sensitive,
)


def _record(logger_name: str = "luksvault.test", **fields) -> logging.LogRecord:
    record = logging.LogRecord(logger_name, logging.INFO, __file__, 1, "Unlocking volume", (), None)
    if fields:
        record.extra_fields = fields
    return record


class TestMasking:
    """Test sensitive field masking."""

    def test_mask_sensitive(self):
        """Test passphrases and key material are redacted, nested too."""
        masked = mask_sensitive({
            "passphrase": "hunter2",
            "slot": 0,
            "nested": {"raw_key": "00ff", "device": "/dev/sda2"},
        })

        assert masked["passphrase"] == "[REDACTED]"
        assert masked["slot"] == 0
        assert masked["nested"] == {"raw_key": "[REDACTED]", "device": "/dev/sda2"}


class TestFormatters:
    """Test JSON and human output."""

    def test_structured_formatter_includes_context(self):
        """Test context variables and fields appear in JSON output."""
        with log_context(session_id="abc123", device_id="/dev/sda2"):
            line = StructuredFormatter().format(_record(slot=1, passphrase="secret"))

        entry = json.loads(line)
        assert entry["message"] == "Unlocking volume"
        assert entry["session_id"] == "abc123"
        assert entry["device_id"] == "/dev/sda2"
        assert entry["slot"] == 1
        assert entry["passphrase"] == "[REDACTED]"

    def test_context_reset(self):
        """Test context is cleared after the block."""
        with log_context(device_id="/dev/sda2"):
            pass

        entry = json.loads(StructuredFormatter().format(_record()))
        assert "device_id" not in entry

    def test_human_formatter(self):
        """Test the console format masks fields too."""
        line = HumanFormatter().format(_record(passphrase="secret", slot=2))

        assert "Unlocking volume" in line
        assert "slot=2" in line
        assert "secret" not in line


class TestStructuredLogger:
    """Test keyword fields and the timing decorator."""

    def test_keyword_fields(self, caplog):
        """Test keyword arguments become extra_fields."""
        logger = get_logger("luksvault.test.fields")

        with caplog.at_level(logging.INFO, logger="luksvault.test.fields"):
            logger.info("Volume unlocked", slot=3)

        assert caplog.records[0].extra_fields == {"slot": 3}

    @pytest.mark.asyncio
    async def test_log_operation_success(self, caplog):
        """Test completed operations are logged with a duration."""
        @log_operation("check")
        async def check():
            return 42

        with caplog.at_level(logging.INFO):
            assert await check() == 42

        record = next(r for r in caplog.records if r.getMessage() == "check completed")
        assert "duration_ms" in record.extra_fields

    @pytest.mark.asyncio
    async def test_log_operation_failure(self, caplog):
        """Test failures are logged with their kind and re-raised."""
        @log_operation("unlock")
        async def unlock():
            raise WrongPassphrase()

        with caplog.at_level(logging.INFO):
            with pytest.raises(WrongPassphrase):
                await unlock()

        record = next(r for r in caplog.records if r.getMessage() == "unlock failed")
        assert record.extra_fields["error_kind"] == "WrongPassphrase"
