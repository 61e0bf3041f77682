"""
Unit tests for the daemon entry point.

Tests verify:
- Log records are rendered as one JSON object per line.
- configure_logging() adds a rotated file handler when log_dir is set.
- Startup logs a config summary.
- async_main() builds the engine and stops on the shutdown signal.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import sys
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from epu.src.config import ServerSettings
from epu.src.main import JsonFormatter, async_main, configure_logging, log_config_summary


@pytest.fixture()
def _restore_root_logger() -> Iterator[None]:
    """Drop the JSON handlers configure_logging() installs on the root logger."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, JsonFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


class TestJsonFormatter:
    """Structured log lines."""

    def test_format_fields(self) -> None:
        record = logging.LogRecord(
            "epu.src.poller", logging.INFO, __file__, 1, "Recorded degree %s", (33.63,), None
        )
        entry = json.loads(JsonFormatter().format(record))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "epu.src.poller"
        assert entry["msg"] == "Recorded degree 33.63"
        assert "ts" in entry
        assert "exception" not in entry

    def test_format_exception(self) -> None:
        try:
            raise ValueError("bad line")
        except ValueError:
            record = logging.LogRecord(
                "epu", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        entry = json.loads(JsonFormatter().format(record))
        assert "ValueError: bad line" in entry["exception"]


@pytest.mark.usefixtures("_restore_root_logger")
class TestConfigureLogging:
    """Root logger setup."""

    def test_stderr_only(self) -> None:
        configure_logging("WARNING")
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_rotating_file(self, tmp_path: Path) -> None:
        log_dir = tmp_path / "logs"
        configure_logging("INFO", log_dir)

        root = logging.getLogger()
        file_handlers = [
            h for h in root.handlers if isinstance(h, logging.handlers.TimedRotatingFileHandler)
        ]
        assert len(file_handlers) == 1

        logging.getLogger("epu.test").info("hello file")
        file_handlers[0].flush()
        line = (log_dir / "server.log").read_text(encoding="utf-8").strip().splitlines()[-1]
        assert json.loads(line)["msg"] == "hello file"


class TestLogConfigSummary:
    """Startup config logging."""

    def test_summary_contains_settings(
        self, caplog: pytest.LogCaptureFixture, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("EPU_DATA_DIR", str(tmp_path / "data"))
        settings = ServerSettings()

        with caplog.at_level(logging.INFO, logger="epu.src.main"):
            log_config_summary(settings)

        assert str(tmp_path / "data") in caplog.text
        assert "poll_interval_s=10" in caplog.text
        assert "https://epay.ecnu.edu.cn" in caplog.text


@pytest.mark.usefixtures("_restore_root_logger")
class TestAsyncMain:
    """async_main() runs until the shutdown event is set."""

    @pytest.mark.asyncio
    async def test_runs_until_shutdown(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("EPU_DATA_DIR", str(tmp_path / "data"))
        monkeypatch.setenv("EPU_CONFIG_DIR", str(tmp_path / "config"))

        async def fake_run(self: object, shutdown_event: asyncio.Event) -> None:
            assert not shutdown_event.is_set()

        loop = asyncio.get_running_loop()
        with (
            patch("epu.src.poller.PollingLoop.run", fake_run),
            patch.object(loop, "add_signal_handler"),
        ):
            await async_main()

        assert (tmp_path / "data" / "unknown" / "records.csv").exists()
