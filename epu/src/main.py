"""
Recording daemon entry point.

Loads :class:`~epu.src.config.ServerSettings`, sets up structured JSON
logging, builds the :class:`~epu.src.engine.Engine` for the persisted room
(recovering an interrupted archive commit on the way) and runs the
:class:`~epu.src.poller.PollingLoop` until SIGTERM/SIGINT.

Logs go to stderr as one JSON object per line. When ``EPU_LOG_DIR`` is set
they are also written to ``server.log`` in that directory, rotated daily.

CHANGELOG:
- 2026-10-19: Add daily rotated log file
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from epu.src.config import ServerSettings

logger = logging.getLogger(__name__)

LOG_FILENAME = "server.log"
_LOG_BACKUP_DAYS = 30


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> None:
    """Configure structured JSON logging for the daemon.

    Args:
        level: Root log level name.
        log_dir: If given, also log to a daily rotated ``server.log`` there.
    """
    formatter = JsonFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                log_dir / LOG_FILENAME,
                when="midnight",
                backupCount=_LOG_BACKUP_DAYS,
                encoding="utf-8",
            )
        )

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: ServerSettings) -> None:
    """Log a config summary at startup.

    Settings carry no secrets; session credentials only ever arrive at
    runtime and are masked by their own ``repr``.
    """
    logger.info(
        "Recording daemon starting with config: "
        "data_dir=%s, config_dir=%s, log_dir=%s, "
        "poll_interval_s=%s, query_timeout_s=%s, resolve_timeout_s=%s, "
        "epay_base_url=%s, log_level=%s",
        settings.data_dir,
        settings.config_dir,
        settings.log_dir,
        settings.poll_interval_s,
        settings.query_timeout_s,
        settings.resolve_timeout_s,
        settings.epay_base_url,
        settings.log_level,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build the engine, run the poll loop.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from epu.src.config import ServerSettings
    from epu.src.engine import Engine
    from epu.src.poller import PollingLoop

    settings = ServerSettings()
    configure_logging(settings.log_level, settings.log_dir)
    log_config_summary(settings)

    engine = Engine.from_settings(settings)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    polling = PollingLoop(
        state=engine.state,
        source=engine.source,
        poll_interval_s=settings.poll_interval_s,
        query_timeout_s=settings.query_timeout_s,
    )
    await polling.run(shutdown_event)
    logger.info("Shutdown complete")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the recording daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
