"""
Server configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Every variable carries the ``EPU_`` prefix (``EPU_DATA_DIR``,
``EPU_POLL_INTERVAL_S``, ...) and may also come from a ``.env`` file.

Also defines the on-disk layout constants shared by the record log, the
archive store and the room state, plus the single filename validator used
for archive names and room directory names.

CHANGELOG:
- 2026-10-19: Add log_dir and log_level validation
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# On-disk layout
# ---------------------------------------------------------------------------

PKG_NAME = "ecnu-power-usage"

RECORDS_FILENAME = "records.csv"
"""Active record log inside a room directory."""

ARCHIVE_DIRNAME = "archives"
DELETED_DIRNAME = "deleted"

ROOM_UNKNOWN_DIRNAME = "unknown"
"""Room directory used while no room is configured."""

ROOM_CONFIG_FILENAME = "room.json"
"""Persisted room identity inside the config directory."""

ARCHIVE_INTENT_FILENAME = ".archive-intent.json"
"""Write-ahead marker present only while an archive commit is in flight."""

ARCHIVE_DATA_SUFFIX = ".csv"
ARCHIVE_META_SUFFIX = ".json"

_MAX_FILENAME_LEN = 255
_FORBIDDEN_FILENAME_CHARS = frozenset('/\\*?"<>|')


def is_sanitized_filename(name: str) -> bool:
    """Return True if *name* is safe to use as a single path segment.

    Rejects empty names, ``.``/``..``, hidden names, path separators,
    characters that are invalid on common filesystems and control characters.
    """
    if not name or len(name) > _MAX_FILENAME_LEN:
        return False
    if name.startswith(".") or name != name.strip():
        return False
    return not any(c in _FORBIDDEN_FILENAME_CHARS or not c.isprintable() for c in name)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class ServerSettings(BaseSettings):
    """Recording daemon configuration.

    Attributes:
        data_dir: Root directory holding one sub-directory per room.
        config_dir: Directory holding the persisted room identity.
        log_dir: Directory for the daily rotated ``server.log``. Logs go to
            stderr only when unset.
        poll_interval_s: Seconds between two degree samples.
        query_timeout_s: Upper bound for a single degree query.
        resolve_timeout_s: Upper bound for a full room info resolution.
        epay_base_url: Base URL of the e-pay service (must be HTTPS).
        log_level: Root log level name.
    """

    model_config = SettingsConfigDict(
        env_prefix="EPU_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    data_dir: Path = Path("~/.local/share") / PKG_NAME
    config_dir: Path = Path("~/.config") / PKG_NAME
    log_dir: Path | None = None
    poll_interval_s: int = 10
    query_timeout_s: float = 15.0
    resolve_timeout_s: float = 30.0
    epay_base_url: str = "https://epay.ecnu.edu.cn"
    log_level: str = "INFO"

    @field_validator("data_dir", "config_dir", "log_dir")
    @classmethod
    def expand_home(cls, v: Path | None) -> Path | None:
        """Expand a leading ``~`` so paths may be written relative to home."""
        if v is None:
            return None
        return v.expanduser()

    @field_validator("poll_interval_s")
    @classmethod
    def poll_interval_must_be_positive(cls, v: int) -> int:
        """Validate that the poll interval is at least one second."""
        if v < 1:
            raise ValueError("EPU_POLL_INTERVAL_S must be >= 1")
        return v

    @field_validator("query_timeout_s", "resolve_timeout_s")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be > 0 seconds")
        return v

    @field_validator("epay_base_url")
    @classmethod
    def epay_base_url_must_be_https(cls, v: str) -> str:
        """Validate that the e-pay base URL uses HTTPS.

        Session cookies are attached to every request, so plain HTTP is
        rejected at startup.
        """
        if not v.lower().startswith("https://"):
            raise ValueError(f"EPU_EPAY_BASE_URL must use HTTPS (got: '{v[:30]}')")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"EPU_LOG_LEVEL must be a logging level name (got: '{v}')")
        return level

    def room_config_path(self) -> Path:
        """Return the path of the persisted room identity file."""
        return self.config_dir / ROOM_CONFIG_FILENAME
