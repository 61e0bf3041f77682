"""
Shared test fixtures for the recording daemon tests.

All ``EPU_*`` env vars are cleaned before each test and the working
directory is moved to ``tmp_path`` so no ``.env`` file is picked up by
Pydantic BaseSettings.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

import pytest
from epu.src.models import Credentials, RoomIdentity, Sample
from epu.src.records import RecordLog, parse_samples

# All ServerSettings environment variable names, used for cleanup.
_ALL_EPU_ENV_VARS = (
    "EPU_DATA_DIR",
    "EPU_CONFIG_DIR",
    "EPU_LOG_DIR",
    "EPU_POLL_INTERVAL_S",
    "EPU_QUERY_TIMEOUT_S",
    "EPU_RESOLVE_TIMEOUT_S",
    "EPU_EPAY_BASE_URL",
    "EPU_LOG_LEVEL",
)

# Twenty hourly-ish samples taken from a real dormitory log.
SAMPLE_LOG = """\
2026-01-24T15:39:32.132936+08:00,33.63
2026-01-24T17:06:32.132936+08:00,33.96
2026-01-24T18:33:32.132936+08:00,34.45
2026-01-24T20:09:32.132936+08:00,34.99
2026-01-24T20:30:32.132936+08:00,35.15
2026-01-24T20:48:32.132936+08:00,35.20
2026-01-24T22:23:32.132936+08:00,35.57
2026-01-24T23:25:32.132936+08:00,35.76
2026-01-25T01:22:32.132936+08:00,36.67
2026-01-25T03:13:32.132936+08:00,36.87
2026-01-25T04:49:32.132936+08:00,37.56
2026-01-25T05:10:32.132936+08:00,37.69
2026-01-25T06:45:32.132936+08:00,38.36
2026-01-25T07:59:32.132936+08:00,38.96
2026-01-25T09:48:32.132936+08:00,39.66
2026-01-25T11:31:32.132936+08:00,40.36
2026-01-25T12:02:32.132936+08:00,40.47
2026-01-25T13:56:32.132936+08:00,40.97
2026-01-25T15:54:32.132936+08:00,41.32
2026-01-25T16:09:32.132936+08:00,41.43
"""


@pytest.fixture(autouse=True)
def _clean_epu_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all EPU_* env vars and isolate from .env files before each test."""
    for var in _ALL_EPU_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def dorm_samples() -> list[Sample]:
    return parse_samples(SAMPLE_LOG.splitlines())


@pytest.fixture()
def record_log(tmp_path: Path) -> RecordLog:
    """An empty record log inside a room directory."""
    room_dir = tmp_path / "data" / "101_3_0_1"
    room_dir.mkdir(parents=True)
    return RecordLog.open(room_dir / "records.csv")


@pytest.fixture()
def filled_log(record_log: RecordLog, dorm_samples: list[Sample]) -> RecordLog:
    """Record log preloaded with the twenty sample lines."""
    record_log.record_batch(dorm_samples)
    return record_log


@pytest.fixture()
def identity() -> RoomIdentity:
    return RoomIdentity(room_no="101_3_0_1", elcarea=2, elcbuis="B12")


@pytest.fixture()
def credentials() -> Credentials:
    return Credentials(
        j_session_id="SESSIONID0123456789",
        cookie="COOKIEVALUE0123456789",
        x_csrf_token="csrf-token-abcdef",
    )
