"""
Unit tests for the engine facade.

Tests verify:
- get_current_value() queries the active room with the current session.
- get_history() returns the record log content.
- create_archive() validates, names and commits archives.
- Archive list/read/delete act on the active room.
- resolve_room_info() requires a room and applies the default timeout.
- from_settings() builds a working engine.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from epu.src.config import ServerSettings
from epu.src.engine import Engine
from epu.src.errors import (
    ArchiveNotFoundError,
    DegreeQueryError,
    EmptyArchiveError,
    InvalidArchiveNameError,
    RoomConfigMissingError,
    StorageError,
)
from epu.src.models import Credentials, RoomIdentity, Sample, TimeSpan
from epu.src.records import serialize_samples
from epu.src.state import EngineState, save_room_identity

_CST = timezone(timedelta(hours=8))
_CUTOFF = datetime(2026, 1, 25, 11, 30, tzinfo=_CST)


def _engine(state: EngineState) -> Engine:
    """Engine with mocked degree source and resolver."""
    source = AsyncMock()
    source.sample = AsyncMock(return_value=55.5)
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value="room-info")
    return Engine(state, source, resolver, query_timeout_s=1.0, resolve_timeout_s=7.0)


def _load_state(tmp_path: Path, identity: RoomIdentity) -> EngineState:
    config_path = tmp_path / "config" / "room.json"
    save_room_identity(config_path, identity)
    return EngineState.load(tmp_path / "data", config_path)


@pytest.fixture()
def engine(tmp_path: Path, identity: RoomIdentity) -> Engine:
    return _engine(_load_state(tmp_path, identity))


@pytest.fixture()
def filled_engine(tmp_path: Path, identity: RoomIdentity, dorm_samples: list[Sample]) -> Engine:
    """Engine whose active room log holds the twenty sample lines."""
    room_dir = tmp_path / "data" / identity.room_no
    room_dir.mkdir(parents=True)
    (room_dir / "records.csv").write_text(serialize_samples(dorm_samples), encoding="utf-8")
    return _engine(_load_state(tmp_path, identity))


class TestCurrentValueAndHistory:
    """Live query and history read."""

    @pytest.mark.asyncio
    async def test_get_current_value(
        self, engine: Engine, identity: RoomIdentity, credentials: Credentials
    ) -> None:
        await engine.set_credentials(credentials)

        assert await engine.get_current_value() == 55.5

        engine.source.sample.assert_awaited_once_with(identity, credentials)

    @pytest.mark.asyncio
    async def test_get_current_value_timeout(self, engine: Engine) -> None:
        async def slow(*args: object) -> float:
            await asyncio.sleep(10)
            return 0.0

        engine.source.sample = slow
        engine._query_timeout_s = 0.01
        with pytest.raises(DegreeQueryError, match="timed out"):
            await engine.get_current_value()

    @pytest.mark.asyncio
    async def test_get_history(self, filled_engine: Engine, dorm_samples: list[Sample]) -> None:
        assert await filled_engine.get_history() == dorm_samples

    @pytest.mark.asyncio
    async def test_get_history_malformed(self, engine: Engine) -> None:
        ctx = await engine.state.current()
        ctx.record_log.path.write_text("garbage\n", encoding="utf-8")
        with pytest.raises(StorageError):
            await engine.get_history()


class TestArchives:
    """Archive operations on the active room."""

    @pytest.mark.asyncio
    async def test_create_with_name(self, filled_engine: Engine, dorm_samples: list[Sample]) -> None:
        meta = await filled_engine.create_archive(TimeSpan.before(_CUTOFF), "winter")

        assert meta.records_num == 15
        assert await filled_engine.get_history() == dorm_samples[15:]
        assert [m.archive_name for m in await filled_engine.list_archives()] == ["winter"]
        assert await filled_engine.read_archive("winter") == dorm_samples[:15]
        assert (await filled_engine.archive_path("winter")).name == "winter.csv"

    @pytest.mark.asyncio
    async def test_create_default_name(self, filled_engine: Engine) -> None:
        meta = await filled_engine.create_archive(TimeSpan.before(_CUTOFF))
        assert re.fullmatch(r"20260124-20260125-by-\d{8}_\d{6}", meta.archive_name)

    @pytest.mark.asyncio
    async def test_invalid_name_rejected_first(self, filled_engine: Engine) -> None:
        with pytest.raises(InvalidArchiveNameError):
            await filled_engine.create_archive(TimeSpan(), "../x")
        assert len(await filled_engine.get_history()) == 20

    @pytest.mark.asyncio
    async def test_empty_span(self, filled_engine: Engine) -> None:
        with pytest.raises(EmptyArchiveError):
            await filled_engine.create_archive(TimeSpan.after(datetime(2030, 1, 1, tzinfo=_CST)))
        assert await filled_engine.list_archives() == []

    @pytest.mark.asyncio
    async def test_delete(self, filled_engine: Engine) -> None:
        await filled_engine.create_archive(TimeSpan(), "all")
        deleted_data, deleted_meta = await filled_engine.delete_archive("all")
        assert deleted_data.parent.name == "deleted"
        assert deleted_meta.name.startswith("all.json.")
        assert await filled_engine.list_archives() == []
        with pytest.raises(ArchiveNotFoundError):
            await filled_engine.read_archive("all")

    @pytest.mark.asyncio
    async def test_archives_follow_active_room(self, filled_engine: Engine) -> None:
        await filled_engine.create_archive(TimeSpan(), "first-room")
        await filled_engine.switch_room(RoomIdentity(room_no="202_3_0_2"))
        assert await filled_engine.list_archives() == []
        assert await filled_engine.get_history() == []


class TestRoom:
    """Room selection and resolution."""

    @pytest.mark.asyncio
    async def test_get_and_clear_room(self, engine: Engine, identity: RoomIdentity) -> None:
        assert await engine.get_room() == identity
        await engine.clear_room()
        assert (await engine.get_room()).is_empty()

    @pytest.mark.asyncio
    async def test_resolve_uses_default_timeout(
        self, engine: Engine, identity: RoomIdentity, credentials: Credentials
    ) -> None:
        await engine.set_credentials(credentials)
        assert await engine.resolve_room_info() == "room-info"
        engine.resolver.resolve.assert_awaited_once_with(identity, credentials, timeout=7.0)

    @pytest.mark.asyncio
    async def test_resolve_explicit_timeout(self, engine: Engine) -> None:
        await engine.resolve_room_info(timeout=2.0)
        assert engine.resolver.resolve.call_args.kwargs["timeout"] == 2.0

    @pytest.mark.asyncio
    async def test_resolve_without_room(self, engine: Engine) -> None:
        await engine.clear_room()
        with pytest.raises(RoomConfigMissingError):
            await engine.resolve_room_info()
        engine.resolver.resolve.assert_not_awaited()


class TestFromSettings:
    """Engine.from_settings() wires the real collaborators."""

    @pytest.mark.asyncio
    async def test_builds_engine(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        identity: RoomIdentity,
        credentials: Credentials,
    ) -> None:
        monkeypatch.setenv("EPU_DATA_DIR", str(tmp_path / "data"))
        monkeypatch.setenv("EPU_CONFIG_DIR", str(tmp_path / "config"))
        monkeypatch.setenv("EPU_EPAY_BASE_URL", "https://epay.example.edu/")
        settings = ServerSettings()
        save_room_identity(settings.room_config_path(), identity)

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "epay.example.edu"
            return httpx.Response(
                200, json={"retcode": 0, "retmsg": "成功", "restElecDegree": 12.25}
            )

        engine = Engine.from_settings(settings, transport=httpx.MockTransport(handler))
        await engine.set_credentials(credentials)

        assert await engine.get_room() == identity
        assert await engine.get_current_value() == 12.25
