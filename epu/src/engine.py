"""
Engine facade: the operations an outer transport exposes.

:class:`Engine` owns the mutable :class:`~epu.src.state.EngineState`, the
degree source and the room resolver. There is no process-wide singleton; the
daemon builds one engine and hands it to the polling loop and to whatever
serves requests.

Every operation works on a snapshot of the active room. Reads and archive
commits hold the snapshot's ``RecordLog.lock``, so a room switch in the
middle of an archive simply lets the archive finish against the old room.

CHANGELOG:
- 2026-10-19: Map record log read failures to StorageError
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path

import httpx

from epu.src.archive import ArchiveStore, begin_archive, default_archive_name
from epu.src.config import ARCHIVE_DIRNAME, ServerSettings, is_sanitized_filename
from epu.src.degree import DegreeSource
from epu.src.errors import (
    DegreeQueryError,
    EmptyArchiveError,
    InvalidArchiveNameError,
    MalformedLogError,
    RoomConfigMissingError,
    StorageError,
)
from epu.src.models import (
    ArchiveMeta,
    Credentials,
    RoomIdentity,
    RoomInfo,
    Sample,
    TimeSpan,
)
from epu.src.rooms import RoomResolver
from epu.src.state import EngineState, RoomContext

logger = logging.getLogger(__name__)


class Engine:
    """Recording engine bound to one data directory.

    Args:
        state: Active room and session.
        source: Degree query client.
        resolver: Room info resolver.
        query_timeout_s: Upper bound of one degree query.
        resolve_timeout_s: Default upper bound of a room info resolution.
    """

    def __init__(
        self,
        state: EngineState,
        source: DegreeSource,
        resolver: RoomResolver,
        *,
        query_timeout_s: float = 15.0,
        resolve_timeout_s: float = 30.0,
    ) -> None:
        self.state = state
        self.source = source
        self.resolver = resolver
        self._query_timeout_s = query_timeout_s
        self._resolve_timeout_s = resolve_timeout_s

    @classmethod
    def from_settings(
        cls,
        settings: ServerSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Engine:
        """Build an engine from settings, loading the persisted room.

        Raises:
            InvalidRoomIdentityError: The persisted room number is unsafe.
            RoomDirError: The room directory cannot be created.
            RecordLogOpenError: The room's log cannot be opened.
        """
        state = EngineState.load(settings.data_dir, settings.room_config_path())
        source = DegreeSource(
            settings.epay_base_url,
            timeout_s=settings.query_timeout_s,
            transport=transport,
        )
        resolver = RoomResolver(
            settings.epay_base_url,
            timeout_s=settings.query_timeout_s,
            transport=transport,
        )
        return cls(
            state,
            source,
            resolver,
            query_timeout_s=settings.query_timeout_s,
            resolve_timeout_s=settings.resolve_timeout_s,
        )

    # ------------------------------------------------------------------
    # Degree
    # ------------------------------------------------------------------

    async def get_current_value(self) -> float:
        """Query the live degree of the active room without recording it.

        Raises:
            RoomConfigMissingError: No valid room is configured.
            NotAuthenticatedError: The session is missing or expired.
            DegreeQueryError: Transport failure, bad response or timeout.
        """
        ctx, credentials = await self.state.snapshot()
        try:
            return await asyncio.wait_for(
                self.source.sample(ctx.identity, credentials),
                timeout=self._query_timeout_s,
            )
        except TimeoutError as exc:
            raise DegreeQueryError("degree query timed out") from exc

    async def get_history(self) -> list[Sample]:
        """Return every sample of the active room's record log.

        Raises:
            StorageError: The log cannot be read or parsed.
        """
        ctx = await self.state.current()
        async with ctx.record_log.lock:
            try:
                return ctx.record_log.read_all()
            except MalformedLogError:
                logger.error("Record log %s is malformed", ctx.record_log.path, exc_info=True)
                raise
            except OSError as exc:
                raise StorageError(f"reading {ctx.record_log.path} failed") from exc

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    async def create_archive(self, time_span: TimeSpan, name: str | None = None) -> ArchiveMeta:
        """Move every sample inside *time_span* into a new archive.

        Args:
            time_span: Samples whose timestamp lies inside are archived.
            name: Archive name; defaults to
                ``<first day>-<last day>-by-<now>``.

        Raises:
            InvalidArchiveNameError: *name* is not a safe filename.
            EmptyArchiveError: No sample lies inside *time_span*.
            DuplicatedArchiveError: *name* is taken.
            StorageError: The log cannot be read or parsed.
            ArchiveWriteError: Writing failed and was rolled back.
            ArchiveRollbackError: Writing failed and the rollback failed.
        """
        if name is not None and not is_sanitized_filename(name):
            raise InvalidArchiveNameError(f"invalid archive name: {name!r}")

        ctx = await self.state.current()
        async with ctx.record_log.lock:
            try:
                operation = begin_archive(ctx.record_log, time_span)
            except OSError as exc:
                raise StorageError(f"reading {ctx.record_log.path} failed") from exc

            span = operation.time_span()
            if span is None:
                raise EmptyArchiveError()
            if name is None:
                name = default_archive_name(span[0], span[1], datetime.now())
            return operation.commit(ctx.room_dir / ARCHIVE_DIRNAME, name)

    async def _store(self) -> ArchiveStore:
        ctx = await self.state.current()
        return ArchiveStore(ctx.room_dir)

    async def list_archives(self) -> list[ArchiveMeta]:
        return (await self._store()).list_archives()

    async def read_archive(self, name: str) -> list[Sample]:
        return (await self._store()).read_archive(name)

    async def archive_path(self, name: str) -> Path:
        """Return the data file of archive *name* for streaming."""
        return (await self._store()).data_path(name)

    async def delete_archive(self, name: str) -> tuple[Path, Path]:
        """Move archive *name* of the active room into its deleted directory."""
        return (await self._store()).delete_archive(name)

    # ------------------------------------------------------------------
    # Room and session
    # ------------------------------------------------------------------

    async def get_room(self) -> RoomIdentity:
        return (await self.state.current()).identity

    async def switch_room(self, identity: RoomIdentity) -> RoomContext:
        return await self.state.switch_room(identity)

    async def clear_room(self) -> RoomContext:
        return await self.state.clear_room()

    async def set_credentials(self, credentials: Credentials) -> None:
        await self.state.set_credentials(credentials)

    async def clear_credentials(self) -> None:
        await self.state.clear_credentials()

    async def resolve_room_info(self, timeout: float | None = None) -> RoomInfo:
        """Resolve the active room into its area/district/building/floor/room.

        Args:
            timeout: Deadline in seconds; defaults to the configured
                resolve timeout.

        Raises:
            RoomConfigMissingError: No room is configured.
            ResolveTimeoutError: The deadline passed.
        """
        ctx, credentials = await self.state.snapshot()
        if ctx.identity.is_empty():
            raise RoomConfigMissingError()
        return await self.resolver.resolve(
            ctx.identity,
            credentials,
            timeout=self._resolve_timeout_s if timeout is None else timeout,
        )
