"""
Mutable engine state: the active room and the e-pay session.

The active room is a :class:`RoomContext` triple of identity, room directory
and record log. The triple is only ever replaced as a whole:
:meth:`EngineState.switch_room` performs every fallible step first (validate
the room number, create the directory, open the log, persist the identity)
and swaps the triple under the state lock only after all of them succeeded.
Any failure leaves the previous room active.

Readers take a snapshot with :meth:`EngineState.current` and then work with
the snapshot's record log under that log's own lock, so a room switch never
blocks on a long archive and vice versa.

CHANGELOG:
- 2026-10-19: Reuse the open record log when switching back to a room
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from epu.src.archive import recover_pending_archive
from epu.src.config import (
    RECORDS_FILENAME,
    ROOM_UNKNOWN_DIRNAME,
    is_sanitized_filename,
)
from epu.src.errors import (
    ArchiveRollbackError,
    InvalidRoomIdentityError,
    MalformedLogError,
    RecordLogOpenError,
    RoomDirError,
    SaveRoomConfigError,
)
from epu.src.models import Credentials, RoomIdentity
from epu.src.records import RecordLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomContext:
    """The active room: identity, data directory and record log."""

    identity: RoomIdentity
    room_dir: Path
    record_log: RecordLog


# ---------------------------------------------------------------------------
# Room directory and persisted identity
# ---------------------------------------------------------------------------


def room_dir_for(data_dir: Path, identity: RoomIdentity) -> Path:
    """Return the data directory of *identity*.

    The empty identity maps to the reserved ``unknown`` directory.

    Raises:
        InvalidRoomIdentityError: ``room_no`` is not a safe path segment.
    """
    if identity.is_empty():
        return data_dir / ROOM_UNKNOWN_DIRNAME
    if not is_sanitized_filename(identity.room_no):
        raise InvalidRoomIdentityError(f"unsafe room number: {identity.room_no!r}")
    return data_dir / identity.room_no


def open_room(
    data_dir: Path,
    identity: RoomIdentity,
    open_logs: dict[Path, RecordLog] | None = None,
) -> RoomContext:
    """Create the room directory and open its record log.

    Any archive commit interrupted by a crash is recovered before the log is
    handed out. A log already present in *open_logs* is reused so that one
    file never has two writers (or two locks); newly opened logs are added.

    Raises:
        InvalidRoomIdentityError: ``room_no`` is not a safe path segment.
        RoomDirError: The directory cannot be created.
        RecordLogOpenError: The log cannot be opened, parsed or recovered.
    """
    room_dir = room_dir_for(data_dir, identity)
    if open_logs is not None and room_dir in open_logs:
        return RoomContext(identity=identity, room_dir=room_dir, record_log=open_logs[room_dir])

    try:
        room_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Creating room dir %s failed", room_dir, exc_info=True)
        raise RoomDirError() from exc

    try:
        record_log = RecordLog.open(room_dir / RECORDS_FILENAME)
        recover_pending_archive(record_log)
    except ArchiveRollbackError:
        raise
    except (OSError, ValueError, MalformedLogError) as exc:
        logger.error("Opening record log in %s failed", room_dir, exc_info=True)
        raise RecordLogOpenError(f"opening record log in {room_dir} failed: {exc}") from exc
    if open_logs is not None:
        open_logs[room_dir] = record_log
    return RoomContext(identity=identity, room_dir=room_dir, record_log=record_log)


def load_room_identity(path: Path) -> RoomIdentity:
    """Load the persisted room identity; missing or unreadable means none."""
    try:
        return RoomIdentity.model_validate_json(path.read_bytes())
    except FileNotFoundError:
        logger.info("No room config at %s", path)
    except (OSError, PydanticValidationError):
        logger.warning("Ignoring unreadable room config %s", path, exc_info=True)
    return RoomIdentity.empty()


def save_room_identity(path: Path, identity: RoomIdentity) -> None:
    """Persist *identity* atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(identity.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


# ---------------------------------------------------------------------------
# EngineState
# ---------------------------------------------------------------------------


class EngineState:
    """Lock-guarded active room plus the current e-pay credentials.

    Args:
        context: Initially active room.
        data_dir: Root of all room directories.
        room_config_path: Where the active identity is persisted.
        credentials: Initial session credentials.
    """

    def __init__(
        self,
        context: RoomContext,
        *,
        data_dir: Path,
        room_config_path: Path,
        credentials: Credentials | None = None,
    ) -> None:
        self._context = context
        self._data_dir = data_dir
        self._room_config_path = room_config_path
        self._credentials = credentials or Credentials.empty()
        self._open_logs: dict[Path, RecordLog] = {context.room_dir: context.record_log}
        self._lock = asyncio.Lock()

    @classmethod
    def load(cls, data_dir: Path, room_config_path: Path) -> EngineState:
        """Build the state from the persisted room identity.

        A missing room config selects the ``unknown`` room directory. A
        persisted but unsafe room number is a startup error.
        """
        identity = load_room_identity(room_config_path)
        context = open_room(data_dir, identity)
        logger.info("Active room %r in %s", identity.room_no, context.room_dir)
        return cls(context, data_dir=data_dir, room_config_path=room_config_path)

    async def current(self) -> RoomContext:
        async with self._lock:
            return self._context

    async def credentials(self) -> Credentials:
        async with self._lock:
            return self._credentials

    async def snapshot(self) -> tuple[RoomContext, Credentials]:
        """Return the active room and credentials as one consistent pair."""
        async with self._lock:
            return self._context, self._credentials

    async def set_credentials(self, credentials: Credentials) -> None:
        """Replace the session credentials (cookie values are sanitized)."""
        async with self._lock:
            self._credentials = credentials.sanitize()
        logger.info("Credentials refreshed: %r", credentials)

    async def clear_credentials(self) -> None:
        async with self._lock:
            self._credentials = Credentials.empty()
        logger.info("Credentials cleared")

    async def switch_room(self, identity: RoomIdentity) -> RoomContext:
        """Make *identity* the active room.

        Raises:
            InvalidRoomIdentityError: Unsafe room number; nothing created.
            RoomDirError: The room directory cannot be created.
            RecordLogOpenError: The room's log cannot be opened.
            SaveRoomConfigError: The identity cannot be persisted.
        """
        context = open_room(self._data_dir, identity, self._open_logs)
        try:
            save_room_identity(self._room_config_path, identity)
        except OSError as exc:
            logger.error("Saving room config %s failed", self._room_config_path, exc_info=True)
            raise SaveRoomConfigError() from exc

        async with self._lock:
            self._context = context
        logger.info("Switched to room %r in %s", identity.room_no, context.room_dir)
        return context

    async def clear_room(self) -> RoomContext:
        """Switch to the empty identity (the ``unknown`` room directory)."""
        return await self.switch_room(RoomIdentity.empty())
