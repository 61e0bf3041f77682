"""
Typed error taxonomy for the recording engine.

Every failure an engine operation can report is a subclass of
:class:`EngineError`. Each concrete class carries a stable ``code`` tag so a
transport layer can serialize the error as ``{"tag": code, "content": msg}``
without matching on message strings.

Category bases:

- :class:`UpstreamError`: transient e-pay failures, retried on the next tick.
- :class:`NotAuthenticatedError`: session cookies missing or stale.
- :class:`ValidationError`: rejected before any filesystem mutation.
- :class:`StorageError`: I/O or parse failures of the record log.
- :class:`ArchiveError`: archive creation / lookup failures.
- :class:`RoomSwitchError`: a room switch step failed, old room still active.
- :class:`ConsistencyError`: a rollback failed; needs operator attention.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class of all engine errors."""

    code: str = "General"
    default_message: str = "engine error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.args[0])

    def to_dict(self) -> dict[str, Any]:
        """Return the tagged representation used on the wire."""
        return {"tag": self.code, "content": self.message}


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------


class UpstreamError(EngineError):
    code = "ServerRequestError"
    default_message = "request to the e-pay service failed"


class DegreeQueryError(UpstreamError):
    code = "QueryDegree"
    default_message = "logged into ecnu, but failed to query degree"


class ResolveTimeoutError(UpstreamError):
    code = "ResolveTimeout"
    default_message = "room info resolution timed out"


class NotAuthenticatedError(EngineError):
    code = "EcnuNotLogin"
    default_message = "ecnu is not logged in on server side"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(EngineError):
    code = "Validation"
    default_message = "invalid input"


class InvalidArchiveNameError(ValidationError):
    code = "InvalidArchiveName"
    default_message = "invalid archive name"


class InvalidRoomIdentityError(ValidationError):
    code = "InvalidRoomConfig"
    default_message = "invalid room config"


class RoomConfigMissingError(ValidationError):
    code = "RoomConfigMissing"
    default_message = "server lacks room config"


class InvalidCredentialsError(ValidationError):
    code = "InvalidCookies"
    default_message = "cookies cannot be used as request headers"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(EngineError):
    code = "ReadRecords"
    default_message = "reading records failed"


class MalformedLogError(StorageError):
    code = "InvalidRecordsFormat"
    default_message = "invalid degree records format"

    def __init__(self, message: str | None = None, *, line_no: int | None = None) -> None:
        if message is not None and line_no is not None:
            message = f"{message} (line {line_no})"
        super().__init__(message)
        self.line_no = line_no


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


class ArchiveError(EngineError):
    code = "Archive"
    default_message = "archive operation failed"


class EmptyArchiveError(ArchiveError):
    code = "EmptyArchive"
    default_message = "archive is empty"


class DuplicatedArchiveError(ArchiveError):
    code = "DuplicatedArchive"
    default_message = "duplicated archive name"


class ArchiveNotFoundError(ArchiveError):
    code = "ArchiveNotFound"
    default_message = "archive not found"


class ArchiveDirError(ArchiveError):
    code = "ArchiveDir"
    default_message = "archive dir is not exist or cannot be read"


class ArchiveWriteError(ArchiveError):
    code = "WriteArchive"
    default_message = "writing archive file failed"


class DeleteArchiveError(ArchiveError):
    code = "DeletedArchiveFailed"
    default_message = "moving archive to the deleted dir failed"


# ---------------------------------------------------------------------------
# Room switch
# ---------------------------------------------------------------------------


class RoomSwitchError(EngineError):
    code = "RoomSwitch"
    default_message = "switching room failed"


class RoomDirError(RoomSwitchError):
    code = "RoomDir"
    default_message = "creating room dir failed"


class RecordLogOpenError(RoomSwitchError):
    code = "ReadRecords"
    default_message = "opening the room record log failed"


class SaveRoomConfigError(RoomSwitchError):
    code = "SaveRoomConfig"
    default_message = "saving room config failed"


class RoomInfoNotFoundError(EngineError):
    code = "RoomInfoNotFound"
    default_message = "room info not found"


# ---------------------------------------------------------------------------
# Consistency
# ---------------------------------------------------------------------------


class ConsistencyError(EngineError):
    code = "Consistency"
    default_message = "on-disk state is inconsistent"


class ArchiveRollbackError(ConsistencyError):
    code = "ArchiveRollback"
    default_message = "archive commit failed and its files could not be removed"
