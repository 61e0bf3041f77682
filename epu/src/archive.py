"""
Two-phase archiving of record log slices, and the per-room archive store.

Archiving moves every sample inside a :class:`~epu.src.models.TimeSpan` out
of the active record log into a named archive:

1. :func:`begin_archive` reads the log and splits it into ``retained`` and
   ``archived`` samples. Nothing is written yet, so the caller can inspect
   the split (and reject an empty archive) for free.
2. :meth:`ArchiveOperation.commit` writes ``<name>.csv`` and ``<name>.json``
   into the archive directory, then rewrites the log with the retained
   samples. If the rewrite fails the new files are removed again.

``commit`` is fully synchronous. Once an asyncio caller holds the log lock
and starts it, no cancellation can land between writing the archive and
shrinking the log. A write-ahead intent marker in the room directory covers
process crashes: :func:`recover_pending_archive` inspects it on the next open
and before the next commit, and either finishes or rolls back the interrupted
commit.

:class:`ArchiveStore` lists, reads and soft-deletes committed archives.
Deleted archives are moved to the ``deleted`` directory, never unlinked.

CHANGELOG:
- 2026-10-19: Settle a pending intent marker before a new commit
- 2026-10-19: Add write-ahead intent marker and crash recovery
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from epu.src.config import (
    ARCHIVE_DATA_SUFFIX,
    ARCHIVE_DIRNAME,
    ARCHIVE_INTENT_FILENAME,
    ARCHIVE_META_SUFFIX,
    DELETED_DIRNAME,
    is_sanitized_filename,
)
from epu.src.errors import (
    ArchiveDirError,
    ArchiveNotFoundError,
    ArchiveRollbackError,
    ArchiveWriteError,
    ConsistencyError,
    DeleteArchiveError,
    DuplicatedArchiveError,
    EmptyArchiveError,
    InvalidArchiveNameError,
    MalformedLogError,
    StorageError,
)
from epu.src.models import ArchiveMeta, Sample, TimeSpan
from epu.src.records import RecordLog, parse_samples, serialize_samples

logger = logging.getLogger(__name__)


def _data_path(archive_dir: Path, name: str) -> Path:
    return archive_dir / f"{name}{ARCHIVE_DATA_SUFFIX}"


def _meta_path(archive_dir: Path, name: str) -> Path:
    return archive_dir / f"{name}{ARCHIVE_META_SUFFIX}"


def _write_new_file(path: Path, content: str) -> None:
    """Create *path* exclusively and flush *content* to disk."""
    with path.open("x", encoding="utf-8", newline="\n") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())


def _remove_files(paths: list[Path]) -> list[Path]:
    """Best-effort unlink; return the paths that could not be removed."""
    failed: list[Path] = []
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.error("Failed to remove %s", path, exc_info=True)
            failed.append(path)
    return failed


def default_archive_name(start_time: datetime, end_time: datetime, now: datetime) -> str:
    """Name used when the caller does not choose one.

    Example: ``20260124-20260125-by-20260201_093000``.
    """
    return f"{start_time:%Y%m%d}-{end_time:%Y%m%d}-by-{now:%Y%m%d_%H%M%S}"


# ---------------------------------------------------------------------------
# Write-ahead intent
# ---------------------------------------------------------------------------


class ArchiveIntent(BaseModel):
    """Marker written before an archive commit touches the filesystem."""

    archive_name: str
    archive_dir: Path


def _intent_path(log: RecordLog) -> Path:
    return log.path.parent / ARCHIVE_INTENT_FILENAME


def recover_pending_archive(log: RecordLog) -> str | None:
    """Finish or roll back a commit that was interrupted by a crash.

    If the intent marker exists, the interrupted archive is kept only when
    both of its files are present and none of its samples is still in the
    log (the log rewrite completed). Otherwise its files are removed, which
    leaves the log as the single copy of those samples. Safe to run twice.

    Returns:
        The name of the archive that was inspected, or ``None`` if no commit
        was pending.
    """
    intent_path = _intent_path(log)
    if not intent_path.exists():
        return None

    try:
        intent = ArchiveIntent.model_validate_json(intent_path.read_text(encoding="utf-8"))
    except (OSError, PydanticValidationError):
        logger.critical(
            "Unreadable archive intent marker %s, leaving it for manual inspection",
            intent_path,
            exc_info=True,
        )
        raise

    data_file = _data_path(intent.archive_dir, intent.archive_name)
    meta_file = _meta_path(intent.archive_dir, intent.archive_name)

    committed = False
    if data_file.exists() and meta_file.exists():
        try:
            archived = parse_samples(data_file.read_text(encoding="utf-8").splitlines())
            ArchiveMeta.model_validate_json(meta_file.read_text(encoding="utf-8"))
        except (MalformedLogError, PydanticValidationError):
            archived = []
        if archived:
            in_log = set(log.read_all())
            committed = not any(s in in_log for s in archived)

    if committed:
        logger.warning("Archive %s was committed before a crash, keeping it", intent.archive_name)
    else:
        logger.warning("Rolling back interrupted archive %s", intent.archive_name)
        failed = _remove_files([data_file, meta_file])
        if failed:
            raise ArchiveRollbackError(f"cannot remove {', '.join(map(str, failed))}")

    intent_path.unlink(missing_ok=True)
    return intent.archive_name


# ---------------------------------------------------------------------------
# Two-phase archive
# ---------------------------------------------------------------------------


@dataclass
class ArchiveOperation:
    """Preview of an archive split; nothing is persisted until :meth:`commit`.

    Attributes:
        log: The record log being split.
        retained: Samples that stay in the log, in file order.
        archived: Samples that move to the archive, sorted by timestamp.
    """

    log: RecordLog
    retained: list[Sample] = field(default_factory=list)
    archived: list[Sample] = field(default_factory=list)

    def time_span(self) -> tuple[datetime, datetime] | None:
        """Return ``(first, last)`` archived timestamps, or None if empty."""
        if not self.archived:
            return None
        return self.archived[0].ts, self.archived[-1].ts

    def commit(self, archive_dir: Path, name: str) -> ArchiveMeta:
        """Persist the archive and shrink the log to the retained samples.

        Raises:
            InvalidArchiveNameError: *name* is not a safe filename.
            EmptyArchiveError: Nothing to archive; nothing is written.
            ArchiveDirError: The archive directory cannot be created.
            DuplicatedArchiveError: An archive with *name* already exists.
            ArchiveWriteError: Writing failed; new files were rolled back and
                the log is unchanged.
            ArchiveRollbackError: Writing failed and the rollback failed too, or
                a pending marker from such a failure still cannot be rolled back.
            ConsistencyError: A pending intent marker is unreadable.
        """
        if not is_sanitized_filename(name):
            raise InvalidArchiveNameError(f"invalid archive name: {name!r}")
        span = self.time_span()
        if span is None:
            raise EmptyArchiveError()

        intent_path = _intent_path(self.log)
        # A marker left by an earlier failed rollback must be settled first.
        try:
            recover_pending_archive(self.log)
        except (OSError, PydanticValidationError) as exc:
            raise ConsistencyError(
                f"pending archive marker {intent_path} cannot be resolved"
            ) from exc

        try:
            archive_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Creating archive dir %s failed", archive_dir, exc_info=True)
            raise ArchiveDirError() from exc

        data_file = _data_path(archive_dir, name)
        meta_file = _meta_path(archive_dir, name)
        if meta_file.exists() or data_file.exists():
            raise DuplicatedArchiveError(f"archive {name!r} already exists")

        meta = ArchiveMeta(
            start_time=span[0],
            end_time=span[1],
            archive_name=name,
            records_num=len(self.archived),
        )

        try:
            _write_new_file(
                intent_path,
                ArchiveIntent(archive_name=name, archive_dir=archive_dir).model_dump_json(),
            )
        except OSError as exc:
            logger.error("Writing archive intent %s failed", intent_path, exc_info=True)
            raise ArchiveWriteError() from exc

        written: list[Path] = []
        try:
            _write_new_file(data_file, serialize_samples(self.archived))
            written.append(data_file)
            _write_new_file(meta_file, meta.model_dump_json(indent=2))
            written.append(meta_file)
            self.log.reset(self.retained)
        except OSError as exc:
            logger.error("Committing archive %s failed, rolling back", name, exc_info=True)
            self._rollback(written, intent_path)
            raise ArchiveWriteError() from exc

        try:
            intent_path.unlink()
        except OSError:
            # Recovery on the next open sees a completed commit and drops it.
            logger.warning("Failed to remove archive intent %s", intent_path, exc_info=True)

        logger.info(
            "Archived %d samples into %s (%d retained)",
            meta.records_num,
            name,
            len(self.retained),
        )
        return meta

    def _rollback(self, written: list[Path], intent_path: Path) -> None:
        failed = _remove_files(written)
        if failed:
            # Keep the intent marker so recovery can retry the rollback.
            logger.critical(
                "Archive rollback incomplete, orphaned files need attention: %s",
                [str(p) for p in failed],
            )
            raise ArchiveRollbackError(f"cannot remove {', '.join(map(str, failed))}")
        intent_path.unlink(missing_ok=True)


def begin_archive(log: RecordLog, time_span: TimeSpan) -> ArchiveOperation:
    """Split *log* into samples inside and outside *time_span*.

    Raises:
        OSError: If the log cannot be read.
        MalformedLogError: If the log contains an unparsable line.
    """
    operation = ArchiveOperation(log=log)
    for sample in log.read_all():
        if time_span.contains(sample.ts):
            operation.archived.append(sample)
        else:
            operation.retained.append(sample)
    operation.archived.sort(key=lambda s: s.ts)
    return operation


# ---------------------------------------------------------------------------
# Archive store
# ---------------------------------------------------------------------------


class ArchiveStore:
    """Committed archives of one room directory.

    Args:
        room_dir: The room directory holding ``archives/`` and ``deleted/``.
    """

    def __init__(self, room_dir: str | Path) -> None:
        self._room_dir = Path(room_dir)

    @property
    def archive_dir(self) -> Path:
        return self._room_dir / ARCHIVE_DIRNAME

    @property
    def deleted_dir(self) -> Path:
        return self._room_dir / DELETED_DIRNAME

    @staticmethod
    def _check_name(name: str) -> None:
        if not is_sanitized_filename(name):
            raise InvalidArchiveNameError(f"invalid archive name: {name!r}")

    def list_archives(self) -> list[ArchiveMeta]:
        """Return metadata of every readable archive, sorted.

        Metadata files that cannot be read or parsed are skipped.
        """
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            meta_files = sorted(self.archive_dir.glob(f"*{ARCHIVE_META_SUFFIX}"))
        except OSError as exc:
            logger.error("Listing archives in %s failed", self.archive_dir, exc_info=True)
            raise ArchiveDirError() from exc

        metas: list[ArchiveMeta] = []
        for meta_file in meta_files:
            try:
                metas.append(ArchiveMeta.model_validate_json(meta_file.read_bytes()))
            except (OSError, PydanticValidationError):
                logger.warning("Skipping unreadable archive meta %s", meta_file)
        metas.sort()
        return metas

    def data_path(self, name: str) -> Path:
        """Return the data file of an existing archive (for streaming).

        Raises:
            InvalidArchiveNameError: *name* is not a safe filename.
            ArchiveNotFoundError: No archive with that name.
        """
        self._check_name(name)
        data_file = _data_path(self.archive_dir, name)
        if not _meta_path(self.archive_dir, name).exists() or not data_file.exists():
            raise ArchiveNotFoundError(f"archive {name!r} not found")
        return data_file

    def read_archive(self, name: str) -> list[Sample]:
        """Return the samples stored in archive *name*.

        Raises:
            InvalidArchiveNameError: *name* is not a safe filename.
            ArchiveNotFoundError: No archive with that name.
            StorageError: The data file cannot be read or parsed.
        """
        data_file = self.data_path(name)
        try:
            with data_file.open("r", encoding="utf-8") as fh:
                return parse_samples(fh)
        except FileNotFoundError as exc:
            raise ArchiveNotFoundError(f"archive {name!r} not found") from exc
        except OSError as exc:
            raise StorageError(f"reading archive {name!r} failed") from exc

    def delete_archive(self, name: str, now: datetime | None = None) -> tuple[Path, Path]:
        """Move archive *name* into the deleted directory.

        Both files get a ``.<YYYYmmdd-HHMM>.<n>`` suffix, ``n`` being the
        smallest number not used yet.

        Returns:
            The new ``(data, meta)`` paths.

        Raises:
            InvalidArchiveNameError: *name* is not a safe filename.
            ArchiveNotFoundError: No archive with that name; nothing moved.
            DeleteArchiveError: Moving the files failed.
        """
        self._check_name(name)
        data_file = _data_path(self.archive_dir, name)
        meta_file = _meta_path(self.archive_dir, name)
        if not meta_file.exists():
            raise ArchiveNotFoundError(f"archive {name!r} not found")

        stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M")
        n = 0
        while True:
            deleted_data = self.deleted_dir / f"{data_file.name}.{stamp}.{n}"
            deleted_meta = self.deleted_dir / f"{meta_file.name}.{stamp}.{n}"
            if not deleted_data.exists() and not deleted_meta.exists():
                break
            n += 1

        try:
            self.deleted_dir.mkdir(parents=True, exist_ok=True)
            if data_file.exists():
                logger.info("Renaming %s -> %s", data_file, deleted_data)
                data_file.rename(deleted_data)
            logger.info("Renaming %s -> %s", meta_file, deleted_meta)
            meta_file.rename(deleted_meta)
        except OSError as exc:
            logger.error("Deleting archive %s failed", name, exc_info=True)
            raise DeleteArchiveError() from exc
        return deleted_data, deleted_meta
