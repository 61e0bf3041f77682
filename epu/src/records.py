"""
Append-only record log of degree samples, one file per room.

Each line of the log is ``<RFC 3339 timestamp>,<degree>\\n``. The log keeps
the last written degree in memory so that polling the same balance over and
over does not grow the file: a new sample is appended only when it differs
from the previous one by at least :data:`DEDUP_EPSILON`.

The only way the file ever shrinks is :meth:`RecordLog.reset`, which the
archive commit uses to rewrite the log with the retained samples. The
rewrite goes through a sibling temp file and ``os.replace`` so a crash leaves
either the old or the new content, never a mix.

``RecordLog`` is not safe for concurrent use by itself. Callers hold
:attr:`RecordLog.lock` around ``record``, ``read_all`` and the archive
sequence.

CHANGELOG:
- 2026-10-19: Compare degree changes at 0.01 resolution; reject non-finite degrees
- 2026-10-19: Repair a missing trailing newline on open
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path

from epu.src.errors import MalformedLogError
from epu.src.models import Sample

logger = logging.getLogger(__name__)

DEDUP_EPSILON: float = 0.01
"""Smallest degree change that is worth a new line in the log."""

_DELTA_DIGITS = 6
_TMP_SUFFIX = ".tmp"


# ---------------------------------------------------------------------------
# Line format
# ---------------------------------------------------------------------------


def format_line(sample: Sample) -> str:
    """Serialize one sample as a newline-terminated log line."""
    return f"{sample.ts.isoformat()},{sample.value!r}\n"


def parse_line(line: str, line_no: int | None = None) -> Sample:
    """Parse one non-empty log line.

    Raises:
        MalformedLogError: If the line is not ``<timestamp>,<finite float>``.
    """
    ts_text, sep, value_text = line.strip().partition(",")
    if not sep:
        raise MalformedLogError(f"missing separator in {line.strip()!r}", line_no=line_no)
    try:
        ts = datetime.fromisoformat(ts_text.strip())
        value = float(value_text.strip())
        if not math.isfinite(value):
            raise ValueError(f"non-finite degree {value_text.strip()!r}")
        return Sample(ts=ts, value=value)
    except ValueError as exc:
        raise MalformedLogError(f"cannot parse {line.strip()!r}: {exc}", line_no=line_no) from exc


def parse_samples(lines: Iterable[str]) -> list[Sample]:
    """Parse every non-empty line; the first bad line aborts the parse."""
    samples: list[Sample] = []
    for line_no, line in enumerate(lines, start=1):
        if line.strip():
            samples.append(parse_line(line, line_no=line_no))
    return samples


def serialize_samples(samples: Iterable[Sample]) -> str:
    return "".join(format_line(s) for s in samples)


def _now() -> datetime:
    """Current local time with a fixed UTC offset, truncated to seconds."""
    return datetime.now().astimezone().replace(microsecond=0)


def _delta(previous: float, value: float) -> float:
    """Absolute degree change, rounded so 33.63 -> 33.64 counts as 0.01."""
    return round(abs(previous - value), _DELTA_DIGITS)


def _append_lines(path: Path, lines: Iterable[str]) -> None:
    """Append lines to *path* and flush them to disk before returning."""
    with path.open("a", encoding="utf-8", newline="\n") as fh:
        fh.writelines(lines)
        fh.flush()
        os.fsync(fh.fileno())


# ---------------------------------------------------------------------------
# RecordLog
# ---------------------------------------------------------------------------


class RecordLog:
    """Durable, append-only sequence of samples backed by one file.

    Use :meth:`open` rather than the constructor: it creates the file when
    missing and recovers ``last_value`` from the last non-empty line.

    Args:
        path: Log file path.
        last_value: Degree of the last sample already in the file, if any.
    """

    def __init__(self, path: str | Path, last_value: float | None = None) -> None:
        self._path = Path(path)
        self._last_value = last_value
        self.lock = asyncio.Lock()

    @classmethod
    def open(cls, path: str | Path) -> RecordLog:
        """Open or create the log at *path*.

        Raises:
            OSError: If the file cannot be created or read.
            MalformedLogError: If the last non-empty line does not parse.
        """
        path = Path(path)
        path.touch(exist_ok=True)

        last_line: str | None = None
        last_line_no = 0
        with path.open("r", encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                if line.strip():
                    last_line, last_line_no = line, line_no

        last_value = parse_line(last_line, line_no=last_line_no).value if last_line else None

        if last_line is not None and not last_line.endswith("\n"):
            # An interrupted append may have lost only the newline.
            logger.warning("Record log %s lacks a trailing newline, repairing", path)
            _append_lines(path, ["\n"])

        logger.debug("Opened record log %s (last_value=%s)", path, last_value)
        return cls(path, last_value)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_value(self) -> float | None:
        return self._last_value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, value: float) -> bool:
        """Append *value* stamped with the current time if it changed.

        Returns:
            ``True`` if a line was written, ``False`` if *value* is within
            :data:`DEDUP_EPSILON` of the previous degree.

        Raises:
            ValueError: If *value* is NaN or infinite.
        """
        if self._last_value is not None and _delta(self._last_value, value) < DEDUP_EPSILON:
            return False
        self.record_instant(_now(), value)
        return True

    def record_instant(self, ts: datetime, value: float) -> None:
        """Append one sample with an explicit timestamp, without dedup."""
        sample = Sample(ts=ts, value=value)
        _append_lines(self._path, [format_line(sample)])
        self._last_value = sample.value

    def record_batch(self, samples: Sequence[Sample]) -> None:
        """Append *samples* verbatim.

        The caller is responsible for ordering and deduplication. An empty
        batch leaves ``last_value`` unchanged.
        """
        if not samples:
            return
        _append_lines(self._path, (format_line(s) for s in samples))
        self._last_value = samples[-1].value

    def reset(self, samples: Sequence[Sample]) -> None:
        """Atomically replace the whole log content with *samples*.

        The new content is written to a sibling temp file through the normal
        append path and then renamed over the log. On failure the log file and
        ``last_value`` are unchanged.
        """
        tmp_path = self._path.with_name(self._path.name + _TMP_SUFFIX)
        tmp_path.unlink(missing_ok=True)
        try:
            tmp_path.touch()
            _append_lines(tmp_path, (format_line(s) for s in samples))
            os.replace(tmp_path, self._path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        self._last_value = samples[-1].value if samples else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_all(self) -> list[Sample]:
        """Return every sample in file order.

        Raises:
            OSError: If the file cannot be read.
            MalformedLogError: If any non-empty line does not parse.
        """
        with self._path.open("r", encoding="utf-8") as fh:
            return parse_samples(fh)

    def __repr__(self) -> str:
        return f"RecordLog(path={str(self._path)!r}, last_value={self._last_value!r})"
