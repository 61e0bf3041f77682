"""
Pydantic models for degree samples, archives, rooms and session credentials.

- :class:`Sample`: one ``(ts, value)`` observation of the remaining degree.
- :class:`TimeSpan`: optional, inclusive time bounds used to select samples.
- :class:`ArchiveMeta`: description of one committed archive, totally ordered.
- :class:`RoomIdentity`: opaque room selector, used as cache key and to pick
  the active room directory.
- :class:`Credentials`: e-pay session cookies and CSRF token.
- :class:`RoomInfo` and its parts: human readable location of a room, plus
  the directory-service response envelopes it is assembled from.

CHANGELOG:
- 2026-10-19: Refuse non-finite sample values; only room, district and floor
  must be non-empty in a room number
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import functools
from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from epu.src.errors import InvalidRoomIdentityError

# ---------------------------------------------------------------------------
# Samples and time spans
# ---------------------------------------------------------------------------


class Sample(BaseModel):
    """A single degree observation.

    Attributes:
        ts: Timezone-aware timestamp of the observation.
        value: Remaining electricity degree at ``ts``; always finite.
    """

    model_config = ConfigDict(frozen=True)

    ts: datetime
    value: float = Field(allow_inf_nan=False)

    @field_validator("ts")
    @classmethod
    def ts_must_be_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("sample timestamps must carry a UTC offset")
        return v


class TimeSpan(BaseModel):
    """Time range with optional bounds, both inclusive.

    A missing bound is unbounded on that side, so ``TimeSpan()`` contains
    every timestamp.
    """

    model_config = ConfigDict(frozen=True)

    start_time: datetime | None = None
    end_time: datetime | None = None

    @classmethod
    def before(cls, end_time: datetime) -> TimeSpan:
        return cls(end_time=end_time)

    @classmethod
    def after(cls, start_time: datetime) -> TimeSpan:
        return cls(start_time=start_time)

    def contains(self, ts: datetime) -> bool:
        return (self.start_time is None or self.start_time <= ts) and (
            self.end_time is None or self.end_time >= ts
        )


@functools.total_ordering
class ArchiveMeta(BaseModel):
    """Metadata written next to an archive's data file.

    Unlike :class:`TimeSpan`, both times are always set: they are the first
    and last timestamps actually present in the archive.

    Ordering is start_time, then archive_name, then end_time, then
    records_num. It only makes listings deterministic.
    """

    model_config = ConfigDict(frozen=True)

    start_time: datetime
    end_time: datetime
    archive_name: str
    records_num: int = Field(ge=0)

    def sort_key(self) -> tuple[datetime, str, datetime, int]:
        return (self.start_time, self.archive_name, self.end_time, self.records_num)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ArchiveMeta):
            return NotImplemented
        return self.sort_key() < other.sort_key()


# ---------------------------------------------------------------------------
# Room identity and credentials
# ---------------------------------------------------------------------------


class RoomIdentity(BaseModel):
    """Identifies the dormitory room whose degree is tracked.

    ``room_no`` is ``<room>_<district>_<unused>_<floor>`` as selected on the
    e-pay page; ``elcbuis`` is the building code and ``elcarea`` the numeric
    area code. The empty identity (``room_no == ""``) means no room is set.

    Serialized with camelCase keys (``roomNo``) to match the e-pay form.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    room_no: str = ""
    elcarea: int = 0
    elcbuis: str = ""

    PART_COUNT: ClassVar[int] = 4

    @classmethod
    def empty(cls) -> RoomIdentity:
        return cls()

    def is_empty(self) -> bool:
        return self.room_no == ""

    def is_invalid(self) -> bool:
        """Return True if the identity cannot be used to query anything."""
        if self.is_empty():
            return True
        try:
            self.parts()
        except InvalidRoomIdentityError:
            return True
        return False

    def parts(self) -> tuple[str, str, str, str]:
        """Split ``room_no`` into ``(room, district, unused, floor)``.

        The unused part may be empty.

        Raises:
            InvalidRoomIdentityError: If ``room_no`` has fewer than four parts
                or an empty room, district or floor.
        """
        parts = self.room_no.split("_", self.PART_COUNT - 1)
        if len(parts) != self.PART_COUNT:
            raise InvalidRoomIdentityError(f"malformed room number: {self.room_no!r}")
        room, district, unused, floor = parts
        if not (room and district and floor):
            raise InvalidRoomIdentityError(f"malformed room number: {self.room_no!r}")
        return room, district, unused, floor


def _mask(value: str) -> str:
    return f"{value[:5]}..."


class Credentials(BaseModel):
    """E-pay session credentials pushed in after an interactive login.

    ``repr()`` never shows more than the first five characters of each value.
    """

    model_config = ConfigDict(frozen=True)

    j_session_id: str = ""
    cookie: str = ""
    x_csrf_token: str = ""

    UNSAFE_COOKIE_CHARS: ClassVar[frozenset[str]] = frozenset(' ",;\\')

    @classmethod
    def empty(cls) -> Credentials:
        return cls()

    @classmethod
    def _cookie_sanitize(cls, content: str) -> str:
        return "".join(
            c for c in content if c not in cls.UNSAFE_COOKIE_CHARS and c.isprintable()
        )

    def sanitize(self) -> Credentials:
        """Return a copy with cookie values stripped of header-breaking chars."""
        return Credentials(
            j_session_id=self._cookie_sanitize(self.j_session_id),
            cookie=self._cookie_sanitize(self.cookie),
            x_csrf_token=self.x_csrf_token,
        )

    def cookie_header(self) -> str:
        return f"JSESSIONID={self.j_session_id}; cookie={self.cookie}"

    def __repr__(self) -> str:
        return (
            f"Credentials(j_session_id={_mask(self.j_session_id)!r}, "
            f"cookie={_mask(self.cookie)!r}, x_csrf_token={_mask(self.x_csrf_token)!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Room directory service
# ---------------------------------------------------------------------------


class _DirectoryModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class Area(_DirectoryModel):
    area_id: str
    area_name: str


class District(_DirectoryModel):
    district_id: str
    district_name: str


class Building(_DirectoryModel):
    building_id: str = Field(alias="buiId")
    building_name: str = Field(alias="buiName")


class Floor(_DirectoryModel):
    floor_id: str
    floor_name: str


class Room(_DirectoryModel):
    room_id: str
    room_name: str


class Districts(_DirectoryModel):
    """Response of the area query: every area and district of the school."""

    areas: list[Area]
    districts: list[District]
    buildings: list[Building] = Field(default_factory=list, alias="buils")
    floors: list[Floor] = Field(default_factory=list)
    rooms: list[Room] = Field(default_factory=list)


class Buildings(_DirectoryModel):
    buildings: list[Building] = Field(alias="buils")


class Floors(_DirectoryModel):
    floors: list[Floor]


class Rooms(_DirectoryModel):
    rooms: list[Room]


class RoomInfo(_DirectoryModel):
    """Human readable location of a :class:`RoomIdentity`."""

    area: Area
    district: District
    building: Building
    floor: Floor
    room: Room
