"""
Resolve a room identity into its human readable location.

The e-pay directory service is walked top-down with four form POSTs:

1. ``queryelectricarea``   -> areas and districts
2. ``queryelectricbuis``   -> buildings of the district
3. ``queryelectricfloors`` -> floors of the building
4. ``queryelectricrooms``  -> rooms of the floor

Each step keeps the entry matching a component of the identity. The result
is memoized per identity for the life of the process: a cached identity is
answered without any network activity and an entry is never replaced.

The cache lock only guards the dict; lookups run outside of it.

CHANGELOG:
- 2026-10-19: Bound a full resolution with a caller supplied timeout
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from typing import TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from epu.src.degree import session_headers
from epu.src.errors import (
    NotAuthenticatedError,
    ResolveTimeoutError,
    RoomInfoNotFoundError,
    UpstreamError,
)
from epu.src.models import (
    Buildings,
    Credentials,
    Districts,
    Floors,
    RoomIdentity,
    RoomInfo,
    Rooms,
)

logger = logging.getLogger(__name__)

QUERY_DISTRICT_PATH = "/epaycas/electric/queryelectricarea"
QUERY_BUILDINGS_PATH = "/epaycas/electric/queryelectricbuis"
QUERY_FLOORS_PATH = "/epaycas/electric/queryelectricfloors"
QUERY_ROOMS_PATH = "/epaycas/electric/queryelectricrooms"

_DEFAULT_TIMEOUT_S = 15.0

_M = TypeVar("_M", bound=BaseModel)


class RoomResolver:
    """Memoizing resolver from :class:`RoomIdentity` to :class:`RoomInfo`.

    Args:
        base_url: E-pay base URL.
        timeout_s: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport
        self._cache: dict[RoomIdentity, RoomInfo] = {}
        self._lock = asyncio.Lock()

    async def cached(self, identity: RoomIdentity) -> RoomInfo | None:
        async with self._lock:
            return self._cache.get(identity)

    async def resolve(
        self,
        identity: RoomIdentity,
        credentials: Credentials,
        timeout: float | None = None,
    ) -> RoomInfo:
        """Return the location of *identity*, querying e-pay on a cache miss.

        Args:
            identity: Room to resolve.
            credentials: Session used for the directory queries.
            timeout: Deadline in seconds for the whole resolution. A timed out
                resolution leaves the cache untouched.

        Raises:
            InvalidRoomIdentityError: ``room_no`` is not four ``_`` parts.
            NotAuthenticatedError: A response did not deserialize.
            RoomInfoNotFoundError: A component has no match upstream.
            ResolveTimeoutError: *timeout* elapsed.
            UpstreamError: Transport failure.
        """
        if not identity.is_invalid():
            cached = await self.cached(identity)
            if cached is not None:
                return cached

        try:
            room_info = await asyncio.wait_for(
                self._lookup(identity, credentials),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise ResolveTimeoutError() from exc

        async with self._lock:
            return self._cache.setdefault(identity, room_info)

    async def _lookup(self, identity: RoomIdentity, credentials: Credentials) -> RoomInfo:
        room_name, district_id, _, floor_id = identity.parts()
        building_id = identity.elcbuis
        area_id = str(identity.elcarea)
        headers = session_headers(credentials)

        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            transport=self._transport,
            headers=headers,
        ) as client:
            districts = await self._post(client, QUERY_DISTRICT_PATH, {"sysid": "1"}, Districts)
            district = next(
                (d for d in districts.districts if d.district_id == district_id), None
            )
            if district is None:
                raise RoomInfoNotFoundError(f"district {district_id!r} not found")
            if not districts.areas:
                raise RoomInfoNotFoundError("no area returned")

            form = {"sysid": "1", "area": area_id, "district": district_id}
            buildings = await self._post(client, QUERY_BUILDINGS_PATH, form, Buildings)
            building = next(
                (b for b in buildings.buildings if b.building_id == building_id), None
            )
            if building is None:
                raise RoomInfoNotFoundError(f"building {building_id!r} not found")

            form = {**form, "build": building_id}
            floors = await self._post(client, QUERY_FLOORS_PATH, form, Floors)
            floor = next((f for f in floors.floors if f.floor_id == floor_id), None)
            if floor is None:
                raise RoomInfoNotFoundError(f"floor {floor_id!r} not found")

            form = {**form, "floor": floor_id}
            rooms = await self._post(client, QUERY_ROOMS_PATH, form, Rooms)
            room = next((r for r in rooms.rooms if r.room_name == room_name), None)
            if room is None:
                raise RoomInfoNotFoundError(f"room {room_name!r} not found")

        return RoomInfo(
            area=districts.areas[-1],
            district=district,
            building=building,
            floor=floor,
            room=room,
        )

    @staticmethod
    async def _post(
        client: httpx.AsyncClient,
        path: str,
        form: dict[str, str],
        model: type[_M],
    ) -> _M:
        try:
            response = await client.post(path, data=form)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"room directory query {path} failed: {exc}") from exc
        try:
            return model.model_validate_json(response.content)
        except PydanticValidationError as exc:
            logger.error("Invalid %s response, maybe permission denied: %s", path, exc)
            raise NotAuthenticatedError() from exc

