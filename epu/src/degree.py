"""
Async HTTPS client for the e-pay electricity bill query.

Queries the remaining degree of one room by POSTing the room identity as a
form to ``/epaycas/electric/queryelectricbill`` with the session cookies and
CSRF token of a logged-in browser session.

Failures are classified so the polling loop can decide what to log:

- non-JSON response or an error return code: :class:`NotAuthenticatedError`
  (the e-pay site answers with its login page once the session expires);
- transport errors, invalid JSON, a missing or non-finite degree:
  :class:`DegreeQueryError`.

CHANGELOG:
- 2026-10-19: Reject NaN and infinite degrees
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from epu.src.errors import (
    DegreeQueryError,
    InvalidCredentialsError,
    NotAuthenticatedError,
    RoomConfigMissingError,
)
from epu.src.models import Credentials, RoomIdentity

logger = logging.getLogger(__name__)

QUERY_BILL_PATH = "/epaycas/electric/queryelectricbill"

_DEFAULT_TIMEOUT_S = 15.0
_SUCCESS_MSG = "成功"
_SYSID_ELECTRICITY = "1"


def session_headers(credentials: Credentials) -> dict[str, str]:
    """Build the Cookie / X-CSRF-TOKEN headers for an e-pay request.

    Raises:
        InvalidCredentialsError: If a value cannot be sent as a header.
    """
    headers = {
        "Cookie": credentials.cookie_header(),
        "X-CSRF-TOKEN": credentials.x_csrf_token,
    }
    for value in headers.values():
        if not value.isascii() or not value.isprintable():
            raise InvalidCredentialsError()
    return headers


class QueryResponse(BaseModel):
    code: int = Field(alias="retcode")
    msg: str = Field(alias="retmsg")
    degree: float | None = Field(default=None, alias="restElecDegree")


class DegreeSource:
    """Queries the remaining electricity degree of a room.

    A fresh ``httpx.AsyncClient`` is created per query, so the source holds
    no connection state and can be shared by the polling loop and request
    handlers.

    Args:
        base_url: E-pay base URL, e.g. ``https://epay.ecnu.edu.cn``.
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

    async def sample(self, identity: RoomIdentity, credentials: Credentials) -> float:
        """Return the current remaining degree of *identity*.

        Raises:
            RoomConfigMissingError: If no valid room is configured.
            InvalidCredentialsError: If the credentials cannot be sent.
            NotAuthenticatedError: If the session is missing or expired.
            DegreeQueryError: On any other failure.
        """
        if identity.is_invalid():
            raise RoomConfigMissingError()

        form = {
            "sysid": _SYSID_ELECTRICITY,
            "roomNo": identity.room_no,
            "elcarea": str(identity.elcarea),
            "elcbuis": identity.elcbuis,
        }
        headers = session_headers(credentials)

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_s,
                transport=self._transport,
            ) as client:
                response = await client.post(QUERY_BILL_PATH, data=form, headers=headers)
        except httpx.HTTPError as exc:
            raise DegreeQueryError(f"degree query failed: {exc}") from exc

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            raise NotAuthenticatedError("permission denied")

        try:
            ret = QueryResponse.model_validate_json(response.content)
        except PydanticValidationError as exc:
            raise DegreeQueryError("unexpected degree response shape") from exc

        if ret.code != 0 or ret.msg != _SUCCESS_MSG:
            raise NotAuthenticatedError(f"ecnu error: {ret.msg}")
        if ret.degree is None:
            raise DegreeQueryError("response has no degree provided")
        if not math.isfinite(ret.degree):
            raise DegreeQueryError(f"response has a non-finite degree: {ret.degree!r}")
        return ret.degree
