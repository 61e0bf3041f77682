"""
Periodic degree sampling into the active room's record log.

Every ``poll_interval_s`` seconds the loop queries the degree of the active
room and records it. The loop never crashes on a failed iteration:

- success: the value is recorded (subject to dedup) and the loop is NORMAL;
- not authenticated: logged once when entering SUPPRESSED_NOT_AUTHENTICATED,
  then silent until a query succeeds again;
- any other failure (transport, timeout, missing room, storage): always
  logged, state unchanged;
- unexpected exceptions: logged with traceback, state unchanged.

The room and credentials are snapshotted at the start of each iteration, so
a room switch takes effect on the next tick and a sample is always written
to the log of the room it was queried for.

CHANGELOG:
- 2026-10-19: Bound each query with query_timeout_s
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import TYPE_CHECKING

from epu.src.errors import DegreeQueryError, EngineError, NotAuthenticatedError

if TYPE_CHECKING:
    from epu.src.degree import DegreeSource
    from epu.src.state import EngineState

logger = logging.getLogger(__name__)


class PollState(enum.Enum):
    NORMAL = "normal"
    SUPPRESSED_NOT_AUTHENTICATED = "suppressed_not_authenticated"


class PollingLoop:
    """Samples the active room periodically until shut down.

    Args:
        state: Engine state providing the active room and session.
        source: Degree source to query.
        poll_interval_s: Seconds between two iterations.
        query_timeout_s: Upper bound of one query.
    """

    def __init__(
        self,
        *,
        state: EngineState,
        source: DegreeSource,
        poll_interval_s: float = 10.0,
        query_timeout_s: float = 15.0,
    ) -> None:
        self._state = state
        self._source = source
        self._poll_interval_s = poll_interval_s
        self._query_timeout_s = query_timeout_s
        self.poll_state = PollState.NORMAL

    async def poll_once(self) -> bool:
        """Execute a single query-and-record iteration.

        Catches all exceptions so that the caller's loop is never broken.

        Returns:
            True if a new line was appended to the record log.
        """
        try:
            ctx, credentials = await self._state.snapshot()
            try:
                value = await asyncio.wait_for(
                    self._source.sample(ctx.identity, credentials),
                    timeout=self._query_timeout_s,
                )
            except TimeoutError as exc:
                raise DegreeQueryError("degree query timed out") from exc

            async with ctx.record_log.lock:
                written = ctx.record_log.record(value)
        except NotAuthenticatedError as exc:
            if self.poll_state is PollState.NORMAL:
                logger.error("Polling suppressed, e-pay session not authenticated: %s", exc)
                self.poll_state = PollState.SUPPRESSED_NOT_AUTHENTICATED
            return False
        except EngineError as exc:
            logger.error("Poll cycle failed: [%s] %s", exc.code, exc)
            return False
        except OSError:
            logger.error("Poll cycle failed writing the record log", exc_info=True)
            return False
        except Exception:
            logger.error("Poll cycle error", exc_info=True)
            return False

        if self.poll_state is not PollState.NORMAL:
            logger.info("E-pay session is valid again, polling resumed")
            self.poll_state = PollState.NORMAL
        if written:
            logger.info("Recorded degree %s for room %r", value, ctx.identity.room_no)
        else:
            logger.debug("Degree %s unchanged, not recorded", value)
        return written

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run :meth:`poll_once` every ``poll_interval_s`` until shutdown."""
        logger.info("Poll loop started (interval=%ss)", self._poll_interval_s)
        while not shutdown_event.is_set():
            await self.poll_once()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    shutdown_event.wait(),
                    timeout=self._poll_interval_s,
                )
        logger.info("Poll loop stopped")
