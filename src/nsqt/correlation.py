"""Correlation of asynchronous replies with the calls that requested them.

Every call that wants a reply is given a unique deadline (milliseconds on a
monotonic clock).  The deadline travels with the request and comes back with
the reply, so it doubles as the correlation token.  Pending calls are kept
sorted by deadline which makes both the reply lookup and the expiry sweep
cheap:

- ``resolve`` finds a deadline by binary search;
- ``sweep`` pops expired calls from the front.

Example:
    clock = DeadlineClock()
    table = CorrelationTable()

    deadline = table.register(clock.issue(5.0), handler)
    ...
    call = table.resolve(deadline)   # reply arrived
    table.sweep(clock.now())         # or it timed out
"""

from __future__ import annotations

import bisect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

from nsqt.exceptions import ReplyTimeoutError

logger = logging.getLogger(__name__)

ResultHandler: TypeAlias = Callable[[Any], None]
"""Receives either the reply value or an exception instance."""


class DeadlineClock:
    """Issues strictly increasing deadlines in integer milliseconds."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._last_issued = 0

    def now(self) -> int:
        return int(self._clock() * 1000)

    def issue(self, timeout: float) -> int:
        """Return ``now + timeout`` bumped past the last issued deadline.

        Two calls issued within the same millisecond still get distinct
        deadlines.
        """
        deadline = self.now() + int(timeout * 1000)
        if deadline <= self._last_issued:
            deadline = self._last_issued + 1
        self._last_issued = deadline
        return deadline


@dataclass(slots=True)
class PendingCall:
    """A call waiting for its reply."""

    deadline: int
    handler: ResultHandler
    fired: bool = False

    def fire(self, outcome: Any) -> bool:
        """Deliver *outcome* to the handler unless it was already delivered."""
        if self.fired:
            return False
        self.fired = True
        self.handler(outcome)
        return True


class CorrelationTable:
    """Pending calls ordered by ascending deadline."""

    def __init__(self) -> None:
        self._deadlines: list[int] = []  # sorted, parallel to _calls
        self._calls: list[PendingCall] = []

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, deadline: int) -> bool:
        return self._index_of(deadline) is not None

    @property
    def deadlines(self) -> list[int]:
        return list(self._deadlines)

    def register(self, deadline: int, handler: ResultHandler) -> int:
        """Add a pending call and return its correlation token."""
        index = bisect.bisect_right(self._deadlines, deadline)
        self._deadlines.insert(index, deadline)
        self._calls.insert(index, PendingCall(deadline, handler))
        return deadline

    def resolve(self, deadline: int) -> PendingCall | None:
        """Remove and return the call registered under *deadline*.

        A missing entry means the reply is stale or duplicated (the call
        already timed out or was answered), so it is logged and ``None`` is
        returned.
        """
        index = self._index_of(deadline)
        if index is None:
            logger.warning("No pending call for deadline %d", deadline)
            return None
        del self._deadlines[index]
        return self._calls.pop(index)

    def sweep(self, now: int) -> list[PendingCall]:
        """Fail every call whose deadline is before *now*, oldest first."""
        count = bisect.bisect_left(self._deadlines, now)
        expired = self._calls[:count]
        del self._deadlines[:count]
        del self._calls[:count]
        for call in expired:
            logger.debug("Pending call %d timed out", call.deadline)
            call.fire(ReplyTimeoutError(call.deadline))
        return expired

    def _index_of(self, deadline: int) -> int | None:
        index = bisect.bisect_left(self._deadlines, deadline)
        if index < len(self._deadlines) and self._deadlines[index] == deadline:
            return index
        return None
