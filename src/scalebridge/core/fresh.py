"""The "W" workflow: serve a recent reading or solicit a new one and wait.

State machine::

    TRY_CACHE_FIRST --hit--> DELIVERED
          |
          miss (trigger sent, t0 recorded)
          v
     AWAIT_FRESH --reading in [t0, t0+timeout]--> DELIVERED
          |
          polls exhausted
          v
      TIMED_OUT

Phase 1 uses the short ``w_duration`` window so a burst of W requests shares
one device round-trip. Phase 2 only accepts a reading recorded at or after
``t0``, so a client that falls through never gets data older than its own
request.

No socket I/O happens here; callers write the result.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Optional

from .cache import ReadingCache


class FreshState(Enum):
    TRY_CACHE_FIRST = "try_cache_first"
    AWAIT_FRESH = "await_fresh"
    DELIVERED = "delivered"
    TIMED_OUT = "timed_out"


def max_polls(timeout_ms: int, poll_ms: int, cap: int) -> int:
    """Number of cache polls allowed in AWAIT_FRESH."""

    if poll_ms <= 0:
        return 0
    return max(0, min(int(timeout_ms) // int(poll_ms), int(cap)))


class FreshReadingRequest:
    """One client's W request. Not reusable; create one per request."""

    # Extra warning once the wait drags on.
    SLOW_POLL_WARNING = 5

    def __init__(
        self,
        cache: ReadingCache,
        trigger: Callable[[], None],
        *,
        w_duration_ms: int,
        timeout_ms: int,
        poll_ms: int = 50,
        poll_cap: int = 20,
        sleep_fn: Callable[[float], None] = time.sleep,
        log_fn: Callable[[str], None] = print,
    ) -> None:
        self.cache = cache
        self.trigger = trigger
        self.w_duration_ms = int(w_duration_ms)
        self.timeout_ms = int(timeout_ms)
        self.poll_ms = int(poll_ms)
        self.max_polls = max_polls(self.timeout_ms, self.poll_ms, poll_cap)
        self.sleep = sleep_fn
        self.log = log_fn

        self.state = FreshState.TRY_CACHE_FIRST
        self.result: Optional[bytes] = None
        self.requested_at: Optional[float] = None
        self.polls = 0

    @property
    def done(self) -> bool:
        return self.state in (FreshState.DELIVERED, FreshState.TIMED_OUT)

    def step(self) -> FreshState:
        """Advance by one transition (or one poll while AWAIT_FRESH)."""

        if self.state is FreshState.TRY_CACHE_FIRST:
            data = self.cache.get_if_recorded_within(self.w_duration_ms / 1000.0)
            if data is not None:
                self.result = data
                self.state = FreshState.DELIVERED
                return self.state

            self.log("[tcp] no recent reading in cache; sending trigger to scale")
            # t0 must precede the trigger.
            self.requested_at = self.cache.now()
            self.trigger()
            self.state = FreshState.AWAIT_FRESH
            return self.state

        if self.state is FreshState.AWAIT_FRESH:
            if self.polls >= self.max_polls:
                self.log("[tcp] timeout waiting for a new reading after trigger")
                self.state = FreshState.TIMED_OUT
                return self.state

            assert self.requested_at is not None
            t0 = self.requested_at
            data = self.cache.get_if_recorded_between(t0, t0 + self.timeout_ms / 1000.0)
            if data is not None:
                self.result = data
                self.state = FreshState.DELIVERED
                return self.state

            if self.polls == self.SLOW_POLL_WARNING:
                self.log(f"[tcp] still no new reading after {self.polls} polls")
            self.sleep(self.poll_ms / 1000.0)
            self.polls += 1
            return self.state

        return self.state

    def run(self) -> Optional[bytes]:
        """Drive the state machine to completion; None means timed out."""

        while not self.done:
            self.step()
        return self.result
