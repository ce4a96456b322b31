"""Single-slot, time-stamped holder of the latest scale reading."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .framing import printable_bytes


@dataclass(frozen=True)
class CacheEntry:
    payload: bytes
    recorded_at: float  # clock() seconds


class ReadingCache:
    """Thread-safe container for the most recent relevant scale message.

    The serial bridge is the only writer. TCP handlers read it with one of
    the time-window getters. The lock only covers the slot swap; payloads
    are immutable ``bytes`` so callers can write them to sockets after the
    lock is released.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._entry: Optional[CacheEntry] = None

    def now(self) -> float:
        return self._clock()

    def set(self, payload: bytes) -> None:
        entry = CacheEntry(payload=bytes(payload), recorded_at=self._clock())
        with self._lock:
            self._entry = entry

    def entry(self) -> Optional[CacheEntry]:
        with self._lock:
            return self._entry

    def get_if_recorded_within(self, window_s: float) -> Optional[bytes]:
        """Payload if it was recorded no more than ``window_s`` seconds ago."""

        e = self.entry()
        if e is None:
            return None
        if (self._clock() - e.recorded_at) <= float(window_s):
            return e.payload
        return None

    def get_if_recorded_between(self, start: float, end: float) -> Optional[bytes]:
        """Payload if it was recorded inside the closed interval [start, end]."""

        e = self.entry()
        if e is None:
            return None
        if float(start) <= e.recorded_at <= float(end):
            return e.payload
        return None

    def age(self) -> Optional[float]:
        e = self.entry()
        if e is None:
            return None
        return self._clock() - e.recorded_at

    def describe(self) -> str:
        e = self.entry()
        if e is None:
            return "cache empty"
        age = self._clock() - e.recorded_at
        return f"last value: {printable_bytes(e.payload)} ({age:.3f}s ago)"
