"""Pytest configuration and shared fakes.

The unit tests focus on core logic, so the serial port is replaced by a small
in-memory fake and time is driven by a manual clock where timing matters.
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest


# Ensure src/ is importable when running from a checkout without install.
SRC = Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.t = float(start)

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)


class FakeSerialPort:
    """In-memory stand-in for a pyserial port opened with timeout=0.

    ``rx`` holds chunks the "scale" will return from read(), one per call.
    ``on_write`` lets a test react to a command (e.g. queue a reply).
    """

    def __init__(self, rx=None) -> None:
        self._lock = threading.Lock()
        self.rx: list[object] = list(rx or [])
        self.writes: list[bytes] = []
        self.flushes = 0
        self.closed = False
        self.write_error: Exception | None = None
        self.on_write = None

    def feed(self, chunk) -> None:
        with self._lock:
            self.rx.append(chunk)

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        with self._lock:
            self.writes.append(bytes(data))
        if self.on_write is not None:
            self.on_write(bytes(data))
        return len(data)

    def flush(self) -> None:
        self.flushes += 1

    def read(self, size: int = 1) -> bytes:
        with self._lock:
            if not self.rx:
                return b""
            item = self.rx.pop(0)
        if isinstance(item, BaseException):
            raise item
        return bytes(item)[:size]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_port() -> FakeSerialPort:
    return FakeSerialPort()
