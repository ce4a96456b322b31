"""Serial bridge: the only owner of the scale's serial port.

One thread runs :func:`serial_bridge_loop`. Each iteration it

1. waits briefly on the outgoing-command queue and writes any command to the
   scale, then
2. drains whatever bytes the scale has sent, frames them and stores every
   relevant message in the :class:`ReadingCache`.

Writing a trigger and receiving the reading it causes are decoupled in time
(the scale also reports on its own), so the read path must never stall
behind a write and vice versa.
"""

from __future__ import annotations

import queue
import threading
from typing import Callable, Optional

import serial  # pyserial

from .. import config
from ..core.cache import ReadingCache
from ..core.framing import MessageFramer, printable_bytes


class BridgeUnavailableError(RuntimeError):
    """The serial bridge can no longer accept commands."""


class OutgoingCommandQueue:
    """Multi-producer / single-consumer FIFO of raw device writes.

    Unbounded unless ``maxsize`` > 0. After :meth:`close` (bridge stopped),
    :meth:`send` raises :class:`BridgeUnavailableError`.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._q: "queue.Queue[bytes]" = queue.Queue(maxsize=max(0, int(maxsize)))
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, command: bytes) -> None:
        if self._closed.is_set():
            raise BridgeUnavailableError("serial bridge is not running")
        try:
            self._q.put_nowait(bytes(command))
        except queue.Full:
            raise BridgeUnavailableError("serial write queue is full") from None

    def receive(self, timeout_s: float) -> Optional[bytes]:
        """Next command, or None if nothing arrived within ``timeout_s``."""

        try:
            return self._q.get(timeout=max(0.0, float(timeout_s)))
        except queue.Empty:
            return None

    def qsize(self) -> int:
        return self._q.qsize()

    def close(self) -> None:
        self._closed.set()


class SerialBridge:
    """Moves bytes between the serial port, the framer and the cache.

    ``port`` only needs ``write``, ``flush`` and ``read`` (pyserial
    semantics: ``read`` returns ``b""`` when nothing is available).
    """

    def __init__(
        self,
        port,
        cache: ReadingCache,
        commands: OutgoingCommandQueue,
        *,
        framer: Optional[MessageFramer] = None,
        read_size: int = config.SERIAL_READ_SIZE,
        log_fn: Callable[[str], None] = print,
    ) -> None:
        self.port = port
        self.cache = cache
        self.commands = commands
        self.framer = framer or MessageFramer()
        self.read_size = max(1, int(read_size))
        self.log = log_fn

        self.messages_received = 0
        self.write_errors = 0
        self.read_errors = 0

    def _debug(self, msg: str) -> None:
        if bool(getattr(config, "SERIAL_DEBUG", False)):
            self.log(msg)

    @staticmethod
    def _should_log(count: int) -> bool:
        return count in (1, 10, 100) or (count % 500 == 0)

    def service_writes(self, wait_s: float) -> bool:
        """Write at most one queued command. Returns True if one was taken."""

        cmd = self.commands.receive(wait_s)
        if cmd is None:
            return False
        try:
            self.port.write(cmd)
            self.port.flush()
        except (serial.SerialException, OSError) as e:
            # Not retried; the next client trigger queues another write.
            self.write_errors += 1
            if self._should_log(self.write_errors):
                self.log(
                    f"[serial] write error sending {printable_bytes(cmd)} "
                    f"(count={self.write_errors}): {e}"
                )
            return True
        self.log(f"[serial] >> {printable_bytes(cmd)}")
        return True

    def service_reads(self) -> int:
        """Read what is available and cache relevant frames.

        Returns the number of relevant messages stored.
        """

        try:
            data = self.port.read(self.read_size)
        except serial.SerialTimeoutException:
            return 0
        except (serial.SerialException, OSError) as e:
            self.read_errors += 1
            if self._should_log(self.read_errors):
                self.log(f"[serial] read error (count={self.read_errors}): {e}")
            return 0

        if not data:
            return 0

        self._debug(f"[serial] << raw {printable_bytes(data)}")
        messages = self.framer.feed_all(data)
        for msg in messages:
            self.cache.set(msg)
            self.messages_received += 1
            self.log(f"[serial] reading: {printable_bytes(msg)}")
        if not messages:
            self._debug(f"[serial] partial frame: {printable_bytes(self.framer.pending)}")
        return len(messages)

    def run_once(self, wait_s: float) -> None:
        self.service_writes(wait_s)
        self.service_reads()


def serial_bridge_loop(
    bridge: SerialBridge,
    stop_event: threading.Event,
    *,
    poll_s: float = config.SERIAL_POLL_MS / 1000.0,
    log_fn: Callable[[str], None] = print,
) -> None:
    """Run the bridge until ``stop_event`` is set, then close its queue."""

    log_fn("[serial] bridge thread started; waiting for scale data.")
    try:
        while not stop_event.is_set():
            bridge.run_once(poll_s)
    finally:
        bridge.commands.close()
        log_fn("[serial] bridge thread stopped.")
