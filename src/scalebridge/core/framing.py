"""Assemble raw serial chunks into CR-terminated scale messages.

The scale talks in ASCII frames terminated by a carriage return (0x0D). Not
every frame is a weight: the line also carries heartbeats, echoes of our own
queries, "zero weight" reports and tare-table listings. Those are consumed
and dropped here so only real readings reach the cache.

This module does no I/O and no locking; the serial bridge owns the framer.
"""

from __future__ import annotations

from typing import Optional

TERMINATOR = 0x0D

# Control/status frames that are dropped on exact match.
IRRELEVANT_FRAMES: tuple[bytes, ...] = (
    bytes([0x18, 0x0D]),
    bytes([0x02, 0x3F, 0x58, 0x0D]),  # ?X
    bytes([0x02, 0x3F, 0x50, 0x0D]),  # ?P
    bytes([0x02, 0x3F, 0x44, 0x0D]),  # ?D
    bytes([0x02, 0x3F, 0x41, 0x0D]),  # ?A
    b"00000",
)

# Zero-weight report tail.
IRRELEVANT_SUFFIX = b"0.005\r"

# Header line of the tare table listing.
IRRELEVANT_MARKER = b"Count        Weight/kg"


def is_relevant(data: bytes) -> bool:
    """Return True if a complete frame should be kept as a reading."""

    b = bytes(data)
    if b in IRRELEVANT_FRAMES:
        return False
    if b.endswith(IRRELEVANT_SUFFIX):
        return False
    if IRRELEVANT_MARKER in b:
        return False
    return True


def printable_bytes(data: bytes) -> str:
    """Render bytes for logs: printable ASCII as-is, everything else as \\xNN."""

    out: list[str] = []
    for byte in bytes(data):
        if 0x20 <= byte <= 0x7E:
            out.append(chr(byte))
        else:
            out.append(f"\\x{byte:02X}")
    return "".join(out)


def assemble_and_filter(chunk: bytes, partial: bytearray) -> Optional[bytes]:
    """Append ``chunk`` to ``partial`` and pop at most one complete frame.

    Returns the frame (terminator included) if it is relevant. An irrelevant
    frame is still removed from ``partial``. Bytes after the first terminator
    stay buffered for the next call.
    """

    partial.extend(chunk)
    pos = partial.find(TERMINATOR)
    if pos < 0:
        return None
    frame = bytes(partial[: pos + 1])
    del partial[: pos + 1]
    if is_relevant(frame):
        return frame
    return None


class MessageFramer:
    """Stateful wrapper around :func:`assemble_and_filter`."""

    def __init__(self) -> None:
        self._partial = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet terminated."""

        return bytes(self._partial)

    def feed(self, chunk: bytes) -> Optional[bytes]:
        return assemble_and_filter(chunk, self._partial)

    def feed_all(self, chunk: bytes) -> list[bytes]:
        """Feed ``chunk`` and drain every complete frame currently buffered.

        Relevant frames are returned in arrival order.
        """

        self._partial.extend(chunk)
        out: list[bytes] = []
        while TERMINATOR in self._partial:
            msg = assemble_and_filter(b"", self._partial)
            if msg is not None:
                out.append(msg)
        return out

    def reset(self) -> None:
        self._partial.clear()
