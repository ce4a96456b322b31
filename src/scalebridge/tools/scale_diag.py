#!/usr/bin/env python3
"""Quick serial diagnostics for the weighing scale.

Opens the scale port directly (stop the scalebridge service first), optionally
sends a command, then prints raw chunks and the framed readings that the
bridge would cache.

Preferred run methods:
  - scalebridge-diag             (after install)
  - python -m scalebridge.tools.scale_diag
"""

from __future__ import annotations

import argparse
import time
from typing import Optional, Sequence

import serial  # pyserial

from .. import config
from ..config import BridgeSettings
from ..core.framing import MessageFramer, printable_bytes
from ..device.transport import open_serial_port


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="scalebridge serial diagnostics")
    p.add_argument("--port", default=str(getattr(config, "SERIAL_PORT", "/dev/ttyUSB0")))
    p.add_argument("--baud", type=int, default=int(getattr(config, "SERIAL_BAUD", 9600)))
    p.add_argument("--data-bits", default=str(getattr(config, "SERIAL_DATA_BITS", "8")))
    p.add_argument("--parity", default=str(getattr(config, "SERIAL_PARITY", "none")))
    p.add_argument("--stop-bits", default=str(getattr(config, "SERIAL_STOP_BITS", "1")))
    p.add_argument("--send", default="", help="Optional command to send first, e.g. W")
    p.add_argument("--duration", type=float, default=5.0, help="How long to listen for data")
    p.add_argument("--poll", type=float, default=0.05, help="Sleep between reads in seconds")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)

    print("=== scalebridge serial diagnostics ===")
    print(
        f"port={args.port} baud={int(args.baud)} "
        f"framing={args.data_bits}{str(args.parity)[:1].upper()}{args.stop_bits}"
    )
    print()

    settings = BridgeSettings(
        serial_port=str(args.port),
        baud_rate=int(args.baud),
        data_bits=str(args.data_bits),
        parity=str(args.parity),
        stop_bits=str(args.stop_bits),
    )

    try:
        port = open_serial_port(settings)
    except (serial.SerialException, ValueError, OSError) as e:
        print(f"Failed to open serial port: {e}")
        return 2

    try:
        if str(args.send):
            payload = str(args.send).encode("ascii", errors="ignore")
            try:
                port.write(payload)
                port.flush()
                print(f"TX {printable_bytes(payload)}")
            except (serial.SerialException, OSError) as e:
                print(f"TX failed: {e}")
                return 2

        framer = MessageFramer()
        chunks = 0
        nbytes = 0
        messages = 0
        start = time.monotonic()
        deadline = start + max(0.0, float(args.duration))

        while time.monotonic() < deadline:
            try:
                data = port.read(int(getattr(config, "SERIAL_READ_SIZE", 1024)))
            except (serial.SerialException, OSError) as e:
                print(f"RX error: {e}")
                return 2
            if not data:
                time.sleep(max(0.0, float(args.poll)))
                continue

            chunks += 1
            nbytes += len(data)
            print(f"RX raw {printable_bytes(data)}")
            for msg in framer.feed_all(data):
                messages += 1
                print(f"   reading {printable_bytes(msg)}")

        print()
        print(f"Summary: chunks={chunks} bytes={nbytes} messages={messages} pending={len(framer.pending)}")
        return 0

    finally:
        try:
            port.close()
        except Exception:
            pass


if __name__ == "__main__":
    raise SystemExit(main())
