"""Open the scale's serial line with pyserial."""

from __future__ import annotations

import serial  # pyserial

from ..config import BridgeSettings

_DATA_BITS = {
    "5": serial.FIVEBITS,
    "6": serial.SIXBITS,
    "7": serial.SEVENBITS,
    "8": serial.EIGHTBITS,
}

_PARITY = {
    "none": serial.PARITY_NONE,
    "odd": serial.PARITY_ODD,
    "even": serial.PARITY_EVEN,
}

_STOP_BITS = {
    "1": serial.STOPBITS_ONE,
    "2": serial.STOPBITS_TWO,
}


def parse_data_bits(value: object) -> int:
    try:
        return _DATA_BITS[str(value).strip()]
    except KeyError:
        raise ValueError(f"invalid data_bits: {value!r}") from None


def parse_parity(value: object) -> str:
    try:
        return _PARITY[str(value).strip().lower()]
    except KeyError:
        raise ValueError(f"invalid parity: {value!r}") from None


def parse_stop_bits(value: object) -> float:
    try:
        return _STOP_BITS[str(value).strip()]
    except KeyError:
        raise ValueError(f"invalid stop_bits: {value!r}") from None


def open_serial_port(settings: BridgeSettings) -> serial.SerialBase:
    """Open the configured port (device path or pyserial URL like ``loop://``).

    Reads are non-blocking (``timeout=0``); the bridge loop paces itself on
    the outgoing-command queue instead.
    """

    return serial.serial_for_url(
        settings.serial_port,
        baudrate=int(settings.baud_rate),
        bytesize=parse_data_bits(settings.data_bits),
        parity=parse_parity(settings.parity),
        stopbits=parse_stop_bits(settings.stop_bits),
        timeout=0,
        write_timeout=(settings.timeout_ms / 1000.0) if settings.timeout_ms > 0 else None,
    )
