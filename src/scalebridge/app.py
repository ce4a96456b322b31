"""scalebridge entry point: wire serial bridge, cache and TCP server."""

from __future__ import annotations

import argparse
import threading
from typing import Optional, Sequence

import serial  # pyserial

from . import __version__, config
from .config import ConfigError, ConfigReloader, SettingsStore, load_settings, log_settings
from .console import log as _log
from .core.cache import ReadingCache
from .device.bridge import OutgoingCommandQueue, SerialBridge, serial_bridge_loop
from .device.transport import open_serial_port
from .tcp import CommandResponder, ScaleTcpServer


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="scalebridge", description="Serial weighing scale to TCP bridge")
    p.add_argument(
        "config_path",
        nargs="?",
        default=str(getattr(config, "CONFIG_PATH", "config.toml")),
        help="TOML settings file (default: %(default)s)",
    )
    p.add_argument("--no-reload", action="store_true", help="Do not re-read the settings file while running")
    p.add_argument("--version", action="version", version=f"scalebridge {__version__}")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    _log(f"[config] loading settings from {args.config_path}")
    try:
        settings = load_settings(args.config_path)
    except ConfigError as e:
        _log(f"[config] {e}")
        return 2

    store = SettingsStore(settings)
    log_settings(settings, _log)

    try:
        port = open_serial_port(settings)
    except (serial.SerialException, ValueError, OSError) as e:
        _log(f"[serial] cannot open serial port {settings.serial_port}: {e}")
        return 2

    cache = ReadingCache()
    commands = OutgoingCommandQueue(maxsize=int(getattr(config, "SERIAL_WRITE_QUEUE_MAX", 0)))
    stop_event = threading.Event()
    bridge = SerialBridge(port, cache, commands, log_fn=_log)
    responder = CommandResponder(cache, commands, store.snapshot, log_fn=_log)

    reloader: Optional[ConfigReloader] = None
    server: Optional[ScaleTcpServer] = None
    bridge_thread: Optional[threading.Thread] = None
    try:
        try:
            server = ScaleTcpServer.from_address(settings.tcp_address, responder=responder, log_fn=_log)
            server.start()
        except (ConfigError, OSError) as e:
            _log(f"[tcp] cannot listen on {settings.tcp_address}: {e}")
            return 2

        bridge_thread = threading.Thread(
            target=serial_bridge_loop,
            args=(bridge, stop_event),
            kwargs={"poll_s": int(getattr(config, "SERIAL_POLL_MS", 50)) / 1000.0, "log_fn": _log},
            name="scalebridge-serial",
            daemon=True,
        )
        bridge_thread.start()

        if not args.no_reload:
            reloader = ConfigReloader(
                args.config_path,
                store,
                period_s=float(getattr(config, "CONFIG_RELOAD_PERIOD_SEC", 5.0)),
                log_fn=_log,
            )
            reloader.start()

        while not stop_event.wait(timeout=1.0):
            if not bridge_thread.is_alive():
                _log("[serial] bridge thread exited unexpectedly")
                return 1

    except KeyboardInterrupt:
        _log("Shutting down.")
        return 0
    finally:
        stop_event.set()
        if reloader is not None:
            reloader.stop()
        if server is not None:
            server.stop()
        if bridge_thread is not None:
            bridge_thread.join(timeout=2.0)
        commands.close()
        try:
            port.close()
        except Exception:
            pass
        _log(f"[serial] stopped; {cache.describe()}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
