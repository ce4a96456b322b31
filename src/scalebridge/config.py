"""Runtime configuration for scalebridge.

Two layers:

1) Module-level defaults, each overridable via environment variables. This
   is useful when running as a systemd service, where `/etc/scalebridge/env`
   can hold per-host overrides.
2) A TOML file (``config.toml`` by default) holding the per-installation
   settings. It is loaded into an immutable :class:`BridgeSettings` snapshot
   and can be re-read periodically by :class:`ConfigReloader`.

Parsing rules for environment variables
- booleans: 1/0, true/false, yes/no, on/off
- integers: decimal by default; `0x` prefix is allowed for hex
- floats: standard Python float format

Importing this module does no I/O; only :func:`load_settings` touches disk.
"""

from __future__ import annotations

import os
import threading
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Mapping, Optional


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None or v == "" else v


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    s = v.strip().lower()
    try:
        # allow hex like 0x1a
        return int(s, 0)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v.strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    s = v.strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return default


# -----------------------------------------------------------------------------
# Config file
# -----------------------------------------------------------------------------

# Default path of the TOML settings file (overridden by the CLI positional arg).
CONFIG_PATH = _env_str("SCALE_CONFIG_PATH", "config.toml")

# Re-read the config file periodically and apply changed timing windows.
CONFIG_RELOAD = _env_bool("SCALE_CONFIG_RELOAD", True)
CONFIG_RELOAD_PERIOD_SEC = _env_float("SCALE_CONFIG_RELOAD_PERIOD_SEC", 5.0)


# -----------------------------------------------------------------------------
# Scale serial line
# -----------------------------------------------------------------------------

# Fallbacks used when a key is missing from the TOML file.
SERIAL_PORT = _env_str("SCALE_SERIAL_PORT", "/dev/ttyUSB0")
SERIAL_BAUD = _env_int("SCALE_SERIAL_BAUD", 9600)
SERIAL_DATA_BITS = _env_str("SCALE_SERIAL_DATA_BITS", "8")
SERIAL_PARITY = _env_str("SCALE_SERIAL_PARITY", "none")
SERIAL_STOP_BITS = _env_str("SCALE_SERIAL_STOP_BITS", "1")
SERIAL_TIMEOUT_MS = _env_int("SCALE_SERIAL_TIMEOUT_MS", 1000)

# Bridge loop tick: max time spent waiting on the outgoing queue before the
# next serial read.
SERIAL_POLL_MS = _env_int("SCALE_SERIAL_POLL_MS", 50)
SERIAL_READ_SIZE = _env_int("SCALE_SERIAL_READ_SIZE", 1024)

# Max number of pending device writes. 0 means unbounded.
SERIAL_WRITE_QUEUE_MAX = _env_int("SCALE_SERIAL_WRITE_QUEUE_MAX", 0)

# Log every raw chunk and partial frame (very chatty).
SERIAL_DEBUG = _env_bool("SCALE_SERIAL_DEBUG", False)

# Bytes written to the scale to request a new reading.
TRIGGER_COMMAND = _env_str("SCALE_TRIGGER_COMMAND", "W").encode("ascii", errors="ignore")


# -----------------------------------------------------------------------------
# Reading freshness windows
# -----------------------------------------------------------------------------

# "1" requests: how old a cached reading may be.
CACHE_DURATION_MS = _env_int("SCALE_CACHE_DURATION_MS", 1000)

# "W" requests: a reading this recent is served without bothering the scale.
W_DURATION_MS = _env_int("SCALE_W_DURATION_MS", 500)

# "W" requests: how long to wait for the scale to answer the trigger.
W_RESPONSE_TIMEOUT_MS = _env_int("SCALE_W_RESPONSE_TIMEOUT_MS", 500)

# Cache poll cadence while waiting for a fresh reading, and the hard cap on
# the number of polls (so the wait never exceeds FRESH_POLL_MS * FRESH_MAX_POLLS).
FRESH_POLL_MS = _env_int("SCALE_FRESH_POLL_MS", 50)
FRESH_MAX_POLLS = _env_int("SCALE_FRESH_MAX_POLLS", 20)


# -----------------------------------------------------------------------------
# TCP listener
# -----------------------------------------------------------------------------

TCP_ADDRESS = _env_str("SCALE_TCP_ADDRESS", "0.0.0.0:2029")
TCP_RECV_SIZE = _env_int("SCALE_TCP_RECV_SIZE", 1024)


# -----------------------------------------------------------------------------
# Settings snapshot
# -----------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when the settings file is missing, malformed or invalid."""


_VALID_DATA_BITS = ("5", "6", "7", "8")
_VALID_PARITY = ("none", "odd", "even")
_VALID_STOP_BITS = ("1", "2")

# Older config files use the Spanish key name.
_KEY_ALIASES = {"recargar_configuracion": "reload_config"}


@dataclass(frozen=True)
class BridgeSettings:
    serial_port: str = SERIAL_PORT
    baud_rate: int = SERIAL_BAUD
    data_bits: str = SERIAL_DATA_BITS
    parity: str = SERIAL_PARITY
    stop_bits: str = SERIAL_STOP_BITS
    timeout_ms: int = SERIAL_TIMEOUT_MS
    cache_duration_ms: int = CACHE_DURATION_MS
    w_duration_ms: int = W_DURATION_MS
    w_response_timeout_ms: int = W_RESPONSE_TIMEOUT_MS
    tcp_address: str = TCP_ADDRESS
    reload_config: bool = CONFIG_RELOAD

    @property
    def cache_duration_s(self) -> float:
        return self.cache_duration_ms / 1000.0

    @property
    def w_duration_s(self) -> float:
        return self.w_duration_ms / 1000.0

    @property
    def w_response_timeout_s(self) -> float:
        return self.w_response_timeout_ms / 1000.0

    def tcp_host_port(self) -> tuple[str, int]:
        return parse_address(self.tcp_address)

    def restart_required(self, other: "BridgeSettings") -> list[str]:
        """Names of changed fields that only take effect after a restart."""

        keys = ("serial_port", "baud_rate", "data_bits", "parity", "stop_bits", "timeout_ms", "tcp_address")
        return [k for k in keys if getattr(self, k) != getattr(other, k)]


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6addr]:port``) into a bind tuple."""

    s = str(address or "").strip()
    host, sep, port_s = s.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"invalid TCP address {address!r} (expected host:port)")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_s)
    except ValueError:
        raise ConfigError(f"invalid TCP port in {address!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"TCP port out of range in {address!r}")
    return host, port


def _choice(name: str, value: Any, valid: tuple[str, ...]) -> str:
    s = str(value).strip().lower()
    if s not in valid:
        raise ConfigError(f"invalid {name} {value!r} (expected one of {', '.join(valid)})")
    return s


def _non_negative_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        v = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if v < 0:
        raise ConfigError(f"{name} must be >= 0, got {v}")
    return v


def settings_from_mapping(data: Mapping[str, Any]) -> BridgeSettings:
    """Build a validated snapshot from a parsed TOML table.

    Missing keys fall back to the module defaults; unknown keys are ignored.
    """

    raw = {_KEY_ALIASES.get(k, k): v for k, v in dict(data).items()}
    known = {f.name for f in fields(BridgeSettings)}
    kw = {k: v for k, v in raw.items() if k in known}

    if "serial_port" in kw:
        kw["serial_port"] = str(kw["serial_port"]).strip()
        if not kw["serial_port"]:
            raise ConfigError("serial_port must not be empty")
    if "baud_rate" in kw:
        kw["baud_rate"] = _non_negative_int("baud_rate", kw["baud_rate"])
        if kw["baud_rate"] == 0:
            raise ConfigError("baud_rate must be positive")
    if "data_bits" in kw:
        kw["data_bits"] = _choice("data_bits", kw["data_bits"], _VALID_DATA_BITS)
    if "parity" in kw:
        kw["parity"] = _choice("parity", kw["parity"], _VALID_PARITY)
    if "stop_bits" in kw:
        kw["stop_bits"] = _choice("stop_bits", kw["stop_bits"], _VALID_STOP_BITS)
    for k in ("timeout_ms", "cache_duration_ms", "w_duration_ms", "w_response_timeout_ms"):
        if k in kw:
            kw[k] = _non_negative_int(k, kw[k])
    if "tcp_address" in kw:
        kw["tcp_address"] = str(kw["tcp_address"]).strip()
        parse_address(kw["tcp_address"])
    if "reload_config" in kw:
        if not isinstance(kw["reload_config"], bool):
            raise ConfigError(f"reload_config must be true/false, got {kw['reload_config']!r}")

    return BridgeSettings(**kw)


def load_settings(path: str | os.PathLike[str]) -> BridgeSettings:
    """Read and validate the TOML settings file."""

    p = Path(path)
    try:
        with p.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {p}") from None
    except OSError as e:
        raise ConfigError(f"cannot read config file {p}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"cannot parse config file {p}: {e}") from e
    try:
        return settings_from_mapping(data)
    except ConfigError as e:
        raise ConfigError(f"{p}: {e}") from None


def log_settings(settings: BridgeSettings, log_fn: Callable[[str], None] = print) -> None:
    log_fn("[config] settings loaded:")
    log_fn(f"  serial port           : {settings.serial_port}")
    log_fn(f"  baud rate             : {settings.baud_rate}")
    log_fn(f"  data bits             : {settings.data_bits}")
    log_fn(f"  parity                : {settings.parity}")
    log_fn(f"  stop bits             : {settings.stop_bits}")
    log_fn(f"  timeout (ms)          : {settings.timeout_ms}")
    log_fn(f"  cache duration (ms)   : {settings.cache_duration_ms}")
    log_fn(f"  W duration (ms)       : {settings.w_duration_ms}")
    log_fn(f"  W response timeout    : {settings.w_response_timeout_ms}")
    log_fn(f"  TCP address           : {settings.tcp_address}")
    log_fn(f"  config reload         : {settings.reload_config}")


class SettingsStore:
    """Thread-safe holder of the current :class:`BridgeSettings` snapshot."""

    def __init__(self, settings: BridgeSettings) -> None:
        self._lock = threading.Lock()
        self._settings = settings

    def snapshot(self) -> BridgeSettings:
        with self._lock:
            return self._settings

    def replace(self, settings: BridgeSettings) -> BridgeSettings:
        """Swap in a new snapshot and return the previous one."""

        with self._lock:
            prev = self._settings
            self._settings = settings
            return prev


class ConfigReloader:
    """Background thread that re-reads the settings file periodically."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        store: SettingsStore,
        *,
        period_s: float = CONFIG_RELOAD_PERIOD_SEC,
        log_fn: Callable[[str], None] = print,
    ) -> None:
        self.path = Path(path)
        self.store = store
        self.period_s = max(0.1, float(period_s))
        self.log = log_fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def check_once(self) -> bool:
        """Reload the file once. Returns False when reloading should stop."""

        try:
            new = load_settings(self.path)
        except ConfigError as e:
            self.log(f"[config] reload failed: {e}")
            return True

        if not new.reload_config:
            self.log("[config] reload disabled by config file")
            return False

        cur = self.store.snapshot()
        if new == cur:
            return True

        self.store.replace(new)
        self.log(f"[config] reloaded from {self.path}")
        log_settings(new, self.log)
        pending = cur.restart_required(new)
        if pending:
            self.log(f"[config] changes to {', '.join(pending)} take effect after restart")
        return True

    def _run(self) -> None:
        while not self._stop.wait(timeout=self.period_s):
            if not self.check_once():
                break

    def start(self) -> None:
        if self.is_running:
            return
        if not self.store.snapshot().reload_config:
            self.log("[config] reload disabled by config file")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="scalebridge-config", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
