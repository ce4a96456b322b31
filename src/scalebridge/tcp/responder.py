"""Client command handling, independent of sockets.

:class:`CommandResponder` turns one chunk of client input into the bytes to
send back. Settings are pulled from ``settings_fn`` on every request so a
reloaded config file applies to the next command.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from .. import config
from ..config import BridgeSettings
from ..core.cache import ReadingCache
from ..core.commands import Command, parse_command
from ..core.fresh import FreshReadingRequest
from ..core.framing import printable_bytes
from ..device.bridge import OutgoingCommandQueue

NO_DATA = b"NO DATA\n"
W_TIMEOUT = b"W_TIMEOUT\n"
INVALID_COMMAND = b"Comando invalido\n"


class CommandResponder:
    def __init__(
        self,
        cache: ReadingCache,
        commands: OutgoingCommandQueue,
        settings_fn: Callable[[], BridgeSettings],
        *,
        trigger_command: bytes = config.TRIGGER_COMMAND,
        sleep_fn: Callable[[float], None] = time.sleep,
        log_fn: Callable[[str], None] = print,
    ) -> None:
        self.cache = cache
        self.commands = commands
        self.settings_fn = settings_fn
        self.trigger_command = bytes(trigger_command)
        self.sleep = sleep_fn
        self.log = log_fn

    def respond(self, text: str, *, peer: str = "") -> bytes:
        """Reply for one (already decoded) chunk of client input.

        Raises :class:`~scalebridge.device.bridge.BridgeUnavailableError` if a
        W request cannot reach the serial bridge.
        """

        line = (text or "").strip()
        tag = f" [{peer}]" if peer else ""
        self.log(f"[tcp] command{tag}: '{printable_bytes(line.encode('utf-8', errors='replace'))}'")

        cmd = parse_command(line)
        if cmd is Command.FETCH_CACHED:
            return self.fetch_cached(peer=peer)
        if cmd is Command.FETCH_FRESH:
            return self.fetch_fresh(peer=peer)

        self.log(f"[tcp] unrecognized command{tag}: '{printable_bytes(line.encode('utf-8', errors='replace'))}'")
        return INVALID_COMMAND

    def _deliver(self, data: Optional[bytes], fallback: bytes, peer: str) -> bytes:
        tag = f" [{peer}]" if peer else ""
        if data is None:
            return fallback
        self.log(f"[tcp] reading sent{tag}: {printable_bytes(data)}")
        return data

    def fetch_cached(self, *, peer: str = "") -> bytes:
        s = self.settings_fn()
        data = self.cache.get_if_recorded_within(s.cache_duration_s)
        if data is None:
            self.log("[tcp] no valid reading in cache")
        return self._deliver(data, NO_DATA, peer)

    def fetch_fresh(self, *, peer: str = "") -> bytes:
        s = self.settings_fn()
        req = FreshReadingRequest(
            self.cache,
            lambda: self.commands.send(self.trigger_command),
            w_duration_ms=s.w_duration_ms,
            timeout_ms=s.w_response_timeout_ms,
            poll_ms=int(getattr(config, "FRESH_POLL_MS", 50)),
            poll_cap=int(getattr(config, "FRESH_MAX_POLLS", 20)),
            sleep_fn=self.sleep,
            log_fn=self.log,
        )
        return self._deliver(req.run(), W_TIMEOUT, peer)
