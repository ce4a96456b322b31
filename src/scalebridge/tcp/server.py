"""Plain-text TCP front end.

One thread per client connection (``socketserver.ThreadingTCPServer``). A
connection stays open across commands until the peer closes it or a socket
error occurs; either only ends that connection's thread.
"""

from __future__ import annotations

import socket
import socketserver
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .. import config
from ..device.bridge import BridgeUnavailableError
from .responder import CommandResponder


@dataclass(frozen=True)
class TcpServerConfig:
    host: str = "0.0.0.0"
    port: int = 2029
    recv_size: int = 1024


class _Context:
    def __init__(
        self,
        *,
        cfg: TcpServerConfig,
        responder: CommandResponder,
        log_fn: Callable[[str], None] | None = None,
    ) -> None:
        self.cfg = cfg
        self.responder = responder
        self.log = log_fn or (lambda _m: None)


class _ServerWithContext(socketserver.ThreadingTCPServer):
    """ThreadingTCPServer with an attached context."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, RequestHandlerClass, *, context: _Context):
        if ":" in str(server_address[0]):
            self.address_family = socket.AF_INET6
        super().__init__(server_address, RequestHandlerClass)
        self.context = context


class _Handler(socketserver.BaseRequestHandler):
    server: _ServerWithContext  # type: ignore[assignment]

    def handle(self) -> None:
        ctx = self.server.context
        peer = "unknown"
        try:
            host, port = self.client_address[:2]
            peer = f"{host}:{port}"
        except Exception:
            pass
        ctx.log(f"[tcp] connection from {peer}")

        sock: socket.socket = self.request
        recv_size = max(1, int(ctx.cfg.recv_size))
        while True:
            try:
                data = sock.recv(recv_size)
            except OSError as e:
                ctx.log(f"[tcp] read error [{peer}]: {e}")
                return
            if not data:
                ctx.log(f"[tcp] client disconnected [{peer}]")
                return

            text = data.decode("utf-8", errors="replace")
            try:
                reply = ctx.responder.respond(text, peer=peer)
            except BridgeUnavailableError as e:
                ctx.log(f"[tcp] cannot request reading [{peer}]: {e}; closing connection")
                return

            try:
                sock.sendall(reply)
            except OSError as e:
                ctx.log(f"[tcp] write error [{peer}]: {e}")
                return


class ScaleTcpServer:
    """Background thread that accepts clients and serves scale readings."""

    def __init__(
        self,
        *,
        cfg: TcpServerConfig,
        responder: CommandResponder,
        log_fn: Callable[[str], None] | None = None,
    ) -> None:
        self.cfg = cfg
        self._context = _Context(cfg=cfg, responder=responder, log_fn=log_fn)
        self._server: Optional[_ServerWithContext] = None
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_address(
        cls,
        address: str,
        *,
        responder: CommandResponder,
        log_fn: Callable[[str], None] | None = None,
    ) -> "ScaleTcpServer":
        host, port = config.parse_address(address)
        cfg = TcpServerConfig(host=host, port=port, recv_size=int(getattr(config, "TCP_RECV_SIZE", 1024)))
        return cls(cfg=cfg, responder=responder, log_fn=log_fn)

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def server_address(self) -> Optional[tuple[str, int]]:
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start(self) -> None:
        if self.is_running:
            return

        # Bind early so we fail fast with a useful error message.
        addr = (str(self.cfg.host), int(self.cfg.port))
        self._server = _ServerWithContext(addr, _Handler, context=self._context)

        def _run() -> None:
            assert self._server is not None
            host, port = self._server.server_address[:2]
            self._context.log(f"[tcp] listening on {host}:{port}")
            try:
                self._server.serve_forever(poll_interval=0.5)
            finally:
                try:
                    self._server.server_close()
                except Exception:
                    pass

        self._thread = threading.Thread(target=_run, name="scalebridge-tcp", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        srv = self._server
        if srv is None:
            return
        try:
            srv.shutdown()
        except Exception:
            pass
        if self._thread is not None:
            self._thread.join(timeout=2.0)
