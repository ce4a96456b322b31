from __future__ import annotations

import socket
import threading
import time

import pytest


def _recv_exact(sock: socket.socket, n: int, timeout_s: float = 3.0) -> bytes:
    sock.settimeout(timeout_s)
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def _ask(sock: socket.socket, line: bytes, expect: bytes) -> bytes:
    sock.sendall(line)
    return _recv_exact(sock, len(expect))


class _Rig:
    """Bridge + cache + server wired like the application, on a fake port."""

    def __init__(self, fake_port, *, w_duration_ms=50, w_response_timeout_ms=500) -> None:
        from scalebridge.config import BridgeSettings
        from scalebridge.core.cache import ReadingCache
        from scalebridge.device.bridge import OutgoingCommandQueue, SerialBridge, serial_bridge_loop
        from scalebridge.tcp import CommandResponder, ScaleTcpServer, TcpServerConfig

        self.logs: list[str] = []
        self.port = fake_port
        self.settings = BridgeSettings(
            cache_duration_ms=1000,
            w_duration_ms=w_duration_ms,
            w_response_timeout_ms=w_response_timeout_ms,
        )
        self.cache = ReadingCache()
        self.commands = OutgoingCommandQueue()
        self.bridge = SerialBridge(fake_port, self.cache, self.commands, log_fn=self.logs.append)
        self.stop_event = threading.Event()
        self.bridge_thread = threading.Thread(
            target=serial_bridge_loop,
            args=(self.bridge, self.stop_event),
            kwargs={"poll_s": 0.01, "log_fn": self.logs.append},
            daemon=True,
        )
        responder = CommandResponder(self.cache, self.commands, lambda: self.settings, log_fn=self.logs.append)
        self.server = ScaleTcpServer(
            cfg=TcpServerConfig(host="127.0.0.1", port=0),
            responder=responder,
            log_fn=self.logs.append,
        )

    def __enter__(self) -> "_Rig":
        self.bridge_thread.start()
        self.server.start()
        return self

    def __exit__(self, *exc) -> None:
        self.server.stop()
        self.stop_event.set()
        self.bridge_thread.join(timeout=2.0)

    def connect(self) -> socket.socket:
        host, port = self.server.server_address
        return socket.create_connection((host, port), timeout=3.0)

    def wait_for_cache(self, payload: bytes, timeout_s: float = 2.0) -> None:
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            e = self.cache.entry()
            if e is not None and e.payload == payload:
                return
            time.sleep(0.005)
        raise AssertionError(f"cache never received {payload!r}")


def test_server_address_before_and_after_start(fake_port):
    rig = _Rig(fake_port)
    assert rig.server.server_address is None
    with rig:
        host, port = rig.server.server_address
        assert host == "127.0.0.1"
        assert port > 0
        assert rig.server.is_running
    assert any("listening on" in m for m in rig.logs)


def test_empty_cache_replies_no_data(fake_port):
    with _Rig(fake_port) as rig, rig.connect() as s:
        assert _ask(s, b"1\n", b"NO DATA\n") == b"NO DATA\n"


def test_device_reading_served_to_client(fake_port):
    with _Rig(fake_port) as rig:
        fake_port.feed(b"12.34 kg\r")
        rig.wait_for_cache(b"12.34 kg\r")
        with rig.connect() as s:
            assert _ask(s, b"1\n", b"12.34 kg\r") == b"12.34 kg\r"


def test_fetch_fresh_gets_new_reading_not_stale_one(fake_port):
    fake_port.on_write = lambda data: fake_port.feed(b"7.77 kg\r") if data == b"W" else None
    with _Rig(fake_port, w_duration_ms=50) as rig:
        fake_port.feed(b"1.11 kg\r")
        rig.wait_for_cache(b"1.11 kg\r")
        time.sleep(0.1)  # now older than w_duration
        with rig.connect() as s:
            assert _ask(s, b"W\n", b"7.77 kg\r") == b"7.77 kg\r"
        assert fake_port.writes == [b"W"]


def test_fetch_fresh_silent_device_times_out(fake_port):
    with _Rig(fake_port, w_duration_ms=50, w_response_timeout_ms=200) as rig:
        fake_port.feed(b"1.11 kg\r")
        rig.wait_for_cache(b"1.11 kg\r")
        time.sleep(0.1)
        with rig.connect() as s:
            t0 = time.monotonic()
            assert _ask(s, b"W\n", b"W_TIMEOUT\n") == b"W_TIMEOUT\n"
            assert time.monotonic() - t0 >= 0.15
        assert fake_port.writes == [b"W"]


def test_connection_survives_invalid_and_multiple_commands(fake_port):
    with _Rig(fake_port) as rig, rig.connect() as s:
        assert _ask(s, b"hola\n", b"Comando invalido\n") == b"Comando invalido\n"
        assert _ask(s, b"1\n", b"NO DATA\n") == b"NO DATA\n"
        fake_port.feed(b"3.00 kg\r")
        rig.wait_for_cache(b"3.00 kg\r")
        assert _ask(s, b"111  \n", b"3.00 kg\r") == b"3.00 kg\r"


def test_invalid_utf8_is_rejected_not_fatal(fake_port):
    with _Rig(fake_port) as rig, rig.connect() as s:
        assert _ask(s, b"\xff\xfe\n", b"Comando invalido\n") == b"Comando invalido\n"
        assert _ask(s, b"1\n", b"NO DATA\n") == b"NO DATA\n"


def test_concurrent_clients_see_same_snapshot(fake_port):
    with _Rig(fake_port) as rig:
        fake_port.feed(b"8.88 kg\r")
        rig.wait_for_cache(b"8.88 kg\r")
        results: list[bytes] = []

        def client() -> None:
            with rig.connect() as s:
                results.append(_ask(s, b"1\n", b"8.88 kg\r"))

        threads = [threading.Thread(target=client) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)
        assert results == [b"8.88 kg\r"] * 5


def test_bridge_gone_closes_only_that_connection(fake_port):
    with _Rig(fake_port) as rig:
        rig.stop_event.set()
        rig.bridge_thread.join(timeout=2.0)
        assert rig.commands.closed

        with rig.connect() as s:
            s.sendall(b"W\n")
            assert _recv_exact(s, 1) == b""  # closed by server

        # Listener keeps serving other clients.
        with rig.connect() as s2:
            assert _ask(s2, b"1\n", b"NO DATA\n") == b"NO DATA\n"
        assert any("cannot request reading" in m for m in rig.logs)


def test_client_disconnect_is_logged(fake_port):
    with _Rig(fake_port) as rig:
        s = rig.connect()
        s.close()
        deadline = time.monotonic() + 2.0
        while time.monotonic() < deadline and not any("disconnected" in m for m in rig.logs):
            time.sleep(0.01)
        assert any("disconnected" in m for m in rig.logs)


def test_from_address_and_bind_failure():
    from scalebridge.config import ConfigError
    from scalebridge.core.cache import ReadingCache
    from scalebridge.device.bridge import OutgoingCommandQueue
    from scalebridge.tcp import CommandResponder, ScaleTcpServer

    responder = CommandResponder(ReadingCache(), OutgoingCommandQueue(), lambda: None, log_fn=lambda m: None)
    srv = ScaleTcpServer.from_address("127.0.0.1:0", responder=responder)
    assert srv.cfg.host == "127.0.0.1"
    assert srv.cfg.port == 0

    with pytest.raises(ConfigError):
        ScaleTcpServer.from_address("nonsense", responder=responder)

    srv.start()
    try:
        host, port = srv.server_address
        clash = ScaleTcpServer.from_address(f"{host}:{port}", responder=responder)
        # allow_reuse_address does not permit two listeners on one port.
        with pytest.raises(OSError):
            clash.start()
    finally:
        srv.stop()
