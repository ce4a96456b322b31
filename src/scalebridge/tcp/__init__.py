"""TCP command protocol for scale readings.

See :mod:`scalebridge.tcp.server` and :mod:`scalebridge.tcp.responder`.
"""

from __future__ import annotations

from .responder import CommandResponder
from .server import ScaleTcpServer, TcpServerConfig

__all__ = ["CommandResponder", "ScaleTcpServer", "TcpServerConfig"]
