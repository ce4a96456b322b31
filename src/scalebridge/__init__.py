"""scalebridge

Bridges a serial weighing scale to TCP clients: keeps the latest reading
and serves it (or solicits a fresh one) on request.

Entry point: `scalebridge` (console script) or `python -m scalebridge`.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__ = version("scalebridge")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
