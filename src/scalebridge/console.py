"""Shared Rich console used as the application's ``log_fn``."""

from __future__ import annotations

from rich.console import Console

console = Console(highlight=False, log_path=False)


def log(msg: str) -> None:
    # Messages carry "[serial]" style tags; keep them literal.
    console.log(msg, markup=False)
