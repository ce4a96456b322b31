"""Client command classification."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional


class Command(Enum):
    FETCH_CACHED = "1"
    FETCH_FRESH = "W"


# Clients pad or repeat the command character; both are accepted.
_RE_FETCH_CACHED = re.compile(r"^1+\s*$")
_RE_FETCH_FRESH = re.compile(r"^W+\s*$")


def parse_command(line: str) -> Optional[Command]:
    if _RE_FETCH_CACHED.match(line):
        return Command.FETCH_CACHED
    if _RE_FETCH_FRESH.match(line):
        return Command.FETCH_FRESH
    return None
