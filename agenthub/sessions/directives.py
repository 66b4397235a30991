"""Inline ``/think`` directive parsing for lead-agent messages."""

from __future__ import annotations

import re
from typing import Optional, cast

from pydantic import BaseModel

from agenthub.sessions.store import ThinkLevel

_THINK_ALIASES: dict[str, str] = {
    "min": "minimal",
    "mid": "medium",
    "med": "medium",
    "max": "high",
    "ultra": "high",
    "none": "off",
}

_VALID_LEVELS = {"off", "minimal", "low", "medium", "high", "xhigh", *_THINK_ALIASES}

# /think, /think level, /think:level, /t, /t level, /t:level, then the rest of the message
_DIRECTIVE_RE = re.compile(r"^/(?:think|t)(?::(\S+)|\s+(\S+))?(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)


class ThinkDirective(BaseModel):
    message: str
    has_directive: bool = False
    think_level: Optional[ThinkLevel] = None
    raw_level: Optional[str] = None


def parse_think_directive(message: str) -> ThinkDirective:
    """Strip a leading think directive and resolve its level.

    An unknown level still counts as a directive; ``raw_level`` carries the
    original argument so callers can report it.
    """
    match = _DIRECTIVE_RE.match(message.strip())
    if match is None:
        return ThinkDirective(message=message)

    raw_level = match.group(1) or match.group(2)
    rest = match.group(3) or ""
    if not raw_level:
        return ThinkDirective(message=rest, has_directive=True)

    normalized = raw_level.lower()
    if normalized not in _VALID_LEVELS:
        return ThinkDirective(message=rest, has_directive=True, raw_level=raw_level)

    level = cast(ThinkLevel, _THINK_ALIASES.get(normalized, normalized))
    return ThinkDirective(message=rest, has_directive=True, think_level=level, raw_level=raw_level)
