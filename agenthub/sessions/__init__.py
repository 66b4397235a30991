"""Lead-agent sessions: durable store, live streaming registry, directives."""

from agenthub.sessions.directives import ThinkDirective, parse_think_directive
from agenthub.sessions.live import LiveSession, LiveSessions
from agenthub.sessions.store import (
    DEFAULT_ABORT_TRIGGERS,
    DEFAULT_IDLE_MINUTES,
    DEFAULT_RESET_TRIGGERS,
    DEFAULT_SESSION_KEY,
    ResolveSessionResult,
    SessionEntry,
    SessionStore,
    ThinkLevel,
    format_session_timestamp,
    is_abort_trigger,
)

__all__ = [
    "DEFAULT_ABORT_TRIGGERS",
    "DEFAULT_IDLE_MINUTES",
    "DEFAULT_RESET_TRIGGERS",
    "DEFAULT_SESSION_KEY",
    "LiveSession",
    "LiveSessions",
    "ResolveSessionResult",
    "SessionEntry",
    "SessionStore",
    "ThinkDirective",
    "ThinkLevel",
    "format_session_timestamp",
    "is_abort_trigger",
    "parse_think_directive",
]
