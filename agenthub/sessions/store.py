"""
Session Store — durable ``(agent_id, session_key) -> SessionEntry`` map.

The store is a single JSON object keyed by ``"{agent_id}:{session_key}"``.
Every mutation re-reads the file, applies the change and replaces the file
atomically (temp file in the same directory + rename), so several processes
sharing one store never observe a torn document. There is no in-process
cache and no lock.

A lead agent's session rotates when it has been idle longer than the idle
window, or when the incoming message starts with a reset trigger.

Only uses: pathlib, uuid, datetime, pydantic, structlog — no agenthub
imports beyond the file helpers.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agenthub._fileio import now_ms, read_json, write_json_atomic

logger = structlog.get_logger(__name__)

ThinkLevel = Literal["off", "minimal", "low", "medium", "high", "xhigh"]

DEFAULT_SESSION_KEY = "main"
DEFAULT_IDLE_MINUTES = 360
DEFAULT_RESET_TRIGGERS: tuple[str, ...] = ("/new", "/reset")
DEFAULT_ABORT_TRIGGERS: tuple[str, ...] = ("/abort",)


class SessionEntry(BaseModel):
    """One persisted session. Wire keys are camelCase."""

    session_id: str = Field(alias="sessionId")
    updated_at: int = Field(alias="updatedAt")
    created_at: Optional[int] = Field(None, alias="createdAt")
    think_level: Optional[ThinkLevel] = Field(None, alias="thinkLevel")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ResolveSessionResult(BaseModel):
    """Outcome of :meth:`SessionStore.resolve_session_id`."""

    session_id: str
    message: str  # the incoming message with any reset trigger stripped
    is_new: bool
    created_at: int


def _match_trigger(message: str, triggers: Sequence[str]) -> tuple[bool, str]:
    """Return ``(matched, remainder)`` for an exact or ``trigger + " "`` match."""
    trimmed = message.strip()
    for trigger in triggers:
        if not trigger:
            continue
        if trimmed == trigger:
            return True, ""
        if trimmed.startswith(trigger + " "):
            return True, trimmed[len(trigger) + 1:]
    return False, message


def is_abort_trigger(message: str, triggers: Sequence[str] = DEFAULT_ABORT_TRIGGERS) -> bool:
    """True when *message* is an abort trigger (case-sensitive)."""
    matched, _ = _match_trigger(message, triggers)
    return matched


def format_session_timestamp(timestamp_ms: float) -> str:
    """Filesystem-safe UTC timestamp: ``2026-01-08T14-19-25-394Z``."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H-%M-%S-") + f"{dt.microsecond // 1000:03d}Z"


def _store_key(agent_id: str, session_key: str) -> str:
    return f"{agent_id}:{session_key}"


class SessionStore:
    """
    File-backed session map for lead agents.

    ``idle_minutes`` and ``reset_triggers`` are store-wide defaults; each call
    to :meth:`resolve_session_id` may override them.
    """

    def __init__(
        self,
        path: Path,
        idle_minutes: int = DEFAULT_IDLE_MINUTES,
        reset_triggers: Sequence[str] = DEFAULT_RESET_TRIGGERS,
    ) -> None:
        self.path = Path(path)
        self.idle_minutes = idle_minutes
        self.reset_triggers = tuple(reset_triggers)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read(self) -> tuple[dict[str, SessionEntry], dict[str, Any]]:
        """Parsed entries, plus the raw value of every key that failed to parse.

        Unparsed values are written back untouched so one odd entry never
        costs another agent its session.
        """
        raw = read_json(self.path, {})
        if not isinstance(raw, dict):
            logger.warning("session_store.not_an_object", path=str(self.path))
            return {}, {}
        entries: dict[str, SessionEntry] = {}
        unparsed: dict[str, Any] = {}
        for key, value in raw.items():
            try:
                entries[key] = SessionEntry.model_validate(value)
            except ValidationError:
                logger.warning("session_store.entry_invalid", key=key)
                unparsed[key] = value
        return entries, unparsed

    def _load(self) -> dict[str, SessionEntry]:
        return self._read()[0]

    def _save(self, entries: dict[str, SessionEntry], unparsed: dict[str, Any]) -> None:
        document = {k: v for k, v in unparsed.items() if k not in entries}
        document.update((k, e.to_wire()) for k, e in entries.items())
        write_json_atomic(self.path, document)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_session_id(
        self,
        agent_id: str,
        message: str = "",
        *,
        session_key: str = DEFAULT_SESSION_KEY,
        idle_minutes: int | None = None,
        reset_triggers: Sequence[str] | None = None,
    ) -> ResolveSessionResult:
        """
        Pick the session id for the next turn of ``agent_id``.

        A new id is minted when the message is a reset trigger or the existing
        entry has been idle longer than the window (a missing entry counts as
        expired). The entry's ``updatedAt`` is always bumped to now.
        """
        idle = idle_minutes if idle_minutes is not None else self.idle_minutes
        triggers = reset_triggers if reset_triggers is not None else self.reset_triggers

        entries, unparsed = self._read()
        key = _store_key(agent_id, session_key)
        entry = entries.get(key)
        now = now_ms()

        is_reset, stripped = _match_trigger(message, triggers)
        is_expired = entry is None or now - entry.updated_at > idle * 60_000
        is_new = is_reset or is_expired

        if is_new:
            session_id = str(uuid.uuid4())
            created_at = now
            entries[key] = SessionEntry(session_id=session_id, updated_at=now, created_at=now)
        else:
            session_id = entry.session_id
            created_at = entry.created_at if entry.created_at is not None else now
            entries[key] = entry.model_copy(update={"updated_at": now, "created_at": created_at})
        self._save(entries, unparsed)

        if is_new:
            logger.info(
                "session_store.session_started",
                agent_id=agent_id,
                session_key=session_key,
                session_id=session_id,
                reason="reset" if is_reset else "expired",
            )
        return ResolveSessionResult(
            session_id=session_id, message=stripped, is_new=is_new, created_at=created_at
        )

    def get_entry(self, agent_id: str, session_key: str = DEFAULT_SESSION_KEY) -> SessionEntry | None:
        """Read an entry without touching it."""
        return self._load().get(_store_key(agent_id, session_key))

    def restore_updated_at(
        self,
        agent_id: str,
        session_key: str,
        original_updated_at: int | None,
    ) -> None:
        """Put ``updatedAt`` back to a value captured earlier.

        No-op when nothing was captured or the entry does not exist.
        """
        if original_updated_at is None:
            return
        entries, unparsed = self._read()
        key = _store_key(agent_id, session_key)
        entry = entries.get(key)
        if entry is None:
            return
        entry.updated_at = original_updated_at
        self._save(entries, unparsed)

    def get_created_at(self, session_id: str) -> int | None:
        """Look up ``createdAt`` for a session id across all entries."""
        for entry in self._load().values():
            if entry.session_id == session_id:
                return entry.created_at
        return None

    def get_think_level(
        self, agent_id: str, session_key: str = DEFAULT_SESSION_KEY
    ) -> ThinkLevel | None:
        entry = self.get_entry(agent_id, session_key)
        return entry.think_level if entry else None

    def set_think_level(
        self,
        agent_id: str,
        session_key: str,
        level: ThinkLevel,
        session_id: str | None = None,
    ) -> None:
        """Set the think level, creating the entry when missing."""
        entries, unparsed = self._read()
        key = _store_key(agent_id, session_key)
        entry = entries.get(key)
        if entry is not None:
            entry.think_level = level
        else:
            now = now_ms()
            entries[key] = SessionEntry(
                session_id=session_id or str(uuid.uuid4()),
                updated_at=now,
                created_at=now,
                think_level=level,
            )
        self._save(entries, unparsed)
