"""
Heartbeat — unattended check-in turns for lead agents.

Every agent with a ``heartbeat`` block gets a one-shot timer. When it fires
the scheduler re-reads the agent's *current* configuration, checks the
process-wide toggle, runs one turn against the agent's main session, and
re-arms the timer from now. The reply decides whether anything is delivered:

  - empty reply                       -> ``ok-empty``, nothing delivered
  - HEARTBEAT_OK with a short remark  -> ``ok-token``, nothing delivered
  - anything else                     -> ``sent``, delivered as an alert

Silent heartbeats must never keep an idle session alive, so the session's
``updatedAt`` is captured before the turn and restored afterwards in every
outcome except ``sent``.

Timers are plain ``loop.call_later`` handles: they hold no reference that
keeps the host process running, and one agent's slow turn never delays
another agent's timer.
"""

from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from agenthub.config import AgentConfig
from agenthub.events import HeartbeatEvent, HeartbeatStatus, Listeners
from agenthub.sessions.live import LiveSessions
from agenthub.sessions.store import DEFAULT_SESSION_KEY, SessionStore

logger = structlog.get_logger(__name__)

DEFAULT_HEARTBEAT_EVERY = "30m"
DEFAULT_ACK_MAX_CHARS = 300
DEFAULT_HEARTBEAT_PROMPT = (
    "Consider outstanding tasks and HEARTBEAT.md guidance from the workspace context "
    "(if present). Checkup sometimes on your human during (user local) day time."
)
HEARTBEAT_FILENAME = "HEARTBEAT.md"
PREVIEW_CHARS = 200

# HEARTBEAT_OK optionally wrapped in HTML tags or Markdown emphasis. ``\b`` keeps
# HEARTBEAT_OKAY intact; since ``_`` is a word character, _HEARTBEAT_OK_ is left alone.
_WRAP = r"(?:</?(?:b|strong|em|i|code|span)[^>]*>|\*{1,2})*"
_TOKEN_RE = re.compile(_WRAP + r"\bHEARTBEAT_OK\b" + _WRAP, re.IGNORECASE)

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(m|min|h|hr|s|sec)?$")
_UNIT_MS = {
    "s": 1000.0,
    "sec": 1000.0,
    "m": 60_000.0,
    "min": 60_000.0,
    "h": 3_600_000.0,
    "hr": 3_600_000.0,
}


class TurnRequest(BaseModel):
    """One unattended turn handed to the external turn runner."""

    agent_id: str
    session_id: str
    session_key: str = DEFAULT_SESSION_KEY
    message: str
    source: str = "heartbeat"


class TurnResult(BaseModel):
    payloads: list[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.payloads)


TurnRunner = Callable[[TurnRequest], Awaitable[TurnResult]]
AgentsProvider = Callable[[], Iterable[AgentConfig]]


class HeartbeatEvaluation(BaseModel):
    status: HeartbeatStatus
    stripped_text: str
    should_deliver: bool


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def parse_duration_ms(value: Optional[str], default_unit: str = "m") -> Optional[float]:
    """Parse ``"5"``, ``"5m"``, ``"1.5h"``, ``"30 sec"`` into milliseconds.

    Returns None for disabled (``0``, ``0m``, ``0h``, ``0s``), empty or
    malformed input.
    """
    if not value:
        return None
    text = value.strip().lower()
    if text in ("0", "0m", "0h", "0s"):
        return None
    match = _DURATION_RE.match(text)
    if match is None:
        return None
    amount = float(match.group(1))
    if amount <= 0:
        return None
    unit = match.group(2) or default_unit or "m"
    factor = _UNIT_MS.get(unit)
    if factor is None:
        return None
    return amount * factor


def strip_heartbeat_token(text: str) -> str:
    return _TOKEN_RE.sub("", text).strip()


def contains_heartbeat_token(text: str) -> bool:
    return _TOKEN_RE.search(text) is not None


def evaluate_heartbeat_reply(reply: Optional[str], ack_max_chars: int) -> HeartbeatEvaluation:
    """Classify a heartbeat reply and decide whether it is delivered."""
    if not reply or not reply.strip():
        return HeartbeatEvaluation(status="ok-empty", stripped_text="", should_deliver=False)

    stripped = strip_heartbeat_token(reply)
    if contains_heartbeat_token(reply) and len(stripped) <= ack_max_chars:
        return HeartbeatEvaluation(status="ok-token", stripped_text=stripped, should_deliver=False)

    return HeartbeatEvaluation(
        status="sent", stripped_text=stripped or reply.strip(), should_deliver=True
    )


def is_heartbeat_enabled(agent: AgentConfig) -> bool:
    """No block means disabled; a block without ``every`` uses the default."""
    if agent.heartbeat is None:
        return False
    every = agent.heartbeat.every
    if every is None:
        return True
    return parse_duration_ms(every) is not None


def get_heartbeat_interval_ms(
    agent: AgentConfig, default_every: str = DEFAULT_HEARTBEAT_EVERY
) -> Optional[float]:
    if not is_heartbeat_enabled(agent):
        return None
    every = agent.heartbeat.every if agent.heartbeat else None
    if every:
        return parse_duration_ms(every)
    return parse_duration_ms(default_every)


def load_heartbeat_prompt(agent: AgentConfig) -> str:
    """Config prompt, then the workspace's HEARTBEAT.md, then the default."""
    if agent.heartbeat is not None and agent.heartbeat.prompt:
        return agent.heartbeat.prompt
    if agent.workspace is not None:
        path = Path(agent.workspace) / HEARTBEAT_FILENAME
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError:
            content = ""
        if content:
            return content
    return DEFAULT_HEARTBEAT_PROMPT


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class HeartbeatScheduler:
    """
    Per-agent heartbeat timers plus the process-wide enable toggle.

    ``agents`` is called on every tick so configuration edits take effect
    without restarting the scheduler. ``run_turn`` executes one lead-agent
    turn and is supplied by the host.
    """

    def __init__(
        self,
        agents: AgentsProvider,
        run_turn: TurnRunner,
        session_store: SessionStore,
        live_sessions: LiveSessions | None = None,
        *,
        ack_max_chars: int = DEFAULT_ACK_MAX_CHARS,
        default_every: str = DEFAULT_HEARTBEAT_EVERY,
        enabled: bool = True,
    ) -> None:
        self._agents = agents
        self._run_turn = run_turn
        self._store = session_store
        self._live = live_sessions or LiveSessions()
        self._ack_max_chars = ack_max_chars
        self._default_every = default_every
        # Read once per tick; mutated only through set_heartbeats_enabled().
        self._enabled = enabled
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listeners: Listeners[HeartbeatEvent] = Listeners()

    # ------------------------------------------------------------------
    # Global toggle and listeners
    # ------------------------------------------------------------------

    def set_heartbeats_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)
        logger.info("heartbeat.toggle", enabled=self._enabled)

    def are_heartbeats_enabled(self) -> bool:
        return self._enabled

    def on_heartbeat_event(self, listener: Callable[[HeartbeatEvent], object]) -> Callable[[], None]:
        """Subscribe to heartbeat outcomes. Returns an unsubscribe callable."""
        return self._listeners.add(listener)

    # ------------------------------------------------------------------
    # Agent lookup
    # ------------------------------------------------------------------

    def _get_agent(self, agent_id: str) -> AgentConfig | None:
        for agent in self._agents():
            if agent.id == agent_id:
                return agent
        return None

    def _interval_ms(self, agent: AgentConfig | None) -> Optional[float]:
        if agent is None:
            return None
        return get_heartbeat_interval_ms(agent, self._default_every)

    # ------------------------------------------------------------------
    # One heartbeat
    # ------------------------------------------------------------------

    def _emit(self, event: HeartbeatEvent) -> HeartbeatEvent:
        logger.info(
            "heartbeat.result",
            agent_id=event.agent_id,
            status=event.status,
            reason=event.reason,
            duration_ms=event.duration_ms,
        )
        self._listeners.emit(event)
        return event

    def _restore(self, agent_id: str, original_updated_at: int | None) -> None:
        try:
            self._store.restore_updated_at(agent_id, DEFAULT_SESSION_KEY, original_updated_at)
        except OSError as e:
            logger.error("heartbeat.restore_failed", agent_id=agent_id, error=str(e))

    async def run_heartbeat(self, agent_id: str) -> HeartbeatEvent:
        """Run one heartbeat turn for ``agent_id`` and report the outcome.

        Never raises: turn failures come back as ``status="failed"``.
        """
        start = _now_ms()
        agent = self._get_agent(agent_id)
        if agent is None:
            return self._emit(
                HeartbeatEvent(ts=start, agent_id=agent_id, status="failed", reason="agent not found")
            )

        if not self._enabled:
            return self._emit(
                HeartbeatEvent(ts=start, agent_id=agent_id, status="skipped", reason="disabled")
            )

        original_updated_at: int | None = None
        try:
            entry = self._store.get_entry(agent_id, DEFAULT_SESSION_KEY)
            original_updated_at = entry.updated_at if entry else None

            if entry is not None and self._live.is_streaming(agent_id, entry.session_id):
                self._restore(agent_id, original_updated_at)
                return self._emit(
                    HeartbeatEvent(ts=start, agent_id=agent_id, status="skipped", reason="streaming")
                )

            channel = agent.broadcast_channel
            if not channel:
                self._restore(agent_id, original_updated_at)
                return self._emit(
                    HeartbeatEvent(
                        ts=start, agent_id=agent_id, status="skipped", reason="no broadcast channel"
                    )
                )

            ack_max_chars = self._ack_max_chars
            if agent.heartbeat is not None and agent.heartbeat.ack_max_chars is not None:
                ack_max_chars = agent.heartbeat.ack_max_chars

            prompt = load_heartbeat_prompt(agent)
            resolved = self._store.resolve_session_id(
                agent_id, prompt, session_key=DEFAULT_SESSION_KEY
            )
            result = await self._run_turn(
                TurnRequest(
                    agent_id=agent_id,
                    session_id=resolved.session_id,
                    session_key=DEFAULT_SESSION_KEY,
                    message=prompt,
                )
            )
            evaluation = evaluate_heartbeat_reply(result.text, ack_max_chars)

            if not evaluation.should_deliver:
                self._restore(agent_id, original_updated_at)

            return self._emit(
                HeartbeatEvent(
                    ts=start,
                    agent_id=agent_id,
                    status=evaluation.status,
                    duration_ms=_now_ms() - start,
                    to=channel if evaluation.should_deliver else None,
                    preview=evaluation.stripped_text[:PREVIEW_CHARS] or None,
                    alert_text=evaluation.stripped_text if evaluation.should_deliver else None,
                )
            )
        except Exception as e:
            self._restore(agent_id, original_updated_at)
            logger.warning("heartbeat.turn_failed", agent_id=agent_id, error=str(e), exc_info=True)
            return self._emit(
                HeartbeatEvent(
                    ts=start,
                    agent_id=agent_id,
                    status="failed",
                    duration_ms=_now_ms() - start,
                    reason=str(e) or type(e).__name__,
                )
            )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule(self, agent_id: str, interval_ms: float) -> None:
        existing = self._timers.pop(agent_id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        handle = loop.call_later(interval_ms / 1000.0, self._fire, agent_id)
        self._timers[agent_id] = handle
        logger.debug("heartbeat.scheduled", agent_id=agent_id, interval_ms=interval_ms)

    def _fire(self, agent_id: str) -> None:
        handle = self._timers.get(agent_id)
        task = asyncio.get_running_loop().create_task(
            self._tick(agent_id, handle), name=f"heartbeat-{agent_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _tick(self, agent_id: str, handle: asyncio.TimerHandle | None) -> None:
        """Timer body: live config check, global toggle, turn, re-arm."""
        interval = self._interval_ms(self._get_agent(agent_id))
        if interval is None:
            if self._timers.get(agent_id) is handle:
                self._timers.pop(agent_id, None)
            logger.info("heartbeat.disabled_stopping", agent_id=agent_id)
            return

        # A globally disabled tick reports "skipped" before touching the store.
        await self.run_heartbeat(agent_id)

        # stop_heartbeat() or a restart during the turn replaced our handle.
        if self._timers.get(agent_id) is not handle:
            return
        interval = self._interval_ms(self._get_agent(agent_id))
        if interval is None:
            self._timers.pop(agent_id, None)
            return
        self._schedule(agent_id, interval)

    def start_heartbeat(self, agent_id: str) -> bool:
        """Arm the timer for one agent. Returns False when it has no heartbeat.

        Must be called from inside the running event loop. The first turn
        happens one full interval from now.
        """
        interval = self._interval_ms(self._get_agent(agent_id))
        if interval is None:
            return False
        self._schedule(agent_id, interval)
        logger.info("heartbeat.started", agent_id=agent_id, interval_ms=interval)
        return True

    def stop_heartbeat(self, agent_id: str) -> None:
        handle = self._timers.pop(agent_id, None)
        if handle is not None:
            handle.cancel()
            logger.info("heartbeat.stopped", agent_id=agent_id)

    def start_all_heartbeats(self) -> list[str]:
        """Start every configured agent's heartbeat; returns the started ids."""
        return [agent.id for agent in list(self._agents()) if self.start_heartbeat(agent.id)]

    def stop_all_heartbeats(self) -> None:
        for agent_id in list(self._timers):
            self.stop_heartbeat(agent_id)

    def get_active_heartbeats(self) -> list[str]:
        return list(self._timers)

    async def wait_idle(self) -> None:
        """Wait for heartbeat turns already in flight to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
