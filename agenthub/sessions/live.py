"""In-memory registry of lead-agent sessions that are currently streaming.

The turn runner flips a session to streaming for the duration of a
generation; the heartbeat scheduler consults it to skip busy sessions.
"""

from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)


class LiveSession:
    """Runtime bookkeeping for one ``(agent_id, session_id)`` pair."""

    __slots__ = ("agent_id", "session_id", "is_streaming")

    def __init__(self, agent_id: str, session_id: str) -> None:
        self.agent_id = agent_id
        self.session_id = session_id
        self.is_streaming = False


class LiveSessions:
    """Process-local map of live sessions keyed by ``agent_id:session_id``."""

    def __init__(self) -> None:
        self._sessions: dict[str, LiveSession] = {}

    @staticmethod
    def _key(agent_id: str, session_id: str) -> str:
        return f"{agent_id}:{session_id}"

    def get(self, agent_id: str, session_id: str) -> LiveSession | None:
        return self._sessions.get(self._key(agent_id, session_id))

    def set_streaming(self, agent_id: str, session_id: str, streaming: bool) -> None:
        key = self._key(agent_id, session_id)
        session = self._sessions.get(key)
        if session is None:
            if not streaming:
                return
            session = self._sessions[key] = LiveSession(agent_id, session_id)
        session.is_streaming = streaming
        logger.debug(
            "live_sessions.streaming", agent_id=agent_id, session_id=session_id, streaming=streaming
        )

    def is_streaming(self, agent_id: str, session_id: str) -> bool:
        session = self.get(agent_id, session_id)
        return bool(session and session.is_streaming)
