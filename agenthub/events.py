"""
Typed events and synchronous listener fan-out.

Events are Pydantic models whose ``event_type`` is derived from the class
name (``HeartbeatEvent`` -> ``"heartbeat"``, ``SubagentChangedEvent`` ->
``"subagent.changed"``). Producers own a :class:`Listeners` set; consumers
subscribe with ``add()`` and keep the returned callable to unsubscribe.

Listener exceptions are logged and never propagate to the producer.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Generic, Literal, Optional, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)

_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")

HeartbeatStatus = Literal["sent", "ok-empty", "ok-token", "skipped", "failed"]


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class HubEvent(BaseModel):
    """Base class for events emitted by hub components."""

    event_type: str = ""

    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            name = type(self).__name__.removesuffix("Event")
            parts = _CAMEL_SPLIT_RE.findall(name)
            self.event_type = ".".join(p.lower() for p in parts) if parts else name.lower()

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"event_type"})


class HeartbeatEvent(HubEvent):
    """Outcome of one heartbeat attempt for one agent."""

    ts: int
    agent_id: str
    status: HeartbeatStatus
    duration_ms: Optional[int] = None
    to: Optional[str] = None
    preview: Optional[str] = None
    alert_text: Optional[str] = None
    reason: Optional[str] = None


class SubagentChangedEvent(HubEvent):
    """A subagent workspace changed lifecycle state."""

    project_id: str
    slug: str
    action: Literal["spawned", "interrupted", "killed", "archived", "unarchived"]
    data: dict[str, Any] = Field(default_factory=dict)


E = TypeVar("E", bound=HubEvent)


class Listeners(Generic[E]):
    """A set of synchronous callbacks for one event type."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[E], Any]] = []

    def add(self, listener: Callable[[E], Any]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event: E) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning(
                    "events.listener_failed", event_type=event.event_type, exc_info=True
                )

    def __len__(self) -> int:
        return len(self._listeners)
