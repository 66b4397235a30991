"""
Log/cursor protocol for subagent workspaces.

``logs.jsonl`` is the single ordered event stream of a workspace: the prompt
line written at spawn, each CLI stdout line verbatim, stderr and session
lines wrapped by the supervisor. Every CLI speaks its own JSON dialect, so
each physical line is normalized into zero or more :class:`LogEvent`.

The cursor is a byte offset into ``logs.jsonl``. A reader only consumes
complete lines: a trailing line without its newline is left for the next
call, so the cursor never points into the middle of a line and a
concurrently growing file is never observed torn.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import structlog
from pydantic import ValidationError

from agenthub.subagents.models import DiffRef, HistoryEvent, LogEvent, LogsPage, ToolRef

logger = structlog.get_logger(__name__)

_TEXT_ITEM_TYPES = ("text", "input_text", "output_text")
_GENERIC_TYPES = ("stdout", "stderr", "tool_call", "tool_output", "diff", "message", "error", "session")
_META_TYPES = frozenset(
    {
        "system",
        "session_meta",
        "turn_context",
        "agent_start",
        "agent_end",
        "turn_start",
        "turn_end",
        "message_start",
        "thread.started",
        "turn.started",
        "turn.completed",
    }
)


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _diff_ref(parsed: dict) -> Optional[DiffRef]:
    """``{"diff": {"path", "summary"}}`` or the same keys at top level."""
    source = parsed.get("diff") if isinstance(parsed.get("diff"), dict) else parsed
    path = _str(source.get("path")) or None
    summary = _str(source.get("summary")) or None
    if path is None and summary is None:
        return None
    return DiffRef(path=path, summary=summary)


def _dump(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None or value == {}:
        return ""
    return json.dumps(value)


# ---------------------------------------------------------------------------
# Per-dialect handlers: parsed line -> events ([] means skip)
# ---------------------------------------------------------------------------

def _message_end(parsed: dict[str, Any]) -> list[LogEvent]:
    message = parsed.get("message") if isinstance(parsed.get("message"), dict) else {}
    role = _str(message.get("role"))
    content = message.get("content") if isinstance(message.get("content"), list) else []
    events: list[LogEvent] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = _str(item.get("type"))
        if item_type in _TEXT_ITEM_TYPES:
            text = _str(item.get("text"))
            if not text:
                continue
            if role == "toolResult":
                tool = ToolRef(id=_str(message.get("toolCallId")), name=_str(message.get("toolName")))
                events.append(LogEvent(type="tool_output", text=text, tool=tool))
            else:
                events.append(LogEvent(type="assistant" if role == "assistant" else "user", text=text))
        elif item_type in ("toolCall", "tool_use"):
            args = item.get("arguments", item.get("input", item.get("args")))
            events.append(
                LogEvent(
                    type="tool_call",
                    text=_dump(args),
                    tool=ToolRef(name=_str(item.get("name")), id=_str(item.get("id"))),
                )
            )
    return events


def _tool_execution_start(parsed: dict[str, Any]) -> list[LogEvent]:
    tool = ToolRef(name=_str(parsed.get("toolName")), id=_str(parsed.get("toolCallId")))
    return [LogEvent(type="tool_call", text=_dump(parsed.get("args")), tool=tool)]


def _tool_execution_end(parsed: dict[str, Any]) -> list[LogEvent]:
    tool = ToolRef(name=_str(parsed.get("toolName")), id=_str(parsed.get("toolCallId")))
    kind = "error" if parsed.get("isError") is True else "tool_output"
    return [LogEvent(type=kind, text=_dump(parsed.get("result")), tool=tool)]


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [_str(block.get("text")) for block in content if isinstance(block, dict)]
        return "\n".join(p for p in parts if p)
    return ""


def _chat_message(parsed: dict[str, Any]) -> list[LogEvent]:
    """claude/droid stream-json ``assistant`` and ``user`` lines."""
    message = parsed.get("message") if isinstance(parsed.get("message"), dict) else {}
    role = _str(message.get("role")) or _str(parsed.get("type"))
    content = message.get("content")
    if isinstance(content, str):
        return [LogEvent(type="assistant" if role == "assistant" else "user", text=content)] if content else []
    events: list[LogEvent] = []
    for item in content if isinstance(content, list) else []:
        if not isinstance(item, dict):
            continue
        item_type = _str(item.get("type"))
        if item_type in _TEXT_ITEM_TYPES:
            text = _str(item.get("text"))
            if text:
                events.append(LogEvent(type="assistant" if role == "assistant" else "user", text=text))
        elif item_type == "tool_use":
            events.append(
                LogEvent(
                    type="tool_call",
                    text=_dump(item.get("input")),
                    tool=ToolRef(name=_str(item.get("name")), id=_str(item.get("id"))),
                )
            )
        elif item_type == "tool_result":
            text = _tool_result_text(item.get("content"))
            if text:
                events.append(
                    LogEvent(type="tool_output", text=text, tool=ToolRef(id=_str(item.get("tool_use_id"))))
                )
    return events


def _result(parsed: dict[str, Any]) -> list[LogEvent]:
    text = _str(parsed.get("result"))
    return [LogEvent(type="assistant", text=text)] if text else []


def _item_completed(parsed: dict[str, Any]) -> list[LogEvent]:
    """codex ``exec --json`` completed items."""
    item = parsed.get("item") if isinstance(parsed.get("item"), dict) else {}
    item_type = item.get("type")
    if item_type == "agent_message":
        return [LogEvent(type="assistant", text=_str(item.get("text")))]
    if item_type == "command_execution":
        return [
            LogEvent(
                type="tool_output",
                text=_str(item.get("aggregated_output")),
                tool=ToolRef(id=_str(item.get("id"))),
            )
        ]
    if item_type == "error":
        return [LogEvent(type="error", text=_str(item.get("message")))]
    return []


def _item_started(parsed: dict[str, Any]) -> list[LogEvent]:
    item = parsed.get("item") if isinstance(parsed.get("item"), dict) else {}
    if item.get("type") != "command_execution":
        return []
    return [
        LogEvent(
            type="tool_call",
            text=json.dumps({"cmd": _str(item.get("command"))}),
            tool=ToolRef(name="exec_command", id=_str(item.get("id"))),
        )
    ]


def _event_msg(parsed: dict[str, Any]) -> list[LogEvent]:
    payload = parsed.get("payload") if isinstance(parsed.get("payload"), dict) else {}
    payload_type = payload.get("type")
    if payload_type == "user_message":
        return [LogEvent(type="user", text=_str(payload.get("message")))]
    if payload_type == "agent_message":
        return [LogEvent(type="assistant", text=_str(payload.get("message")))]
    return []


def _response_item(parsed: dict[str, Any]) -> list[LogEvent]:
    """codex rollout ``response_item`` lines."""
    payload = parsed.get("payload") if isinstance(parsed.get("payload"), dict) else {}
    payload_type = payload.get("type")
    call_id = _str(payload.get("call_id"))
    if payload_type == "message":
        if payload.get("role") != "assistant":
            return []
        content = payload.get("content") if isinstance(payload.get("content"), list) else []
        parts = [
            _str(entry.get("text"))
            for entry in content
            if isinstance(entry, dict) and entry.get("type") in _TEXT_ITEM_TYPES
        ]
        return [LogEvent(type="assistant", text="\n".join(p for p in parts if p))]
    if payload_type == "function_call":
        tool = ToolRef(name=_str(payload.get("name")), id=call_id)
        return [LogEvent(type="tool_call", text=_str(payload.get("arguments")), tool=tool)]
    if payload_type == "custom_tool_call":
        tool = ToolRef(name=_str(payload.get("name")), id=call_id)
        return [LogEvent(type="tool_call", text=_str(payload.get("input")), tool=tool)]
    if payload_type in ("function_call_output", "custom_tool_call_output"):
        return [LogEvent(type="tool_output", text=_str(payload.get("output")), tool=ToolRef(id=call_id))]
    return []


def _response_envelope(parsed: dict[str, Any]) -> list[LogEvent]:
    """gemini ``{response, stats, error}`` documents."""
    events: list[LogEvent] = []
    response = _str(parsed.get("response"))
    if response:
        events.append(LogEvent(type="assistant", text=response))
    error = parsed.get("error")
    message = _str(error.get("message")) if isinstance(error, dict) else ""
    if message:
        events.append(LogEvent(type="error", text=message))
    return events


_HANDLERS: dict[str, Callable[[dict[str, Any]], list[LogEvent]]] = {
    "message_end": _message_end,
    "tool_execution_start": _tool_execution_start,
    "tool_execution_end": _tool_execution_end,
    "assistant": _chat_message,
    "user": _chat_message,
    "result": _result,
    "item.completed": _item_completed,
    "item.started": _item_started,
    "event_msg": _event_msg,
    "response_item": _response_item,
}


def normalize_log_line(line: str) -> list[LogEvent]:
    """Turn one raw ``logs.jsonl`` line into display events.

    Lines that are not JSON objects become a single ``stdout`` event; known
    bookkeeping lines produce no events.
    """
    trimmed = line.rstrip()
    if not trimmed:
        return []
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return [LogEvent(type="stdout", text=trimmed)]
    if not isinstance(parsed, dict):
        return [LogEvent(type="stdout", text=trimmed)]

    top_type = _str(parsed.get("type"))
    if top_type in _META_TYPES:
        return []

    handler = _HANDLERS.get(top_type)
    if handler is not None:
        # A "user" line written by the hub itself is plain {"type","text"}.
        if top_type == "user" and "message" not in parsed:
            return [LogEvent(type="user", ts=_str(parsed.get("ts")) or None, text=_str(parsed.get("text")))]
        return handler(parsed)

    if any(key in parsed for key in ("response", "stats", "error")):
        return _response_envelope(parsed)

    if top_type in _GENERIC_TYPES:
        text: Optional[str] = None
        for key in ("text", "content", "message"):
            if isinstance(parsed.get(key), str):
                text = parsed[key]
                break
        event = LogEvent(type=top_type, ts=_str(parsed.get("ts")) or None, text=text if text is not None else trimmed)
        if top_type == "diff":
            event.diff = _diff_ref(parsed)
        return [event]

    return [LogEvent(type="stdout", text=trimmed)]


# ---------------------------------------------------------------------------
# Cursor reader
# ---------------------------------------------------------------------------

def iter_log_lines(path: Path, since: int = 0) -> Iterator[tuple[int, str]]:
    """Yield ``(end_offset, line)`` for each complete line after ``since``.

    Stops at end of file or at a trailing line that has no newline yet.
    """
    try:
        f = open(path, "rb")
    except FileNotFoundError:
        return
    with f:
        f.seek(max(0, since))
        offset = max(0, since)
        while True:
            raw = f.readline()
            if not raw or not raw.endswith(b"\n"):
                return
            offset += len(raw)
            yield offset, raw.decode("utf-8", errors="replace").rstrip("\r\n")


def iter_log_events(path: Path, since: int = 0) -> Iterator[tuple[int, LogEvent]]:
    """Lazy, restartable event sequence keyed by the byte cursor after each line."""
    for offset, line in iter_log_lines(path, since):
        for event in normalize_log_line(line):
            yield offset, event


def read_logs(path: Path, since: int = 0, limit: int | None = None) -> LogsPage:
    """Events strictly after ``since`` and the cursor to resume from.

    With ``limit``, whole lines are consumed until at least ``limit`` events
    have been collected.
    """
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return LogsPage(cursor=0, events=[])
    except OSError as e:
        logger.warning("logs.stat_failed", path=str(path), error=str(e))
        return LogsPage(cursor=since, events=[])

    if since > size:
        # File was replaced by a fresh workspace; start the caller over at its end.
        return LogsPage(cursor=size, events=[])

    cursor = max(0, since)
    events: list[LogEvent] = []
    for offset, line in iter_log_lines(path, cursor):
        events.extend(normalize_log_line(line))
        cursor = offset
        if limit is not None and len(events) >= limit:
            break
    return LogsPage(cursor=cursor, events=events)


def read_last_outcome(history_path: Path) -> Optional[str]:
    """Outcome of the most recent ``worker.finished`` entry, if any.

    Corrupt or partial lines (e.g. after a crash) are ignored.
    """
    try:
        raw = history_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    for line in reversed(raw.splitlines()):
        if not line.strip():
            continue
        try:
            event = HistoryEvent.model_validate_json(line)
        except ValidationError:
            continue
        if event.type == "worker.finished":
            outcome = event.data.get("outcome")
            if outcome in ("replied", "error", "interrupted"):
                return outcome
    return None
