"""
Small file helpers for the JSON state files under the projects root and the
session store.

Every JSON document is replaced atomically: the new content goes to a unique
temp file in the target's directory, then ``os.replace`` renames it over the
target. Readers never see a half-written document. JSONL files are append-only
and written one complete line per ``write`` call.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Iterator

import structlog

logger = structlog.get_logger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def now_iso() -> str:
    """UTC timestamp in ``2026-01-08T14:19:25.394Z`` form."""
    return iso_from_ms(now_ms())


def iso_from_ms(ms: float) -> str:
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def ms_from_iso(value: str | None) -> int | None:
    """Parse an ISO-8601 timestamp into epoch ms; ``None`` when unparseable."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return round(dt.timestamp() * 1000)


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON document, falling back to *default* when missing or corrupt."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default
    except (OSError, ValueError) as e:
        logger.warning("fileio.read_failed", path=str(path), error=str(e))
        return default


@contextmanager
def atomic_writer(path: Path, binary: bool = False) -> Iterator[IO[Any]]:
    """Yield a temp file beside *path* that replaces it when the block exits cleanly.

    Errors propagate to the caller; the temp file is removed on failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=f".{path.name}.")
    try:
        if binary:
            f = os.fdopen(fd, "wb")
        else:
            f = os.fdopen(fd, "w", encoding="utf-8")
        with f:
            yield f
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def write_json_atomic(path: Path, data: Any, *, indent: int | None = 2) -> None:
    with atomic_writer(path) as f:
        json.dump(data, f, indent=indent)
        f.write("\n")


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one JSON object as a single line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False) + "\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
