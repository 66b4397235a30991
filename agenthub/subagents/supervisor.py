"""
Subagent Supervisor — the detached process that owns one CLI run.

    python -m agenthub.subagents.supervisor --workspace DIR --cli codex \\
        --cwd DIR --run-id ID --wait-stdin -- /path/to/codex exec --json "prompt"

The orchestrator launches this in its own session and forgets about it; the
supervisor outlives the caller and records everything on disk:

  - child stdout is appended to ``logs.jsonl`` verbatim, one line per line
  - child stderr lines are wrapped as ``{"type": "stderr"}`` log lines
  - the CLI's session marker is written to ``state.json`` (``session_id``)
  - ``progress.json`` tracks ``last_active`` and the tool-call count
  - on exit, ``worker.finished`` is appended to ``history.jsonl``

SIGTERM/SIGINT are forwarded to the child and the run is recorded as
``interrupted``. The orchestrator starts the supervisor with both signals
blocked, so a signal that arrives during interpreter start-up stays pending
until the handlers are installed. With ``--wait-stdin`` the run does not
begin until the launcher closes stdin. All diagnostics go to stderr, never
into the logs.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import time
from pathlib import Path
from typing import IO, Any, Optional

import structlog

from agenthub._fileio import now_iso, read_json, write_json_atomic
from agenthub.subagents.cli_resolver import extract_session_id
from agenthub.subagents.logs import normalize_log_line
from agenthub.subagents.workspace import WorkspaceFiles

logger = structlog.get_logger(__name__)

# CLI JSON lines (tool output, diffs) can be large.
STREAM_LIMIT = 16 * 1024 * 1024
PROGRESS_MIN_INTERVAL = 1.0
CHILD_TERM_GRACE_SECONDS = 5.0


class Supervisor:
    """Runs one child process and mirrors its life into the workspace files."""

    def __init__(
        self,
        workspace: Path,
        cli: str,
        argv: list[str],
        cwd: Path,
        run_id: str,
    ) -> None:
        self.files = WorkspaceFiles(workspace)
        self.cli = cli
        self.argv = argv
        self.cwd = cwd
        self.run_id = run_id
        self.tool_calls = 0
        self.session_id: Optional[str] = None
        self.last_stderr = ""
        self.interrupted = False
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._log: Optional[IO[bytes]] = None
        self._last_progress = 0.0

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _update_state(self, **changes: Any) -> None:
        state = read_json(self.files.state, {})
        if not isinstance(state, dict):
            state = {}
        state.update(changes)
        write_json_atomic(self.files.state, state)

    def _write_progress(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_progress < PROGRESS_MIN_INTERVAL:
            return
        self._last_progress = now
        write_json_atomic(
            self.files.progress, {"last_active": now_iso(), "tool_calls": self.tool_calls}
        )

    def _append_log(self, data: bytes) -> None:
        assert self._log is not None
        if not data.endswith(b"\n"):
            data += b"\n"
        self._log.write(data)
        self._log.flush()

    def _append_wrapped(self, kind: str, text: str) -> None:
        line = json.dumps({"ts": now_iso(), "type": kind, "text": text}, ensure_ascii=False)
        self._append_log(line.encode("utf-8"))

    # ------------------------------------------------------------------
    # Stream pumps
    # ------------------------------------------------------------------

    def _on_stdout_line(self, raw: bytes) -> None:
        self._append_log(raw)
        text = raw.decode("utf-8", errors="replace")
        self.tool_calls += sum(1 for ev in normalize_log_line(text) if ev.type == "tool_call")

        if self.session_id is None:
            session_id = extract_session_id(self.cli, text)
            if session_id:
                self.session_id = session_id
                self._update_state(session_id=session_id)
                self._append_wrapped("session", session_id)
                logger.info("supervisor.session", session_id=session_id)
        self._write_progress()

    def _on_stderr_line(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not text.strip():
            return
        self.last_stderr = text
        self._append_wrapped("stderr", text)
        self._write_progress()

    async def _read_line(self, stream: asyncio.StreamReader) -> bytes:
        """Next line with its newline, however long; the partial tail at EOF; ``b""`` when done."""
        parts: list[bytes] = []
        while True:
            try:
                parts.append(await stream.readuntil(b"\n"))
                break
            except asyncio.LimitOverrunError as e:
                # Newline not within the buffer limit: take what is buffered and keep going.
                parts.append(await stream.readexactly(e.consumed))
            except asyncio.IncompleteReadError as e:
                parts.append(e.partial)
                break
        return b"".join(parts)

    async def _pump(self, stream: asyncio.StreamReader, handler) -> None:
        while True:
            raw = await self._read_line(stream)
            if not raw:
                return
            try:
                handler(raw)
            except OSError as e:
                logger.error("supervisor.write_failed", error=str(e))

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _on_signal(self, signum: int) -> None:
        self.interrupted = True
        proc = self._proc
        logger.info("supervisor.signal", signal=signal.Signals(signum).name)
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        asyncio.get_running_loop().call_later(CHILD_TERM_GRACE_SECONDS, self._force_kill)

    def _force_kill(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _finish(self, outcome: str, started: float, error_message: str = "") -> None:
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "tool_calls": self.tool_calls,
            "outcome": outcome,
        }
        if error_message:
            data["error_message"] = error_message
        self.files.record("worker.finished", data)
        self._write_progress(force=True)
        if outcome == "error":
            self._update_state(last_error=error_message or "process exited")
        logger.info("supervisor.finished", outcome=outcome, tool_calls=self.tool_calls)

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        signals = (signal.SIGTERM, signal.SIGINT)
        for sig in signals:
            loop.add_signal_handler(sig, self._on_signal, sig)
        # The launcher starts us with these blocked; anything pending is delivered now.
        signal.pthread_sigmask(signal.SIG_UNBLOCK, signals)
        try:
            return await self._run()
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)

    async def _run(self) -> int:
        started = time.monotonic()
        self._update_state(supervisor_pid=os.getpid())
        self._log = open(self.files.logs, "ab")
        try:
            await asyncio.sleep(0)
            if self.interrupted:
                self._finish("interrupted", started)
                return 1
            try:
                self._proc = await asyncio.create_subprocess_exec(
                    *self.argv,
                    cwd=str(self.cwd),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                self._append_wrapped("stderr", f"spawn failed: {e}")
                self._finish("error", started, f"spawn failed: {e}")
                return 1

            if self.interrupted:
                # Signalled while the child was starting.
                self._on_signal(signal.SIGTERM)

            assert self._proc.stdout is not None and self._proc.stderr is not None
            await asyncio.gather(
                self._pump(self._proc.stdout, self._on_stdout_line),
                self._pump(self._proc.stderr, self._on_stderr_line),
            )
            returncode = await self._proc.wait()
        finally:
            self._log.close()

        if self.interrupted:
            self._finish("interrupted", started)
        elif returncode == 0:
            self._finish("replied", started)
        else:
            message = self.last_stderr or f"process exited with code {returncode}"
            self._finish("error", started, message)
        return 0 if returncode == 0 else 1


def _configure_logging() -> None:
    """Keep every log line on stderr."""
    import logging

    handler = logging.StreamHandler(sys.stderr)
    logging.root.handlers = [handler]
    logging.root.setLevel(logging.INFO)
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="agenthub.subagents.supervisor")
    parser.add_argument("--workspace", required=True, type=Path)
    parser.add_argument("--cli", required=True)
    parser.add_argument("--cwd", required=True, type=Path)
    parser.add_argument("--run-id", required=True)
    parser.add_argument(
        "--wait-stdin",
        action="store_true",
        help="block until stdin reaches EOF before starting the run",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)
    if args.command and args.command[0] == "--":
        args.command = args.command[1:]
    if not args.command:
        parser.error("missing command after --")
    return args


def main(argv: list[str] | None = None) -> int:
    _configure_logging()
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    if args.wait_stdin and sys.stdin is not None:
        # The launcher closes the pipe once state.json and history.jsonl are in place.
        sys.stdin.buffer.read()
    supervisor = Supervisor(
        workspace=args.workspace,
        cli=args.cli,
        argv=args.command,
        cwd=args.cwd,
        run_id=args.run_id,
    )
    return asyncio.run(supervisor.run())


if __name__ == "__main__":
    sys.exit(main())
