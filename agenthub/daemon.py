"""
AgentHub Daemon — the long-running heartbeat host.

Loads the hub configuration, arms one heartbeat timer per configured agent
and keeps them firing until SIGINT/SIGTERM. The agent list is re-read from
``agenthub.toml`` on every tick, so edits to an agent's ``heartbeat.every``
take effect without a restart.

Start with: agenthub daemon start

Heartbeat turns are executed by a host-supplied runner named in
``[heartbeat] turn_runner = "package.module:factory"``; the factory receives
the :class:`HubConfig` and returns an async ``TurnRequest -> TurnResult``
callable.
"""

from __future__ import annotations

import asyncio
import importlib
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import structlog

from agenthub.config import AgentConfig, HubConfig
from agenthub.errors import HubError
from agenthub.events import HeartbeatEvent
from agenthub.heartbeat import HeartbeatScheduler, TurnRunner
from agenthub.sessions import LiveSessions, SessionStore

logger = structlog.get_logger(__name__)


def load_turn_runner(spec: str, config: HubConfig) -> TurnRunner:
    """Import ``module:factory`` and call the factory with the config."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise HubError(f"turn_runner must look like 'package.module:factory', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise HubError(f"Cannot import turn runner module {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise HubError(f"{spec!r} is not callable")
    return factory(config)


def read_pid_file(pid_file: Path) -> Optional[int]:
    """PID recorded in ``pid_file`` if that process is still alive."""
    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)
    except (OSError, ValueError):
        return None
    return pid


class HubDaemon:
    """Owns the heartbeat scheduler for the lifetime of the process."""

    def __init__(self, config: HubConfig, run_turn: TurnRunner) -> None:
        self._config = config
        self._pid_file = config.daemon.pid_file.resolve()
        self._shutdown_event = asyncio.Event()
        self._store = SessionStore(
            config.sessions.store_path,
            idle_minutes=config.sessions.idle_minutes,
            reset_triggers=config.sessions.reset_triggers,
        )
        self.live_sessions = LiveSessions()
        self.scheduler = HeartbeatScheduler(
            self._current_agents,
            run_turn,
            self._store,
            self.live_sessions,
            ack_max_chars=config.heartbeat.ack_max_chars,
            default_every=config.heartbeat.default_every,
            enabled=config.heartbeat.enabled,
        )
        self.scheduler.on_heartbeat_event(self._log_event)

    def _current_agents(self) -> list[AgentConfig]:
        """Agents from the config file as it is now; last good copy on parse errors."""
        if self._config.source is None:
            return self._config.agents
        try:
            self._config = HubConfig(path=self._config.source)
        except (OSError, ValueError) as e:
            logger.warning("daemon.config_reload_failed", error=str(e))
        return self._config.agents

    @staticmethod
    def _log_event(event: HeartbeatEvent) -> None:
        if event.status == "sent":
            logger.info("daemon.heartbeat_alert", agent_id=event.agent_id, to=event.to)

    async def run(self) -> None:
        """Full daemon lifecycle: pid file → timers → wait → shutdown."""
        self._write_pid_file()
        try:
            started = self.scheduler.start_all_heartbeats()
            logger.info("daemon.running", pid=os.getpid(), heartbeats=started)
            await self._shutdown_event.wait()
        finally:
            await self._cleanup()

    def _write_pid_file(self) -> None:
        """Claim the pid file; a live foreign pid means another daemon owns it."""
        owner = read_pid_file(self._pid_file)
        if owner is not None and owner != os.getpid():
            logger.error("daemon.already_running", pid=owner, path=str(self._pid_file))
            sys.exit(1)
        if self._pid_file.exists():
            logger.info("daemon.stale_pid_file_replaced", path=str(self._pid_file))
        self._pid_file.parent.mkdir(parents=True, exist_ok=True)
        self._pid_file.write_text(str(os.getpid()))

    async def _cleanup(self) -> None:
        self.scheduler.stop_all_heartbeats()
        await self.scheduler.wait_idle()
        try:
            self._pid_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("daemon.cleanup_unlink_failed", path=str(self._pid_file), error=str(e))
        logger.info("daemon.stopped")

    def request_shutdown(self, reason: str) -> None:
        logger.info("daemon.shutdown_requested", reason=reason)
        self._shutdown_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig, self.request_shutdown, f"daemon_signal_{sig.name.lower()}"
                )
            except NotImplementedError:
                pass


def run_daemon(config: HubConfig | None = None) -> None:
    """
    Entry point for ``agenthub daemon start``.

    Loads config, resolves the turn runner, runs the event loop.
    """
    try:
        config = config or HubConfig()
    except (OSError, ValueError) as e:
        print(f"[daemon] Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if not config.heartbeat.turn_runner:
        print("[daemon] heartbeat.turn_runner is not configured", file=sys.stderr)
        sys.exit(1)
    try:
        run_turn = load_turn_runner(config.heartbeat.turn_runner, config)
    except HubError as e:
        print(f"[daemon] {e}", file=sys.stderr)
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    daemon = HubDaemon(config, run_turn)
    daemon._install_signal_handlers(loop)
    try:
        loop.run_until_complete(daemon.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()
