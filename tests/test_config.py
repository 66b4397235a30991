"""Tests for agenthub.config — defaults, TOML overrides and env precedence."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from agenthub.config import HubConfig, SessionsConfig, SubagentConfig


class TestDefaults:

    def test_empty_config(self):
        config = HubConfig({})
        assert config.source is None
        assert config.projects.root == Path("~/projects").expanduser()
        assert config.sessions.idle_minutes == 360
        assert config.sessions.reset_triggers == ["/new", "/reset"]
        assert config.sessions.abort_triggers == ["/abort"]
        assert config.heartbeat.enabled is True
        assert config.heartbeat.default_every == "30m"
        assert config.heartbeat.turn_runner is None
        assert config.subagents.default_mode == "worktree"
        assert config.subagents.default_base_branch == "main"
        assert config.agents == []

    def test_missing_file_means_defaults(self):
        # conftest points AGENTHUB_CONFIG at a file that does not exist
        config = HubConfig()
        assert config.source is None
        assert config.agents == []


class TestTomlSections:

    def test_sections_override_defaults(self, tmp_path: Path):
        config = HubConfig(
            {
                "projects": {"root": str(tmp_path / "p")},
                "sessions": {"idle_minutes": 15, "reset_triggers": ["/fresh"]},
                "heartbeat": {"default_every": "10m", "turn_runner": "pkg.mod:factory"},
                "subagents": {"default_mode": "none", "kill_grace_seconds": 1.5},
            }
        )
        assert config.projects.root == tmp_path / "p"
        assert config.sessions.idle_minutes == 15
        assert config.sessions.reset_triggers == ["/fresh"]
        assert config.heartbeat.default_every == "10m"
        assert config.heartbeat.turn_runner == "pkg.mod:factory"
        assert config.subagents.default_mode == "none"
        assert config.subagents.kill_grace_seconds == 1.5

    def test_env_wins_over_toml(self, monkeypatch):
        monkeypatch.setenv("AGENTHUB_SESSION_IDLE_MINUTES", "42")
        config = HubConfig({"sessions": {"idle_minutes": 15}})
        assert config.sessions.idle_minutes == 42

    def test_env_list_value(self, monkeypatch):
        monkeypatch.setenv("AGENTHUB_SESSION_RESET_TRIGGERS", '["/wipe"]')
        assert HubConfig({}).sessions.reset_triggers == ["/wipe"]

    def test_loads_from_path(self, tmp_path: Path):
        path = tmp_path / "agenthub.toml"
        path.write_text('[sessions]\nidle_minutes = 5\n\n[[agents]]\nid = "lead"\n')
        config = HubConfig(path=path)
        assert config.source == path
        assert config.sessions.idle_minutes == 5
        assert [a.id for a in config.agents] == ["lead"]

    def test_unknown_keys_are_ignored(self):
        config = HubConfig({"sessions": {"idle_minutes": 7, "colour": "blue"}})
        assert config.sessions.idle_minutes == 7

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValidationError):
            HubConfig({"subagents": {"default_mode": "sideways"}})


class TestNormalization:

    def test_idle_minutes_floor(self):
        assert SessionsConfig(idle_minutes=0).idle_minutes == 1
        assert SessionsConfig(idle_minutes=-5).idle_minutes == 1

    def test_comma_separated_triggers(self):
        config = SessionsConfig(reset_triggers=" /new , ,/clear ")
        assert config.reset_triggers == ["/new", "/clear"]

    def test_blank_base_branch(self):
        assert SubagentConfig(default_base_branch="  ").default_base_branch == "main"

    def test_blank_turn_runner(self):
        assert HubConfig({"heartbeat": {"turn_runner": "  "}}).heartbeat.turn_runner is None


class TestAgents:

    def test_agent_fields(self, tmp_path: Path):
        config = HubConfig(
            {
                "agents": [
                    {
                        "id": "lead",
                        "workspace": "~/agents/lead",
                        "broadcast_channel": "telegram",
                        "heartbeat": {"every": "5m", "prompt": "Check in", "ack_max_chars": 10},
                    },
                    {"id": "quiet", "name": "Quiet One"},
                    "not-a-table",
                ]
            }
        )
        agents = {agent.id: agent for agent in config.agents}
        lead = agents["lead"]
        assert lead.name == "lead"
        assert lead.workspace == Path("~/agents/lead").expanduser()
        assert lead.heartbeat.every == "5m"
        assert lead.heartbeat.ack_max_chars == 10
        quiet = agents["quiet"]
        assert quiet.name == "Quiet One"
        assert quiet.heartbeat is None
        assert quiet.broadcast_channel is None
        assert len(config.agents) == 2
        assert sorted(agents) == ["lead", "quiet"]

    def test_repr_lists_agents(self):
        assert "agents=['lead']" in repr(HubConfig({"agents": [{"id": "lead"}]}))
