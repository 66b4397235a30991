"""
AgentHub — Supervisor for long-running AI coding agents

This package coordinates a handful of persistent "lead" agent sessions and
ad-hoc subagents (external coding-assistant CLIs) spawned as detached child
processes working in isolated workspaces.

Subsystems (leaf to root):
    1. Session store (idle rotation, reset triggers, think levels)
    2. Workspace files and the log/cursor protocol
    3. Subagent orchestrator (spawn, resume, interrupt, kill, archive)
    4. Heartbeat scheduler (unattended check-in turns per agent)
"""

__version__ = "0.1.0"
