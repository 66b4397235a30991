"""Command-line interface for AgentHub."""
