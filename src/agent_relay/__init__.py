"""Agent Relay: chat channels in, workspace-scoped agent sessions out."""

__version__ = "0.1.0"
