"""git-agent-sync: agent-side git synchronization engine for CI builds."""

__version__ = "0.4.0"
