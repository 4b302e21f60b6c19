"""agenthost: per-agent VM lifecycle orchestration."""

__version__ = "0.1.0"
