"""Command-line interface for agenthost."""
