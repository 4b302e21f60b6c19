"""HTTP API for agenthost."""
