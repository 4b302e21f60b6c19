"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from agenthost.api.routes import agents, credentials, provisioning

__all__ = [
    "agents",
    "credentials",
    "provisioning",
]
