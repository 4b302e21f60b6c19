"""Database module for agenthost state management and persistence."""

from agenthost.db.connection import (
    SessionLocal,
    configure_database,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from agenthost.db.models import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    Agent,
    AgentInstance,
    AgentStatus,
    Base,
    InstanceStatus,
    Integration,
    JobStatus,
    ProvisioningJob,
    ProvisioningStep,
)

__all__ = [
    # Models
    "Base",
    "Agent",
    "AgentInstance",
    "Integration",
    "ProvisioningJob",
    # Enums
    "AgentStatus",
    "InstanceStatus",
    "ProvisioningStep",
    "JobStatus",
    "NON_TERMINAL_STATUSES",
    "TERMINAL_STATUSES",
    # Connection
    "engine",
    "SessionLocal",
    "configure_database",
    "get_db",
    "get_db_context",
    "init_db",
]
