"""SQLAlchemy ORM models for the agenthost state database.

Defines agents, their VM instances, third-party integrations (the encrypted
credential envelope) and provisioning jobs. Uses SQLAlchemy 2.0 style with
Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class AgentStatus(str, Enum):
    """Status of the logical agent as shown on the dashboard."""

    draft = "draft"
    active = "active"
    paused = "paused"
    error = "error"


class InstanceStatus(str, Enum):
    """Status values for a VM instance.

    Lifecycle: pending -> provisioning -> running -> stopping -> stopped
               any non-terminal -> failed
    stopped and failed are terminal for provisioning purposes.
    """

    pending = "pending"
    provisioning = "provisioning"
    running = "running"
    stopping = "stopping"
    stopped = "stopped"
    failed = "failed"


NON_TERMINAL_STATUSES: tuple[InstanceStatus, ...] = (
    InstanceStatus.pending,
    InstanceStatus.provisioning,
    InstanceStatus.running,
    InstanceStatus.stopping,
)

TERMINAL_STATUSES: tuple[InstanceStatus, ...] = (
    InstanceStatus.stopped,
    InstanceStatus.failed,
)


class ProvisioningStep(str, Enum):
    """Boot pipeline sub-state, meaningful only while provisioning."""

    vm_booting = "vm_booting"
    installing_packages = "installing_packages"
    caddy_up = "caddy_up"
    verifying_chat = "verifying_chat"


class JobStatus(str, Enum):
    """Status values for queued provisioning jobs (VPN variant)."""

    queued = "queued"
    provisioning = "provisioning"
    running = "running"
    failed = "failed"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Agent(Base):
    """A logical agent owned by a user.

    Attributes:
        id: UUID primary key
        user_id: Owning user
        name: Display name
        personality: Free-text persona used to build the system prompt
        goal: Free-text objective appended to the system prompt
        status: draft, active, paused or error
        config: JSON blob (llmProvider, llmModel, llmTemperature, ...)
        gateway_token: Per-agent shared secret, minted at first provisioning
        created_at: ISO8601 creation timestamp
        updated_at: ISO8601 last update timestamp
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    personality: Mapped[str | None] = mapped_column(Text, nullable=True)
    goal: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AgentStatus.draft.value
    )
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    gateway_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    instances: Mapped[list["AgentInstance"]] = relationship(
        back_populates="agent", order_by="AgentInstance.created_at"
    )

    __table_args__ = (Index("idx_agents_user_id", "user_id"),)

    def __repr__(self) -> str:
        return f"<Agent(id={self.id!r}, name={self.name!r}, status={self.status!r})>"


class AgentInstance(Base):
    """One provisioning attempt / VM for an agent.

    Rows are never hard-deleted; stopped and failed rows stay as history.
    A partial unique index keeps at most one non-terminal row per agent.

    Attributes:
        id: UUID primary key
        agent_id: Owning agent
        status: Instance status (see InstanceStatus)
        current_step: Boot pipeline sub-state while provisioning
        server_id: Provider server id, set once on creation
        server_ip: Public IPv4 address, set once on creation
        tailscale_ip: Private mesh address (VPN variant only)
        region: Logical region requested by the user
        error: Last failure reason, or an annotation on stopped rows
        started_at: When the instance last reached running
        stopped_at: When the instance last stopped
    """

    __tablename__ = "agent_instances"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InstanceStatus.pending.value
    )
    current_step: Mapped[str | None] = mapped_column(String(30), nullable=True)
    server_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    server_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tailscale_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    region: Mapped[str] = mapped_column(String(30), nullable=False, default="us-east")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    stopped_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    agent: Mapped[Agent] = relationship(back_populates="instances")

    __table_args__ = (
        Index("idx_agent_instances_agent_id", "agent_id"),
        Index("idx_agent_instances_status", "status"),
        Index(
            "uq_agent_instances_one_active",
            "agent_id",
            unique=True,
            sqlite_where=text(
                "status IN ('pending', 'provisioning', 'running', 'stopping')"
            ),
            postgresql_where=text(
                "status IN ('pending', 'provisioning', 'running', 'stopping')"
            ),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AgentInstance(id={self.id!r}, agent_id={self.agent_id!r}, "
            f"status={self.status!r}, step={self.current_step!r})>"
        )


class Integration(Base):
    """A user's connection to a third-party tool (the credential envelope).

    access_token and refresh_token hold AES-GCM envelopes, never plaintext.
    """

    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expiry: Mapped[str | None] = mapped_column(String(50), nullable=True)
    scopes: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    connected_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_integrations_user_provider", "user_id", "provider", unique=True),
    )


class ProvisioningJob(Base):
    """A queued provisioning request for the VPN-based variant.

    Attributes:
        trigger_id: Idempotency key of the event that enqueued the job
        workflow_run_id: Identifier of the external run executing the job
        failed_step: Name of the step that failed, if any
        last_heartbeat_at: Updated by the running workflow; used for timeouts
    """

    __tablename__ = "provisioning_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("agent_instances.id"), nullable=True
    )
    trigger_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    region: Mapped[str] = mapped_column(String(30), nullable=False, default="us-east")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.queued.value
    )
    workflow_run_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_step: Mapped[str | None] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(default=0, nullable=False)
    claimed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_heartbeat_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_provisioning_jobs_user_status", "user_id", "status"),
        Index("idx_provisioning_jobs_agent_id", "agent_id"),
    )
