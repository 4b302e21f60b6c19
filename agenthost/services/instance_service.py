"""Instance record store with state machine validation.

The AgentInstance row is the only state orchestration depends on. This
service owns every read and write of it: queuing a new instance, the
conditional pending -> provisioning claim that serializes concurrent
pollers, and validated status transitions.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from agenthost.db.models import (
    NON_TERMINAL_STATUSES,
    Agent,
    AgentInstance,
    InstanceStatus,
)
from agenthost.errors.domain import ConflictError, NotFoundError
from agenthost.errors.registry import format_message
from agenthost.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid instance state transition.

    Attributes:
        current_state: The current state of the instance.
        attempted_state: The state that was attempted.
        allowed_transitions: List of valid transition targets from current state.
    """

    def __init__(
        self,
        current_state: InstanceStatus,
        attempted_state: InstanceStatus,
        allowed_transitions: list[InstanceStatus],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(s.value for s in allowed_transitions) or "none"
        super().__init__(
            f"Cannot transition instance from '{current_state.value}' to "
            f"'{attempted_state.value}'. Allowed transitions: {allowed_str}"
        )


# Valid state transitions for the instance lifecycle.
# provisioning -> stopped and stopping -> running are lifecycle rollbacks.
# stopped -> provisioning is the start() transitional marker.
VALID_TRANSITIONS: dict[InstanceStatus, list[InstanceStatus]] = {
    InstanceStatus.pending: [
        InstanceStatus.provisioning,
        InstanceStatus.stopping,
        InstanceStatus.failed,
    ],
    InstanceStatus.provisioning: [
        InstanceStatus.running,
        InstanceStatus.stopping,
        InstanceStatus.stopped,
        InstanceStatus.failed,
    ],
    InstanceStatus.running: [InstanceStatus.stopping, InstanceStatus.failed],
    InstanceStatus.stopping: [
        InstanceStatus.stopped,
        InstanceStatus.running,
        InstanceStatus.failed,
    ],
    InstanceStatus.stopped: [
        InstanceStatus.provisioning,
        InstanceStatus.stopping,
        InstanceStatus.failed,
    ],
    InstanceStatus.failed: [InstanceStatus.stopping],
}


def _utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat()


def is_advancing(instance: AgentInstance) -> bool:
    """Whether the provisioning stepper should act on this instance.

    pending rows and provisioning rows that have never been stopped. A
    provisioning row with stopped_at set is a start() in flight and belongs
    to the lifecycle manager.
    """
    if instance.status == InstanceStatus.pending.value:
        return True
    return instance.status == InstanceStatus.provisioning.value and instance.stopped_at is None


class InstanceService:
    """Service for instance records.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # =========================================================================
    # Creation
    # =========================================================================

    def queue_provisioning(self, agent_id: str, region: str = "us-east") -> AgentInstance:
        """Create a pending instance for an agent.

        Args:
            agent_id: The agent to provision.
            region: Logical region, mapped to a provider location later.

        Returns:
            The new pending instance.

        Raises:
            NotFoundError: If the agent does not exist.
            ConflictError: If the agent already has a non-terminal instance.
        """
        agent = self.db.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)

        active = self.get_active_for_agent(agent_id)
        if active is not None:
            raise ConflictError(format_message("E-4004"))

        now = _utc_now_iso()
        instance = AgentInstance(
            agent_id=agent_id,
            status=InstanceStatus.pending.value,
            region=region,
            created_at=now,
            updated_at=now,
        )
        self.db.add(instance)
        self.db.commit()
        self.db.refresh(instance)
        logger.info("Queued instance %s for agent %s in %s", instance.id, agent_id, region)
        return instance

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: str) -> AgentInstance | None:
        return self.db.get(AgentInstance, instance_id)

    def require_instance(self, instance_id: str) -> AgentInstance:
        """Get an instance or raise NotFoundError."""
        instance = self.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id)
        return instance

    def get_latest_for_agent(self, agent_id: str) -> AgentInstance | None:
        """Most recently created instance of an agent, any status."""
        return (
            self.db.query(AgentInstance)
            .filter(AgentInstance.agent_id == agent_id)
            .order_by(AgentInstance.created_at.desc())
            .first()
        )

    def find_for_agent(self, agent_id: str, status: InstanceStatus) -> AgentInstance | None:
        """Most recent instance of an agent in the given status."""
        return (
            self.db.query(AgentInstance)
            .filter(
                AgentInstance.agent_id == agent_id,
                AgentInstance.status == status.value,
            )
            .order_by(AgentInstance.created_at.desc())
            .first()
        )

    def get_active_for_agent(self, agent_id: str) -> AgentInstance | None:
        """The agent's non-terminal instance, if any."""
        return (
            self.db.query(AgentInstance)
            .filter(
                AgentInstance.agent_id == agent_id,
                AgentInstance.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
            )
            .order_by(AgentInstance.created_at.desc())
            .first()
        )

    def list_advancing(self) -> list[AgentInstance]:
        """Instances the provisioning stepper still has work to do on."""
        candidates = (
            self.db.query(AgentInstance)
            .filter(
                AgentInstance.status.in_(
                    [InstanceStatus.pending.value, InstanceStatus.provisioning.value]
                )
            )
            .order_by(AgentInstance.created_at)
            .all()
        )
        return [instance for instance in candidates if is_advancing(instance)]

    def list_running_for_agents(self, agent_ids: list[str]) -> list[AgentInstance]:
        """Running instances with a known public address."""
        if not agent_ids:
            return []
        return (
            self.db.query(AgentInstance)
            .filter(
                AgentInstance.agent_id.in_(agent_ids),
                AgentInstance.status == InstanceStatus.running.value,
                AgentInstance.server_ip.is_not(None),
            )
            .all()
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    def claim_pending(self, instance_id: str) -> bool:
        """Atomically move a pending instance to provisioning.

        A single conditional UPDATE; when several pollers race, exactly one
        sees a row count of 1.

        Returns:
            True if this caller won the claim.
        """
        result = self.db.execute(
            update(AgentInstance)
            .where(
                AgentInstance.id == instance_id,
                AgentInstance.status == InstanceStatus.pending.value,
            )
            .values(status=InstanceStatus.provisioning.value, updated_at=_utc_now_iso())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        won = result.rowcount == 1
        if won:
            logger.info("Claimed instance %s for provisioning", instance_id)
        else:
            logger.debug("Instance %s already claimed", instance_id)
        return won

    def update_instance(self, instance_id: str, **fields: Any) -> AgentInstance:
        """Set arbitrary columns on an instance and stamp updated_at.

        Raises:
            NotFoundError: If the instance does not exist.
        """
        instance = self.require_instance(instance_id)
        for name, value in fields.items():
            setattr(instance, name, value)
        instance.updated_at = _utc_now_iso()
        self.db.commit()
        self.db.refresh(instance)
        return instance

    def transition(
        self,
        instance_id: str,
        new_status: InstanceStatus,
        **fields: Any,
    ) -> AgentInstance:
        """Move an instance to new_status, validating the transition.

        Re-marking the current status is allowed. Reaching running stamps
        started_at unless the caller provides it.

        Raises:
            NotFoundError: If the instance does not exist.
            InvalidStateTransition: If the move is not allowed.
        """
        instance = self.require_instance(instance_id)
        current = InstanceStatus(instance.status)
        if new_status != current:
            allowed = VALID_TRANSITIONS.get(current, [])
            if new_status not in allowed:
                raise InvalidStateTransition(current, new_status, allowed)

        if new_status == InstanceStatus.running and "started_at" not in fields:
            fields["started_at"] = _utc_now_iso()
        # failed keeps current_step so the UI can show where it stopped
        keeps_step = new_status in (InstanceStatus.provisioning, InstanceStatus.failed)
        if not keeps_step and "current_step" not in fields:
            fields["current_step"] = None

        logger.info("Instance %s: %s -> %s", instance_id, current.value, new_status.value)
        return self.update_instance(instance_id, status=new_status.value, **fields)

    def mark_failed(self, instance_id: str, message: str) -> AgentInstance:
        """Transition to failed with a user-facing error message."""
        return self.transition(
            instance_id,
            InstanceStatus.failed,
            error=sanitize_error_message(message),
        )
