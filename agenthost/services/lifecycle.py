"""Stop, start and tear down agent machines.

stop() and start() roll the instance row back to the last state the
infrastructure is known to be in when the provider call fails, then
re-raise. destroy() and rollback_failed_provision() are best-effort and
idempotent: each sub-cleanup (server, mesh device) is attempted even when
the other fails.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from agenthost.db.models import (
    AgentInstance,
    AgentStatus,
    InstanceStatus,
    JobStatus,
    ProvisioningJob,
)
from agenthost.errors.domain import LifecycleError, NotFoundError
from agenthost.errors.registry import format_message
from agenthost.services.agent_service import AgentService
from agenthost.services.errors import MeshError, ProviderError
from agenthost.services.hetzner_client import HetznerClient
from agenthost.services.instance_service import InstanceService
from agenthost.services.mesh_client import TailscaleClient

logger = logging.getLogger(__name__)

DESTROY_ANNOTATION = "Destroyed via lifecycle management"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class DestroyResult:
    """What destroy() managed to clean up."""

    instance_id: str | None
    server_deleted: bool
    mesh_deleted: bool


@dataclass(frozen=True)
class RollbackResult:
    """What rollback_failed_provision() managed to clean up."""

    job_id: str
    instance_id: str | None
    server_deleted: bool
    mesh_deleted: bool


class LifecycleManager:
    """User-initiated state changes on an agent's machine.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(
        self,
        db: Session,
        provider: HetznerClient,
        mesh: TailscaleClient | None = None,
    ) -> None:
        self.db = db
        self.instances = InstanceService(db)
        self.agents = AgentService(db)
        self._provider = provider
        self._mesh = mesh

    # =========================================================================
    # Stop / start
    # =========================================================================

    def stop(self, agent_id: str) -> AgentInstance:
        """Gracefully shut down the agent's running machine.

        Raises:
            LifecycleError: If there is no running instance with a server.
            ProviderError: If the provider call fails (instance stays running).
        """
        instance = self.instances.find_for_agent(agent_id, InstanceStatus.running)
        if instance is None or not instance.server_id:
            raise LifecycleError(agent_id, format_message("E-4002"))

        started_at = instance.started_at
        self.instances.transition(instance.id, InstanceStatus.stopping)
        try:
            self._provider.shutdown_server(instance.server_id)
        except Exception:
            logger.exception("Stop of agent %s failed; restoring running state", agent_id)
            self.instances.transition(
                instance.id, InstanceStatus.running, started_at=started_at
            )
            raise

        instance = self.instances.transition(
            instance.id, InstanceStatus.stopped, stopped_at=_utc_now_iso()
        )
        self.agents.set_status(agent_id, AgentStatus.paused)
        logger.info("Agent %s stopped", agent_id)
        return instance

    def start(self, agent_id: str) -> AgentInstance:
        """Power the agent's stopped machine back on.

        Raises:
            LifecycleError: If there is no stopped instance with a server, or a
                newer instance of the agent is already active or pending.
            ProviderError: If the provider call fails (instance stays stopped).
        """
        instance = self.instances.find_for_agent(agent_id, InstanceStatus.stopped)
        if instance is None or not instance.server_id:
            raise LifecycleError(agent_id, format_message("E-4003"))
        # a newer attempt already holds the agent's one non-terminal slot
        if self.instances.get_active_for_agent(agent_id) is not None:
            raise LifecycleError(agent_id, format_message("E-4004"))

        self.instances.transition(instance.id, InstanceStatus.provisioning)
        try:
            self._provider.power_on_server(instance.server_id)
        except Exception:
            logger.exception("Start of agent %s failed; restoring stopped state", agent_id)
            self.instances.transition(instance.id, InstanceStatus.stopped)
            raise

        instance = self.instances.transition(
            instance.id,
            InstanceStatus.running,
            started_at=_utc_now_iso(),
            stopped_at=None,
        )
        self.agents.set_status(agent_id, AgentStatus.active)
        logger.info("Agent %s started", agent_id)
        return instance

    # =========================================================================
    # Teardown
    # =========================================================================

    def destroy(self, agent_id: str) -> DestroyResult:
        """Delete the agent's machine and mesh device, whatever state they are in.

        Safe to call repeatedly. Returns without error when the agent has
        no instance at all.
        """
        instance = self.instances.get_latest_for_agent(agent_id)
        if instance is None:
            logger.info("No instance for agent %s, nothing to destroy", agent_id)
            return DestroyResult(instance_id=None, server_deleted=False, mesh_deleted=False)

        self.instances.transition(instance.id, InstanceStatus.stopping)
        server_deleted = self._delete_server(instance)
        mesh_deleted = self._delete_mesh_device(instance)

        self.instances.transition(
            instance.id,
            InstanceStatus.stopped,
            error=DESTROY_ANNOTATION,
            stopped_at=instance.stopped_at or _utc_now_iso(),
        )
        self.agents.set_status(agent_id, AgentStatus.paused)
        logger.info(
            "Agent %s destroyed (server=%s, mesh=%s)", agent_id, server_deleted, mesh_deleted
        )
        return DestroyResult(
            instance_id=instance.id,
            server_deleted=server_deleted,
            mesh_deleted=mesh_deleted,
        )

    def rollback_failed_provision(self, job_id: str) -> RollbackResult:
        """Clean up whatever a failed provisioning job left behind.

        Marks the instance failed with a note of which cleanups succeeded,
        the agent as errored, and the job as failed.

        Raises:
            NotFoundError: If the job does not exist.
        """
        job = self.db.get(ProvisioningJob, job_id)
        if job is None:
            raise NotFoundError("Provisioning job", job_id)

        instance = None
        if job.instance_id:
            instance = self.instances.get_instance(job.instance_id)
        if instance is None:
            instance = self.instances.get_latest_for_agent(job.agent_id)

        server_deleted = False
        mesh_deleted = False
        if instance is None or not instance.server_id:
            logger.info("No machine to clean up for job %s", job_id)
        else:
            server_deleted = self._delete_server(instance)
            mesh_deleted = self._delete_mesh_device(instance)

        # stopped rows are history from an earlier attempt
        if instance is not None and instance.status != InstanceStatus.stopped.value:
            self.instances.transition(
                instance.id,
                InstanceStatus.failed,
                error=(
                    "Rolled back after provision failure. "
                    f"Cleaned: server={server_deleted}, mesh={mesh_deleted}"
                ),
            )
            self.agents.set_status(job.agent_id, AgentStatus.error)

        now = _utc_now_iso()
        job.status = JobStatus.failed.value
        job.error = job.error or "Rolled back after provision failure"
        job.completed_at = now
        job.updated_at = now
        self.db.commit()
        logger.info("Rollback of job %s complete", job_id)
        return RollbackResult(
            job_id=job_id,
            instance_id=instance.id if instance is not None else None,
            server_deleted=server_deleted,
            mesh_deleted=mesh_deleted,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _delete_server(self, instance: AgentInstance) -> bool:
        if not instance.server_id:
            return False
        try:
            self._provider.delete_server(instance.server_id)
        except ProviderError as e:
            logger.error("Failed to delete server %s: %s", instance.server_id, e)
            return False
        return True

    def _delete_mesh_device(self, instance: AgentInstance) -> bool:
        if self._mesh is None or not instance.tailscale_ip:
            return False
        try:
            device = self._mesh.find_device_by_ip(instance.tailscale_ip)
            if device is None:
                return False
            self._mesh.delete_device(device.id)
        except MeshError as e:
            logger.error("Failed to delete mesh device for %s: %s", instance.tailscale_ip, e)
            return False
        return True
