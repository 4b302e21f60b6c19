"""One-shot VM provisioning for the VPN-based variant.

Unlike the poll-driven stepper, this runs the whole flow in one blocking
call, as executed by an external workflow runner for a queued job:

1. Pick the image: the configured snapshot (mesh client pre-installed) or
   the base image.
2. Get a mesh auth key, pre-generated or minted through the mesh API.
3. Create the server with a mesh-join bootstrap and wait for the create
   action to finish.
4. Wait until the machine shows up in the mesh with a private address.

Agent configuration on the machine happens later, over the mesh.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from agenthost.config import AppConfig
from agenthost.db.models import AgentStatus, InstanceStatus, JobStatus
from agenthost.errors.domain import ConflictError, ValidationError
from agenthost.services.agent_service import AgentService
from agenthost.services.bootstrap import generate_mesh_bootstrap
from agenthost.services.errors import MeshError, ProviderError
from agenthost.services.hetzner_client import CreatedServer, HetznerClient
from agenthost.services.instance_service import InstanceService
from agenthost.services.lifecycle import LifecycleManager
from agenthost.services.mesh_client import TailscaleClient
from agenthost.services.provisioning_queue import ProvisioningQueue
from agenthost.services.regions import resolve_location

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionVMResult:
    """Addresses of a freshly provisioned, mesh-enrolled machine."""

    server_id: str
    server_ip: str | None
    tailscale_ip: str
    server_name: str
    used_snapshot: bool


class VPNProvisioner:
    """Creates a server and waits for it to join the private mesh."""

    def __init__(
        self,
        config: AppConfig,
        provider: HetznerClient,
        mesh: TailscaleClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._provider = provider
        self._mesh = mesh
        self._clock = clock

    def _auth_key(self, server_name: str) -> str:
        if self.config.mesh.auth_key:
            logger.info("Using pre-generated mesh auth key")
            return self.config.mesh.auth_key
        return self._mesh.create_auth_key(description=server_name)

    def check_ready(self) -> None:
        """Raise ValidationError when the provider config cannot provision."""
        if not self.config.provider.ssh_key_ids:
            raise ValidationError("At least one provider SSH key id must be configured")

    def provision(
        self,
        job_id: str,
        agent_id: str,
        region: str,
        on_created: Callable[[CreatedServer], None] | None = None,
    ) -> ProvisionVMResult:
        """Provision and enroll one machine for a queued job.

        on_created is called as soon as the server exists, before any
        waiting, so callers can record it for cleanup.

        Raises:
            ValidationError: If no SSH key is configured.
            ProviderError: If server creation or its action fails.
            MeshError: If the auth key cannot be minted or enrollment times out.
        """
        self.check_ready()
        provider_config = self.config.provider

        server_name = f"agent-{agent_id[:8]}-{int(self._clock() * 1000)}"
        location = resolve_location(region)
        used_snapshot = bool(provider_config.snapshot_id)
        logger.info(
            "Provisioning %s in %s (%s image)",
            server_name, location, "snapshot" if used_snapshot else "base",
        )

        user_data = generate_mesh_bootstrap(
            auth_key=self._auth_key(server_name),
            hostname=server_name,
            snapshot=used_snapshot,
            tag=self.config.mesh.tag,
        )
        created = self._provider.create_server(
            name=server_name,
            location=location,
            user_data=user_data,
            labels={
                "provisioning_job_id": job_id,
                "agent_id": agent_id,
                "provisioning_mode": "snapshot-hybrid" if used_snapshot else "full",
            },
            image=provider_config.boot_image,
        )
        if on_created is not None:
            on_created(created)
        if created.action_id is not None:
            self._provider.wait_for_action(created.action_id)

        enrollment = self._mesh.verify_enrollment(server_name)
        result = ProvisionVMResult(
            server_id=created.id,
            server_ip=created.public_ip,
            tailscale_ip=enrollment.tailscale_ip,
            server_name=server_name,
            used_snapshot=used_snapshot,
        )
        logger.info("Provisioned %s (mesh %s) for job %s", server_name, result.tailscale_ip, job_id)
        return result


class ProvisioningJobRunner:
    """Runs one queued job end to end and records the outcome.

    On failure the job's partial resources are rolled back and the
    original error is re-raised.
    """

    def __init__(
        self,
        db: Session,
        provisioner: VPNProvisioner,
        lifecycle: LifecycleManager,
    ) -> None:
        self.db = db
        self.queue = ProvisioningQueue(db)
        self.instances = InstanceService(db)
        self.agents = AgentService(db)
        self._provisioner = provisioner
        self._lifecycle = lifecycle

    def run(self, job_id: str) -> ProvisionVMResult:
        """Provision the machine for a queued job.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the job is not queued or the agent already
                has an active instance.
        """
        job = self.queue.require_job(job_id)
        if job.status != JobStatus.queued.value:
            raise ConflictError(f"Job {job_id} is {job.status}, not queued")
        self._provisioner.check_ready()

        instance = self.instances.queue_provisioning(job.agent_id, region=job.region)
        self.instances.claim_pending(instance.id)
        self.queue.update_status(job_id, JobStatus.provisioning, instance_id=instance.id)

        try:
            result = self._provisioner.provision(
                job_id,
                job.agent_id,
                job.region,
                on_created=lambda created: self.instances.update_instance(
                    instance.id, server_id=created.id, server_ip=created.public_ip
                ),
            )
        except (ProviderError, MeshError) as e:
            logger.error("Job %s failed: %s", job_id, e)
            self.queue.update_status(
                job_id, JobStatus.failed, error=e.message, failed_step="provision_vm"
            )
            self._lifecycle.rollback_failed_provision(job_id)
            raise

        self.instances.transition(
            instance.id, InstanceStatus.running, tailscale_ip=result.tailscale_ip
        )
        self.agents.set_status(job.agent_id, AgentStatus.active)
        self.queue.update_status(job_id, JobStatus.running)
        return result
