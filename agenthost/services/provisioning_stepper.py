"""Poll-driven provisioning state machine.

Each ``step()`` call does a bounded amount of work on one instance and
returns. Nothing is kept in memory between calls: the AgentInstance row is
the whole state, so the driver can be a cron-like scheduler, the dashboard's
own status poll, or ``agenthost poll``.

Sub-state progression while ``status == provisioning``::

    (claim + create) -> vm_booting -> installing_packages -> caddy_up
                     -> verifying_chat -> running

Example:
    stepper = ProvisioningStepper(db, config, provider, probe)
    for result in stepper.poll_all():
        print(result.instance_id, result.action)
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.orm import Session

from agenthost.config import AppConfig
from agenthost.db.models import AgentInstance, AgentStatus, InstanceStatus, ProvisioningStep
from agenthost.errors.registry import format_message
from agenthost.services.agent_service import AgentService, new_gateway_token
from agenthost.services.bootstrap import CredentialPayload, generate_bootstrap
from agenthost.services.errors import ProviderError, ServerNotFoundError
from agenthost.services.hetzner_client import HetznerClient
from agenthost.services.instance_service import InstanceService, is_advancing
from agenthost.services.machine_probe import MachineProbe
from agenthost.services.regions import resolve_location
from agenthost.services.token_refresh import TokenRefreshService

logger = logging.getLogger(__name__)

BAD_GATEWAY = 502


class StepAction(str, Enum):
    """What a single step call did."""

    noop = "noop"
    lost_claim = "lost_claim"
    created = "created"
    advanced = "advanced"
    waiting = "waiting"
    running = "running"
    failed = "failed"
    timed_out = "timed_out"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step call."""

    instance_id: str
    action: StepAction
    status: str
    current_step: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningStepper:
    """Advances provisioning instances one bounded step at a time.

    Attributes:
        db: SQLAlchemy session for database operations.
        config: Application configuration.
    """

    def __init__(
        self,
        db: Session,
        config: AppConfig,
        provider: HetznerClient,
        probe: MachineProbe,
        tokens: TokenRefreshService | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the stepper.

        Args:
            db: Database session.
            config: Application configuration.
            provider: Hosting provider client.
            probe: HTTP probes against the new machine.
            tokens: Resolves connected integrations into credential files
                for the bootstrap payload. Optional.
            clock: Current UTC time, injectable for timeout tests.
        """
        self.db = db
        self.config = config
        self.instances = InstanceService(db)
        self.agents = AgentService(db)
        self._provider = provider
        self._probe = probe
        self._tokens = tokens
        self._clock = clock

    # =========================================================================
    # Entry points
    # =========================================================================

    def poll_all(self) -> list[StepResult]:
        """Step every instance that is still advancing, oldest first."""
        results = []
        for instance in self.instances.list_advancing():
            results.append(self.step(instance.id))
        return results

    def step(self, instance_id: str) -> StepResult:
        """Advance one instance by at most one sub-state.

        Raises:
            NotFoundError: If the instance does not exist.
        """
        instance = self.instances.require_instance(instance_id)
        if not is_advancing(instance):
            return self._result(instance, StepAction.noop)

        if self._timed_out(instance):
            return self._fail_timeout(instance)

        if instance.status == InstanceStatus.pending.value:
            return self._claim_and_create(instance)

        step = ProvisioningStep(instance.current_step) if instance.current_step else None
        if step is None:
            # claimed but the create result was never recorded; the
            # timeout ceiling cleans this up
            return self._result(instance, StepAction.waiting)
        if step == ProvisioningStep.vm_booting:
            return self._check_vm(instance)
        if step in (ProvisioningStep.installing_packages, ProvisioningStep.caddy_up):
            return self._check_gateway(instance, step)
        return self._check_chat(instance)

    # =========================================================================
    # Steps
    # =========================================================================

    def _timed_out(self, instance: AgentInstance) -> bool:
        created = datetime.fromisoformat(instance.created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        elapsed = (self._clock() - created).total_seconds()
        return elapsed > self.config.provisioning.timeout_seconds

    def _fail_timeout(self, instance: AgentInstance) -> StepResult:
        if instance.server_id:
            try:
                self._provider.delete_server(instance.server_id)
            except ProviderError as e:
                logger.error(
                    "Failed to delete server %s of timed-out instance %s: %s",
                    instance.server_id, instance.id, e,
                )
        minutes = self.config.provisioning.timeout_seconds // 60
        logger.warning("Instance %s timed out after %d minutes", instance.id, minutes)
        instance = self.instances.mark_failed(
            instance.id, format_message("E-4001", minutes=minutes)
        )
        self.agents.set_status(instance.agent_id, AgentStatus.error)
        return self._result(instance, StepAction.timed_out)

    def _claim_and_create(self, instance: AgentInstance) -> StepResult:
        if not self.instances.claim_pending(instance.id):
            self.db.refresh(instance)
            return self._result(instance, StepAction.lost_claim)
        self.db.refresh(instance)

        agent = instance.agent
        # persisted only once the server exists
        gateway_token = agent.gateway_token or new_gateway_token()
        user_data = generate_bootstrap(
            agent,
            instance.id,
            gateway_token,
            self.config,
            credentials=self._resolve_credentials(agent.user_id),
        )

        name = f"{self.config.provisioning.server_name_prefix}-{instance.id[:8]}"
        try:
            created = self._provider.create_server(
                name=name,
                location=resolve_location(instance.region),
                user_data=user_data,
                labels={
                    "managed-by": "agenthost",
                    "agent-id": agent.id,
                    "instance-id": instance.id,
                },
            )
        except ProviderError as e:
            logger.error("Server creation for instance %s failed: %s", instance.id, e)
            instance = self.instances.mark_failed(instance.id, e.message)
            self.agents.set_status(agent.id, AgentStatus.error)
            return self._result(instance, StepAction.failed)

        agent.gateway_token = gateway_token
        instance = self.instances.update_instance(
            instance.id,
            server_id=created.id,
            server_ip=created.public_ip,
            current_step=ProvisioningStep.vm_booting.value,
        )
        return self._result(instance, StepAction.created)

    def _check_vm(self, instance: AgentInstance) -> StepResult:
        try:
            server = self._provider.get_server(instance.server_id)
        except ServerNotFoundError as e:
            instance = self.instances.mark_failed(instance.id, e.message)
            self.agents.set_status(instance.agent_id, AgentStatus.error)
            return self._result(instance, StepAction.failed)
        except ProviderError as e:
            logger.warning("Server status check for %s failed: %s", instance.id, e)
            return self._result(instance, StepAction.waiting)

        if not server.is_running:
            return self._result(instance, StepAction.waiting)
        fields = {"current_step": ProvisioningStep.installing_packages.value}
        if server.public_ip and not instance.server_ip:
            fields["server_ip"] = server.public_ip
        instance = self.instances.update_instance(instance.id, **fields)
        return self._result(instance, StepAction.advanced)

    def _check_gateway(self, instance: AgentInstance, step: ProvisioningStep) -> StepResult:
        status = self._probe.probe_gateway(instance.server_ip)
        if status is None:
            return self._result(instance, StepAction.waiting)
        if status == BAD_GATEWAY:
            # proxy is up, worker not listening yet
            if step == ProvisioningStep.caddy_up:
                return self._result(instance, StepAction.waiting)
            next_step = ProvisioningStep.caddy_up
        else:
            next_step = ProvisioningStep.verifying_chat
        instance = self.instances.update_instance(instance.id, current_step=next_step.value)
        return self._result(instance, StepAction.advanced)

    def _check_chat(self, instance: AgentInstance) -> StepResult:
        agent = instance.agent
        status = self._probe.probe_chat(instance.server_ip, agent.gateway_token or "")
        if status is None or status == BAD_GATEWAY:
            return self._result(instance, StepAction.waiting)

        instance = self.instances.transition(instance.id, InstanceStatus.running)
        self.agents.set_status(agent.id, AgentStatus.active)
        logger.info("Instance %s is running (chat probe returned %s)", instance.id, status)
        return self._result(instance, StepAction.running)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _resolve_credentials(self, user_id: str) -> dict[str, CredentialPayload]:
        if self._tokens is None:
            return {}
        payload = self._tokens.build_credential_payload(user_id, "google")
        if payload is None:
            logger.info("No usable Google credentials for user %s; machine boots without", user_id)
            return {}
        return {"google": payload}

    @staticmethod
    def _result(instance: AgentInstance, action: StepAction) -> StepResult:
        return StepResult(
            instance_id=instance.id,
            action=action,
            status=instance.status,
            current_step=instance.current_step,
        )
