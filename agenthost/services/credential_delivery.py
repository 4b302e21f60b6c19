"""Push refreshed integration credentials to a user's running machines.

Delivery is a best-effort fan-out: each running instance gets its own
authenticated POST, and a failure on one machine is logged and counted
without stopping delivery to the others.
"""

import logging
from dataclasses import dataclass, field

import httpx
from sqlalchemy.orm import Session

from agenthost.config import AppConfig
from agenthost.errors.domain import ValidationError
from agenthost.services.agent_service import AgentService
from agenthost.services.bootstrap.skills import get_skill
from agenthost.services.instance_service import InstanceService
from agenthost.services.token_refresh import TokenRefreshService

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    """Per-call summary of a credential push."""

    provider: str
    attempted: int = 0
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failed and self.skipped_reason is None


class CredentialDeliveryService:
    """Sends the fixed-shape credential payload to every running machine of a user."""

    def __init__(
        self,
        db: Session,
        config: AppConfig,
        tokens: TokenRefreshService,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.instances = InstanceService(db)
        self.agents = AgentService(db)
        self._tokens = tokens
        self._client = http_client or httpx.Client()

    def push_credentials(self, user_id: str, provider: str = "google") -> DeliveryReport:
        """Deliver the user's current credentials for provider.

        Args:
            user_id: Owner of the integration and the agents.
            provider: Integration provider name.

        Returns:
            DeliveryReport listing delivered and failed instance ids.

        Raises:
            ValidationError: If no skill handles provider.
        """
        skill = get_skill(provider, self.config.worker)
        if skill is None:
            raise ValidationError(f"No credential receiver route for provider '{provider}'")

        report = DeliveryReport(provider=provider)
        payload = self._tokens.build_credential_payload(user_id, provider)
        if payload is None:
            report.skipped_reason = "No valid credentials; the user must reconnect"
            logger.warning("Skipping %s credential push for user %s: no valid token", provider, user_id)
            return report

        tokens_by_agent = {
            agent.id: agent.gateway_token
            for agent in self.agents.list_for_user(user_id)
            if agent.gateway_token
        }
        body = payload.to_dict()
        for instance in self.instances.list_running_for_agents(list(tokens_by_agent)):
            report.attempted += 1
            url = f"http://{instance.server_ip}{skill.push_path}"
            try:
                response = self._client.post(
                    url,
                    json=body,
                    headers={"Authorization": f"Bearer {tokens_by_agent[instance.agent_id]}"},
                    timeout=self.config.provisioning.push_timeout_seconds,
                )
            except httpx.HTTPError as e:
                logger.warning("Credential push to instance %s failed: %s", instance.id, e)
                report.failed.append(instance.id)
                continue

            if response.is_success:
                report.delivered.append(instance.id)
            else:
                logger.warning(
                    "Credential push to instance %s rejected with HTTP %d",
                    instance.id, response.status_code,
                )
                report.failed.append(instance.id)

        logger.info(
            "Pushed %s credentials for user %s: %d delivered, %d failed",
            provider, user_id, len(report.delivered), len(report.failed),
        )
        return report
