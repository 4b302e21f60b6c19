"""Agent record access used by provisioning and lifecycle operations."""

import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from agenthost.db.models import Agent, AgentStatus
from agenthost.errors.domain import NotFoundError

logger = logging.getLogger(__name__)

GATEWAY_TOKEN_BYTES = 32


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AgentService:
    """Service for agent rows.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def create_agent(
        self,
        user_id: str,
        name: str,
        personality: str | None = None,
        goal: str | None = None,
        config: dict | None = None,
    ) -> Agent:
        """Create a draft agent."""
        now = _utc_now_iso()
        agent = Agent(
            user_id=user_id,
            name=name,
            personality=personality,
            goal=goal,
            config=config or {},
            status=AgentStatus.draft.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(agent)
        self.db.commit()
        self.db.refresh(agent)
        return agent

    def get_agent(self, agent_id: str) -> Agent | None:
        return self.db.get(Agent, agent_id)

    def require_agent(self, agent_id: str) -> Agent:
        """Get an agent or raise NotFoundError."""
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def list_for_user(self, user_id: str) -> list[Agent]:
        return (
            self.db.query(Agent)
            .filter(Agent.user_id == user_id)
            .order_by(Agent.created_at)
            .all()
        )

    def set_status(self, agent_id: str, status: AgentStatus) -> Agent:
        agent = self.require_agent(agent_id)
        if agent.status != status.value:
            logger.info("Agent %s: %s -> %s", agent_id, agent.status, status.value)
        agent.status = status.value
        agent.updated_at = _utc_now_iso()
        self.db.commit()
        return agent

    def ensure_gateway_token(self, agent_id: str) -> str:
        """Return the agent's gateway token, minting and saving one if absent.

        Tokens are minted once and never rotated.
        """
        agent = self.require_agent(agent_id)
        if not agent.gateway_token:
            agent.gateway_token = new_gateway_token()
            agent.updated_at = _utc_now_iso()
            self.db.commit()
            logger.info("Minted gateway token for agent %s", agent_id)
        return agent.gateway_token


def new_gateway_token() -> str:
    """A fresh 256-bit hex gateway token."""
    return secrets.token_hex(GATEWAY_TOKEN_BYTES)
