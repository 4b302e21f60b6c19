"""Root-level pytest fixtures for all tests.

Provides:
- In-memory SQLite sessions (StaticPool) with all tables created
- Agent / instance factories
- An AppConfig with test-friendly ceilings and keys
"""

import base64
import os
from collections.abc import Callable, Generator
from datetime import datetime, timezone

# Set before any agenthost import: the default engine and the credential
# key are resolved at import / first use.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault(
    "AGENTHOST_CREDENTIAL_KEY", base64.b64encode(b"k" * 32).decode("ascii")
)

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from agenthost.config import (  # noqa: E402
    AppConfig,
    GoogleConfig,
    LLMConfig,
    MeshConfig,
    ProviderConfig,
)
from agenthost.db.models import Agent, AgentInstance, Base, InstanceStatus  # noqa: E402
from agenthost.services.credential_encryption import TokenCipher  # noqa: E402

TEST_KEY = b"k" * 32


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def test_db() -> Generator[Session, None, None]:
    """In-memory SQLite database with all tables, one session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def app_config() -> AppConfig:
    """Config with a provider token, SSH key, Google client and model key."""
    return AppConfig(
        provider=ProviderConfig(
            api_token="hcloud-test-token",
            base_url="https://hetzner.test/v1",
            ssh_key_ids=["101"],
            max_attempts=4,
        ),
        mesh=MeshConfig(
            api_base="https://tailscale.test/api/v2",
            oauth_client_id="ts-client",
            oauth_client_secret="ts-secret",
        ),
        llm=LLMConfig(openrouter_api_key="sk-or-test"),
        google=GoogleConfig(
            client_id="google-client",
            client_secret="google-secret",
            token_url="https://oauth.test/token",
        ),
    )


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TEST_KEY)


# ============================================================================
# Test Data Fixtures
# ============================================================================


@pytest.fixture
def make_agent(test_db: Session) -> Callable[..., Agent]:
    """Factory for persisted agents."""

    def _make(
        user_id: str = "user-1",
        name: str = "Scout",
        personality: str | None = "Friendly and concise.",
        goal: str | None = "Keep the inbox tidy.",
        config: dict | None = None,
        gateway_token: str | None = None,
    ) -> Agent:
        agent = Agent(
            user_id=user_id,
            name=name,
            personality=personality,
            goal=goal,
            config=config or {},
            gateway_token=gateway_token,
        )
        test_db.add(agent)
        test_db.commit()
        test_db.refresh(agent)
        return agent

    return _make


@pytest.fixture
def make_instance(test_db: Session) -> Callable[..., AgentInstance]:
    """Factory for persisted instances in any state."""

    def _make(
        agent: Agent,
        status: InstanceStatus = InstanceStatus.pending,
        current_step: str | None = None,
        server_id: str | None = None,
        server_ip: str | None = None,
        created_at: str | None = None,
        **fields,
    ) -> AgentInstance:
        instance = AgentInstance(
            agent_id=agent.id,
            status=status.value,
            current_step=current_step,
            server_id=server_id,
            server_ip=server_ip,
            created_at=created_at or datetime.now(timezone.utc).isoformat(),
            **fields,
        )
        test_db.add(instance)
        test_db.commit()
        test_db.refresh(instance)
        return instance

    return _make

