"""Pytest fixtures for API tests.

Provides a TestClient whose database session, config and outbound clients
are replaced through dependency_overrides. The provider client and the
machine probe are MagicMocks the tests program per case.
"""

from collections.abc import Generator
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from agenthost.api.dependencies import (
    get_config,
    get_machine_probe,
    get_mesh_client,
    get_provider_client,
    get_token_cipher,
)
from agenthost.api.main import app
from agenthost.api.middleware.auth import reset_rate_limiter
from agenthost.config import AppConfig
from agenthost.db.connection import get_db
from agenthost.services.credential_encryption import TokenCipher
from agenthost.services.hetzner_client import HetznerClient
from agenthost.services.machine_probe import MachineProbe


@pytest.fixture
def provider() -> MagicMock:
    return MagicMock(spec=HetznerClient)


@pytest.fixture
def probe() -> MagicMock:
    return MagicMock(spec=MachineProbe)


@pytest.fixture
def client(
    test_db: Session,
    app_config: AppConfig,
    cipher: TokenCipher,
    provider: MagicMock,
    probe: MagicMock,
) -> Generator[TestClient, None, None]:
    """TestClient with every external dependency overridden.

    Args:
        test_db: Test database session fixture.
        app_config: Test configuration.
        cipher: Token cipher with the fixed test key.
        provider: Mock hosting provider client.
        probe: Mock machine probe.

    Yields:
        TestClient configured for testing.
    """

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    get_config.cache_clear()
    reset_rate_limiter()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_config] = lambda: app_config
    app.dependency_overrides[get_token_cipher] = lambda: cipher
    app.dependency_overrides[get_provider_client] = lambda: provider
    app.dependency_overrides[get_machine_probe] = lambda: probe
    app.dependency_overrides[get_mesh_client] = lambda: None
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    get_config.cache_clear()
