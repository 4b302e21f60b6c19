"""FastAPI dependency providers.

Configuration is loaded once per process. Outbound clients are built per
request from it and closed when the request finishes. Tests replace any of
these through ``app.dependency_overrides``.
"""

import os
from collections.abc import Iterator
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from agenthost.config import AppConfig, load_config
from agenthost.db.connection import get_db
from agenthost.services.credential_delivery import CredentialDeliveryService
from agenthost.services.credential_encryption import TokenCipher
from agenthost.services.hetzner_client import HetznerClient
from agenthost.services.instance_service import InstanceService
from agenthost.services.lifecycle import LifecycleManager
from agenthost.services.machine_probe import MachineProbe
from agenthost.services.mesh_client import TailscaleClient
from agenthost.services.provisioning_queue import ProvisioningQueue
from agenthost.services.provisioning_stepper import ProvisioningStepper
from agenthost.services.token_refresh import TokenRefreshService


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Application config, from AGENTHOST_CONFIG_PATH or the default search."""
    return load_config(os.environ.get("AGENTHOST_CONFIG_PATH") or None)


@lru_cache(maxsize=1)
def get_token_cipher() -> TokenCipher:
    return TokenCipher.from_environment()


def get_provider_client(config: AppConfig = Depends(get_config)) -> Iterator[HetznerClient]:
    client = HetznerClient(config.provider)
    try:
        yield client
    finally:
        client.close()


def get_mesh_client(config: AppConfig = Depends(get_config)) -> Iterator[TailscaleClient | None]:
    """Mesh client when OAuth credentials are configured, else None."""
    if not (config.mesh.oauth_client_id and config.mesh.oauth_client_secret):
        yield None
        return
    client = TailscaleClient(config.mesh)
    try:
        yield client
    finally:
        client.close()


def get_machine_probe(config: AppConfig = Depends(get_config)) -> Iterator[MachineProbe]:
    probe = MachineProbe(config.provisioning, config.worker)
    try:
        yield probe
    finally:
        probe.close()


def get_instance_service(db: Session = Depends(get_db)) -> InstanceService:
    """Dependency to get InstanceService instance."""
    return InstanceService(db)


def get_queue(db: Session = Depends(get_db)) -> ProvisioningQueue:
    """Dependency to get ProvisioningQueue instance."""
    return ProvisioningQueue(db)


def get_token_service(
    db: Session = Depends(get_db),
    config: AppConfig = Depends(get_config),
    cipher: TokenCipher = Depends(get_token_cipher),
) -> TokenRefreshService:
    """Dependency to get TokenRefreshService instance."""
    return TokenRefreshService(db, config.google, cipher)


def get_stepper(
    db: Session = Depends(get_db),
    config: AppConfig = Depends(get_config),
    provider: HetznerClient = Depends(get_provider_client),
    probe: MachineProbe = Depends(get_machine_probe),
    tokens: TokenRefreshService = Depends(get_token_service),
) -> ProvisioningStepper:
    """Dependency to get ProvisioningStepper instance."""
    return ProvisioningStepper(db, config, provider, probe, tokens=tokens)


def get_lifecycle_manager(
    db: Session = Depends(get_db),
    provider: HetznerClient = Depends(get_provider_client),
    mesh: TailscaleClient | None = Depends(get_mesh_client),
) -> LifecycleManager:
    """Dependency to get LifecycleManager instance."""
    return LifecycleManager(db, provider, mesh)


def get_delivery_service(
    db: Session = Depends(get_db),
    config: AppConfig = Depends(get_config),
    tokens: TokenRefreshService = Depends(get_token_service),
) -> CredentialDeliveryService:
    """Dependency to get CredentialDeliveryService instance."""
    return CredentialDeliveryService(db, config, tokens)
