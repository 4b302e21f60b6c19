"""FastAPI routes for agent provisioning and lifecycle.

The dashboard's trigger and status query: queue a provisioning attempt,
read the instance with its progress steps, and stop, start or destroy the
agent's machine.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from agenthost.api.dependencies import (
    get_instance_service,
    get_lifecycle_manager,
    get_stepper,
)
from agenthost.api.schemas import (
    DestroyResponse,
    InstanceResponse,
    InstanceStatusResponse,
    ProvisionRequest,
    StepResponse,
)
from agenthost.db.connection import get_db
from agenthost.db.models import AgentInstance
from agenthost.services.agent_service import AgentService
from agenthost.services.instance_service import InstanceService, is_advancing
from agenthost.services.lifecycle import LifecycleManager
from agenthost.services.provisioning_stepper import ProvisioningStepper
from agenthost.services.provisioning_steps import compute_uptime, derive_steps

router = APIRouter(prefix="/agents", tags=["agents"])


def get_agent_service(db: Session = Depends(get_db)) -> AgentService:
    """Dependency to get AgentService instance."""
    return AgentService(db)


def _status_response(instance: AgentInstance | None) -> InstanceStatusResponse:
    return InstanceStatusResponse(
        instance=InstanceResponse.model_validate(instance) if instance else None,
        steps=[StepResponse.model_validate(step) for step in derive_steps(instance)],
        uptime_seconds=compute_uptime(instance),
    )


@router.post("/{agent_id}/provision", response_model=InstanceStatusResponse, status_code=202)
def provision_agent(
    agent_id: str,
    request: ProvisionRequest | None = None,
    instance_svc: InstanceService = Depends(get_instance_service),
) -> InstanceStatusResponse:
    """Queue a provisioning attempt and return immediately.

    Args:
        agent_id: Agent to provision.
        request: Optional body with the logical region.
        instance_svc: Instance service dependency.

    Returns:
        The pending instance with its progress steps.

    Raises:
        NotFoundError: If the agent does not exist (404).
        ConflictError: If the agent already has an active instance (409).
    """
    region = request.region if request else "us-east"
    instance = instance_svc.queue_provisioning(agent_id, region=region)
    return _status_response(instance)


@router.get("/{agent_id}/instance", response_model=InstanceStatusResponse)
def get_agent_instance(
    agent_id: str,
    agent_svc: AgentService = Depends(get_agent_service),
    instance_svc: InstanceService = Depends(get_instance_service),
    stepper: ProvisioningStepper = Depends(get_stepper),
) -> InstanceStatusResponse:
    """Latest instance of an agent with steps and uptime.

    When the instance is still provisioning, this also drives one step so
    the dashboard's status poll doubles as the provisioning driver.
    """
    agent_svc.require_agent(agent_id)
    instance = instance_svc.get_latest_for_agent(agent_id)
    if instance is not None and is_advancing(instance):
        stepper.step(instance.id)
        instance = instance_svc.get_instance(instance.id)
    return _status_response(instance)


@router.post("/{agent_id}/stop", response_model=InstanceStatusResponse)
def stop_agent(
    agent_id: str,
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> InstanceStatusResponse:
    """Gracefully stop the agent's running machine."""
    return _status_response(lifecycle.stop(agent_id))


@router.post("/{agent_id}/start", response_model=InstanceStatusResponse)
def start_agent(
    agent_id: str,
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> InstanceStatusResponse:
    """Power the agent's stopped machine back on."""
    return _status_response(lifecycle.start(agent_id))


@router.post("/{agent_id}/destroy", response_model=DestroyResponse)
def destroy_agent(
    agent_id: str,
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> DestroyResponse:
    """Tear down the agent's machine and mesh device. Idempotent."""
    result = lifecycle.destroy(agent_id)
    return DestroyResponse(
        instance_id=result.instance_id,
        server_deleted=result.server_deleted,
        mesh_deleted=result.mesh_deleted,
    )
