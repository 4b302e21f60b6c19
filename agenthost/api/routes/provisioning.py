"""Internal provisioning endpoints for an external scheduler and workflow runner.

``/poll`` drives the poll-based stepper. The ``/jobs`` endpoints are called
by the workflow runner executing queued jobs of the VPN variant: it sends a
heartbeat every HEARTBEAT_INTERVAL_SECONDS, and the scheduler asks for a
timeout check on jobs that have gone quiet.
"""

from fastapi import APIRouter, Depends

from agenthost.api.dependencies import get_lifecycle_manager, get_queue, get_stepper
from agenthost.api.schemas import (
    HeartbeatResponse,
    JobResponse,
    PollResponse,
    RollbackResponse,
    StepResultResponse,
    TimeoutCheckResponse,
)
from agenthost.services.lifecycle import LifecycleManager
from agenthost.services.provisioning_queue import ProvisioningQueue
from agenthost.services.provisioning_stepper import ProvisioningStepper

router = APIRouter(prefix="/internal/provisioning", tags=["provisioning"])


@router.post("/poll", response_model=PollResponse)
def poll_provisioning(stepper: ProvisioningStepper = Depends(get_stepper)) -> PollResponse:
    """Step every instance that is still provisioning, once."""
    results = stepper.poll_all()
    return PollResponse(
        stepped=len(results),
        results=[
            StepResultResponse(
                instance_id=result.instance_id,
                action=result.action.value,
                status=result.status,
                current_step=result.current_step,
            )
            for result in results
        ],
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, queue: ProvisioningQueue = Depends(get_queue)) -> JobResponse:
    return JobResponse.model_validate(queue.require_job(job_id))


@router.post("/jobs/{job_id}/heartbeat", response_model=HeartbeatResponse)
def job_heartbeat(job_id: str, queue: ProvisioningQueue = Depends(get_queue)) -> HeartbeatResponse:
    """Record a heartbeat. ``recorded`` is false unless the job is provisioning."""
    return HeartbeatResponse(recorded=queue.record_heartbeat(job_id))


@router.post("/jobs/{job_id}/check-timeout", response_model=TimeoutCheckResponse)
def check_job_timeout(
    job_id: str, queue: ProvisioningQueue = Depends(get_queue)
) -> TimeoutCheckResponse:
    """Fail the job if it has sent no heartbeat within the timeout."""
    queue.require_job(job_id)
    return TimeoutCheckResponse(timed_out=queue.check_job_timeout(job_id))


@router.post("/jobs/{job_id}/rollback", response_model=RollbackResponse)
def rollback_job(
    job_id: str,
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> RollbackResponse:
    """Clean up the server and mesh device a failed job left behind."""
    result = lifecycle.rollback_failed_provision(job_id)
    return RollbackResponse(
        job_id=result.job_id,
        instance_id=result.instance_id,
        server_deleted=result.server_deleted,
        mesh_deleted=result.mesh_deleted,
    )


@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
def retry_job(job_id: str, queue: ProvisioningQueue = Depends(get_queue)) -> JobResponse:
    """Put a failed job back in the queue (bounded number of retries)."""
    return JobResponse.model_validate(queue.requeue(job_id))
