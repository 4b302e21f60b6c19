"""Pydantic schemas for API request/response validation."""

from pydantic import BaseModel, ConfigDict, Field


# Request schemas


class ProvisionRequest(BaseModel):
    """Request schema for provisioning an agent."""

    region: str = Field("us-east", min_length=1, max_length=30)


class CredentialPushRequest(BaseModel):
    """Request schema for pushing credentials to a user's machines."""

    user_id: str = Field(..., min_length=1)
    provider: str = "google"


# Response schemas


class InstanceResponse(BaseModel):
    """Response schema for an agent instance."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    status: str
    current_step: str | None
    server_id: str | None
    server_ip: str | None
    tailscale_ip: str | None
    region: str
    error: str | None
    started_at: str | None
    stopped_at: str | None
    created_at: str
    updated_at: str


class StepResponse(BaseModel):
    """One dashboard progress step."""

    model_config = ConfigDict(from_attributes=True)

    key: str
    label: str
    status: str


class InstanceStatusResponse(BaseModel):
    """Instance row plus derived progress steps and uptime."""

    instance: InstanceResponse | None
    steps: list[StepResponse]
    uptime_seconds: int | None = None


class StepResultResponse(BaseModel):
    """Outcome of stepping one instance."""

    instance_id: str
    action: str
    status: str
    current_step: str | None


class PollResponse(BaseModel):
    """Response schema for a poll of all advancing instances."""

    stepped: int
    results: list[StepResultResponse]


class DestroyResponse(BaseModel):
    instance_id: str | None
    server_deleted: bool
    mesh_deleted: bool


class DeliveryReportResponse(BaseModel):
    """Summary of a credential push."""

    provider: str
    attempted: int
    delivered: list[str]
    failed: list[str]
    skipped_reason: str | None = None


class RefreshResponse(BaseModel):
    refreshed: bool


class JobResponse(BaseModel):
    """Response schema for a provisioning job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    user_id: str
    instance_id: str | None
    trigger_id: str | None
    region: str
    status: str
    workflow_run_id: str | None
    error: str | None
    failed_step: str | None
    retry_count: int
    claimed_at: str | None
    last_heartbeat_at: str | None
    completed_at: str | None
    created_at: str


class HeartbeatResponse(BaseModel):
    recorded: bool


class TimeoutCheckResponse(BaseModel):
    timed_out: bool


class RollbackResponse(BaseModel):
    """What a job rollback cleaned up."""

    job_id: str
    instance_id: str | None
    server_deleted: bool
    mesh_deleted: bool


class ErrorResponse(BaseModel):
    """Error body rendered by the exception handlers."""

    error_code: str | None = None
    message: str
    remediation: str | None = None
