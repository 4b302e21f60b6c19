"""FastAPI routes for integration credentials.

Pushing fresh credentials to a user's running machines, and refreshing a
stored OAuth token on demand.
"""

from fastapi import APIRouter, Depends

from agenthost.api.dependencies import get_delivery_service, get_token_service
from agenthost.api.schemas import CredentialPushRequest, DeliveryReportResponse, RefreshResponse
from agenthost.errors.domain import NotFoundError
from agenthost.services.credential_delivery import CredentialDeliveryService
from agenthost.services.token_refresh import TokenRefreshService

router = APIRouter(tags=["credentials"])


@router.post("/credentials/push", response_model=DeliveryReportResponse)
def push_credentials(
    request: CredentialPushRequest,
    delivery: CredentialDeliveryService = Depends(get_delivery_service),
) -> DeliveryReportResponse:
    """Deliver the user's current credentials to every running machine.

    Per-machine failures are reported in the body, not as an error status.
    """
    report = delivery.push_credentials(request.user_id, request.provider)
    return DeliveryReportResponse(
        provider=report.provider,
        attempted=report.attempted,
        delivered=report.delivered,
        failed=report.failed,
        skipped_reason=report.skipped_reason,
    )


@router.post("/integrations/{integration_id}/refresh", response_model=RefreshResponse)
def refresh_integration(
    integration_id: str,
    tokens: TokenRefreshService = Depends(get_token_service),
) -> RefreshResponse:
    """Refresh an expired access token. ``refreshed`` is false when nothing changed."""
    if tokens.get_integration(integration_id) is None:
        raise NotFoundError("Integration", integration_id)
    return RefreshResponse(refreshed=tokens.refresh_token(integration_id) is not None)
