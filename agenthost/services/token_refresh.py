"""OAuth token upkeep for connected integrations.

Stored tokens are AES-GCM envelopes (see credential_encryption). This
service decrypts them only long enough to answer one question: is there a
usable access token right now? When the stored access token is expired and
a refresh token exists, it is exchanged at the provider's token endpoint
and the new token is re-encrypted and saved.

A None answer means the credential is stale and the user has to reconnect.
Callers must not treat it as retryable.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy.orm import Session

from agenthost.config import GoogleConfig
from agenthost.db.models import Integration
from agenthost.services.bootstrap.skills import CredentialPayload
from agenthost.services.credential_encryption import (
    CredentialDecryptionError,
    TokenCipher,
    token_aad,
)
from agenthost.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
TOKEN_REQUEST_TIMEOUT_SECONDS = 15.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TokenRefreshService:
    """Reads, refreshes and stores integration tokens.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(
        self,
        db: Session,
        google: GoogleConfig,
        cipher: TokenCipher,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.db = db
        self._google = google
        self._cipher = cipher
        self._client = http_client or httpx.Client(timeout=TOKEN_REQUEST_TIMEOUT_SECONDS)
        self._clock = clock

    # =========================================================================
    # Storage
    # =========================================================================

    def get_integration(self, integration_id: str) -> Integration | None:
        return self.db.get(Integration, integration_id)

    def find_integration(self, user_id: str, provider: str) -> Integration | None:
        return (
            self.db.query(Integration)
            .filter(Integration.user_id == user_id, Integration.provider == provider)
            .first()
        )

    def save_tokens(
        self,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
        email: str | None = None,
        scopes: str | None = None,
    ) -> Integration:
        """Encrypt and store tokens for a user's integration, creating it if needed."""
        integration = self.find_integration(user_id, provider)
        now = self._clock()
        if integration is None:
            integration = Integration(
                user_id=user_id,
                provider=provider,
                connected_at=now.isoformat(),
                created_at=now.isoformat(),
                metadata_json={},
            )
            self.db.add(integration)

        integration.access_token = self._cipher.encrypt(
            access_token, aad=token_aad(user_id, provider, "access")
        )
        if refresh_token is not None:
            integration.refresh_token = self._cipher.encrypt(
                refresh_token, aad=token_aad(user_id, provider, "refresh")
            )
        lifetime = expires_in if expires_in is not None else DEFAULT_TOKEN_LIFETIME_SECONDS
        integration.token_expiry = (now + timedelta(seconds=lifetime)).isoformat()
        if scopes is not None:
            integration.scopes = scopes
        if email is not None:
            integration.metadata_json = {**(integration.metadata_json or {}), "email": email}
        integration.updated_at = now.isoformat()
        self.db.commit()
        self.db.refresh(integration)
        return integration

    def _decrypt(self, integration: Integration, field: str) -> str | None:
        envelope = integration.access_token if field == "access" else integration.refresh_token
        if not envelope:
            return None
        try:
            return self._cipher.decrypt(
                envelope, aad=token_aad(integration.user_id, integration.provider, field)
            )
        except CredentialDecryptionError as e:
            logger.error(
                "Cannot decrypt %s token of integration %s: %s", field, integration.id, e
            )
            return None

    def is_expired(self, integration: Integration) -> bool:
        """True when token_expiry is known and not in the future."""
        if not integration.token_expiry:
            return False
        return _parse_iso(integration.token_expiry) <= self._clock()

    # =========================================================================
    # Refresh
    # =========================================================================

    def refresh_token(self, integration_id: str) -> str | None:
        """Exchange the refresh token when the access token has expired.

        Args:
            integration_id: Integration row id.

        Returns:
            The new plaintext access token, or None when nothing was
            refreshed: the token is still valid, there is no refresh token,
            the provider is not configured, or the exchange failed.
        """
        integration = self.get_integration(integration_id)
        if integration is None:
            logger.warning("Integration %s not found", integration_id)
            return None
        if not self.is_expired(integration):
            return None

        refresh = self._decrypt(integration, "refresh")
        if not refresh:
            logger.info(
                "Integration %s has no refresh token; user must reconnect", integration_id
            )
            return None
        if integration.provider != "google" or not self._google.configured:
            logger.warning(
                "No token endpoint configured for provider %s", integration.provider
            )
            return None

        try:
            response = self._client.post(
                self._google.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh,
                    "client_id": self._google.client_id,
                    "client_secret": self._google.client_secret,
                },
            )
        except httpx.HTTPError as e:
            logger.warning("Token refresh for %s failed: %s", integration_id, e)
            return None

        if response.status_code >= 400:
            logger.warning(
                "Token refresh for %s rejected (%s): %s",
                integration_id,
                response.status_code,
                sanitize_error_message(response.text, max_length=300),
            )
            return None

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.warning(
                "Token refresh for %s returned an unreadable body (HTTP %s)",
                integration_id,
                response.status_code,
            )
            return None
        access = body.get("access_token")
        if not access:
            logger.warning("Token refresh for %s returned no access token", integration_id)
            return None

        self.save_tokens(
            integration.user_id,
            integration.provider,
            access,
            # providers may rotate the refresh token
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
        )
        logger.info("Refreshed access token for integration %s", integration_id)
        return access

    def get_valid_access_token(self, integration_id: str) -> str | None:
        """Current access token, refreshed if expired. None means reconnect."""
        integration = self.get_integration(integration_id)
        if integration is None:
            return None
        if not self.is_expired(integration):
            return self._decrypt(integration, "access")
        return self.refresh_token(integration_id)

    # =========================================================================
    # Delivery payloads
    # =========================================================================

    def build_credential_payload(
        self, user_id: str, provider: str = "google"
    ) -> CredentialPayload | None:
        """Fixed-shape credential payload for a machine, or None if unusable."""
        integration = self.find_integration(user_id, provider)
        if integration is None:
            return None
        if not self._google.configured:
            logger.warning("Google OAuth client is not configured; skipping credentials")
            return None

        access = self.get_valid_access_token(integration.id)
        refresh = self._decrypt(integration, "refresh")
        if not access or not refresh:
            return None

        expiry = integration.token_expiry or (
            self._clock() + timedelta(seconds=DEFAULT_TOKEN_LIFETIME_SECONDS)
        ).isoformat()
        return CredentialPayload(
            email=(integration.metadata_json or {}).get("email"),
            access_token=access,
            refresh_token=refresh,
            token_expiry=expiry,
            client_id=self._google.client_id,
            client_secret=self._google.client_secret,
        )
