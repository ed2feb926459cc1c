"""Google OAuth access token refresh."""

import asyncio
from abc import ABC, abstractmethod
from datetime import timezone

import structlog
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailflow.core.config import get_config
from mailflow.core.exceptions import InvalidCredentialsError, TemporaryProviderError
from mailflow.models.automation import OAuthCredentials

logger = structlog.get_logger(__name__)


class TokenRefresher(ABC):
    """Identity collaborator exchanging a refresh token for a fresh credential bundle."""

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> OAuthCredentials:
        ...


class GoogleTokenRefresher(TokenRefresher):

    def __init__(self):
        self.config = get_config()

    async def refresh_access_token(self, refresh_token: str) -> OAuthCredentials:
        """Refresh against Google's token endpoint.

        Raises:
            InvalidCredentialsError: If the refresh token is missing, revoked or
                rejected. The mailbox needs re-authorization.
            TemporaryProviderError: On transport failures.
        """
        if not refresh_token:
            raise InvalidCredentialsError("No refresh token stored for mailbox")

        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.config.oauth.token_uri,
            client_id=self.config.oauth.client_id,
            client_secret=self.config.oauth.client_secret,
        )

        try:
            await asyncio.to_thread(creds.refresh, Request())
        except RefreshError as e:
            logger.error("Failed to refresh credentials", error=str(e))
            raise InvalidCredentialsError(f"Token refresh rejected: {e}")
        except TransportError as e:
            logger.warning("Token refresh transport failure", error=str(e))
            raise TemporaryProviderError(f"Token refresh failed: {e}")

        # google-auth reports expiry as naive UTC
        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        logger.info("Credentials refreshed successfully", expiry=expiry.isoformat() if expiry else None)
        return OAuthCredentials(
            access_token=creds.token,
            refresh_token=creds.refresh_token or refresh_token,
            expiry=expiry,
            scope=" ".join(creds.scopes) if creds.scopes else None,
        )
