"""Keep a mailbox's stored OAuth credentials usable before provider calls."""

from datetime import datetime
from typing import Optional

import structlog

from mailflow.core.automation_store import AutomationStore
from mailflow.core.exceptions import InvalidCredentialsError
from mailflow.integrations.oauth_client import TokenRefresher
from mailflow.models.automation import MailboxConfig, OAuthCredentials

logger = structlog.get_logger(__name__)


async def ensure_fresh_credentials(
    store: AutomationStore,
    refresher: Optional[TokenRefresher],
    mailbox: MailboxConfig,
    now: Optional[datetime] = None,
) -> OAuthCredentials:
    """Return usable credentials, refreshing and persisting them when expired.

    Raises:
        InvalidCredentialsError: If the mailbox was never authorized or the
            refresh is rejected.
    """
    credentials = mailbox.credentials
    if credentials is None:
        raise InvalidCredentialsError(
            f"Mailbox for agent {mailbox.agent_id} is not authorized",
            {"agent_id": mailbox.agent_id}
        )
    if not credentials.is_expired(now) or refresher is None:
        return credentials

    logger.info("Refreshing expired credentials", agent_id=mailbox.agent_id)
    refreshed = await refresher.refresh_access_token(credentials.refresh_token)
    if not refreshed.refresh_token:
        refreshed.refresh_token = credentials.refresh_token
    await store.update_credentials(mailbox.agent_id, refreshed)
    mailbox.credentials = refreshed
    return refreshed
