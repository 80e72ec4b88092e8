"""Gmail API service construction and token refresh from stored credentials."""

from __future__ import annotations

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from crosswire.config import GmailConfig
from crosswire.database import to_iso
from crosswire.errors import NotAuthenticated
from crosswire.models import Credential

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


def _google_credentials(cred: Credential, config: GmailConfig | None = None) -> Credentials:
    config = config or GmailConfig()
    return Credentials(
        token=cred.access_token,
        refresh_token=cred.refresh_token,
        token_uri=config.token_uri,
        client_id=config.client_id or None,
        client_secret=config.client_secret or None,
        scopes=SCOPES,
    )


def get_gmail_service(cred: Credential, config: GmailConfig | None = None):
    """Return a Gmail API service object for a stored credential."""
    return build("gmail", "v1", credentials=_google_credentials(cred, config), cache_discovery=False)


def refresh_gmail_credential(cred: Credential, config: GmailConfig) -> Credential:
    """Exchange the refresh token for a new access token.

    Raises NotAuthenticated when Google refuses the refresh.
    """
    if not config.client_id or not config.client_secret:
        raise NotAuthenticated("Gmail client id/secret not configured; cannot refresh")
    creds = _google_credentials(cred, config)
    try:
        creds.refresh(Request())
    except RefreshError as e:
        raise NotAuthenticated(f"Gmail token refresh refused: {e}") from e

    return Credential(
        user_id=cred.user_id,
        platform=cred.platform,
        access_token=creds.token,
        refresh_token=creds.refresh_token or cred.refresh_token,
        expires_at=to_iso(creds.expiry) if creds.expiry else None,
        integration_enabled=cred.integration_enabled,
        metadata=cred.metadata,
    )
