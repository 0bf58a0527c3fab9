"""Authentication helpers for the Gmail API."""

from __future__ import annotations

import re
from pathlib import Path

import structlog
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from .constants import SCOPES
from .exceptions import ReauthorizationRequired

logger = structlog.get_logger()

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.@-]")


class CredentialProvider:
    """Exchange an owner's stored refresh credential for a bearer token.

    Each owner has an authorized-user token file under ``token_dir``.  When
    the access token has expired it is silently refreshed and written back.
    No browser flow is ever started from here; a missing or revoked refresh
    token raises :class:`ReauthorizationRequired`.
    """

    def __init__(self, token_dir: Path, credentials_path: Path | None = None) -> None:
        self.token_dir = Path(token_dir)
        self.credentials_path = Path(credentials_path) if credentials_path else None

    def token_path(self, owner: str) -> Path:
        return self.token_dir / f"{_UNSAFE_CHARS_RE.sub('_', owner)}.json"

    def get_credentials(self, owner: str) -> Credentials:
        path = self.token_path(owner)
        if not path.exists():
            raise ReauthorizationRequired(
                f"No Gmail authorization stored for {owner!r}. Run 'mailbox-purge auth' first."
            )

        try:
            creds = Credentials.from_authorized_user_file(str(path), SCOPES)
        except ValueError as exc:
            raise ReauthorizationRequired(f"Stored Gmail token for {owner!r} is invalid: {exc}") from exc

        if creds.valid:
            return creds

        if not creds.refresh_token:
            raise ReauthorizationRequired(
                f"Gmail token for {owner!r} expired and cannot be refreshed. Please sign in again."
            )

        try:
            creds.refresh(Request())
        except (RefreshError, TransportError) as exc:
            logger.warning("gmail_token_refresh_failed", owner=owner, error=str(exc))
            raise ReauthorizationRequired(
                f"Failed to refresh Gmail token for {owner!r}. Please sign in again."
            ) from exc

        path.write_text(creds.to_json())
        logger.info("gmail_token_refreshed", owner=owner)
        return creds

    def authorize(self, owner: str) -> Credentials:
        """Run the installed-app OAuth flow and store the owner's token.

        Requires the OAuth client secrets file at ``credentials_path``.
        """
        if self.credentials_path is None or not self.credentials_path.exists():
            raise FileNotFoundError(
                f"Credentials file not found at {self.credentials_path}.\n"
                "Download your OAuth client credentials from the Google Cloud Console "
                "and save them there."
            )
        self.token_dir.mkdir(parents=True, exist_ok=True)
        flow = InstalledAppFlow.from_client_secrets_file(str(self.credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
        self.token_path(owner).write_text(creds.to_json())
        logger.info("gmail_token_stored", owner=owner)
        return creds


def build_gmail_service(creds: Credentials) -> Resource:
    """Return a Gmail API service object for ``creds``."""
    return build("gmail", "v1", credentials=creds, cache_discovery=False)
