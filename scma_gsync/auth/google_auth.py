"""
Authentication module for Google Calendar and Contacts synchronization.

Provides bearer tokens for Google API calls through one of two
mutually exclusive lifecycles, selected once by configuration:

- OAuth (interactive-delegated): a human grants consent once, the token
  store keeps the refresh token, and later runs refresh silently.
- Service account: a signed key file mints short-lived tokens on demand.

The rest of the package only ever calls ``get_token()`` and, after a 401
response, ``force_refresh()``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

# OAuth2 scopes for the two services
SCOPE_CALENDAR = "https://www.googleapis.com/auth/calendar"
SCOPE_CONTACTS = "https://www.googleapis.com/auth/contacts"
SCOPES = [SCOPE_CALENDAR, SCOPE_CONTACTS]

# Auth lifecycle identifiers, as used in configuration
AUTH_TYPE_OAUTH = "oauth"
AUTH_TYPE_SERVICE_ACCOUNT = "service-account"
AUTH_TYPES = (AUTH_TYPE_OAUTH, AUTH_TYPE_SERVICE_ACCOUNT)

# Refresh tokens this many seconds before they expire
DEFAULT_REFRESH_MARGIN = 60

# Retry configuration for transient token endpoint failures
DEFAULT_REFRESH_RETRIES = 3
DEFAULT_REFRESH_RETRY_DELAY = 1.0  # seconds

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication fails or credentials are invalid."""

    pass


class AuthExpiredError(AuthenticationError):
    """Raised when the refresh token or service key was revoked or is invalid.

    Unattended runs cannot recover; a human has to grant consent again or
    replace the credential.
    """

    pass


class ConsentRequiredError(AuthenticationError):
    """Raised when no usable token store exists and consent cannot be requested."""

    pass


class AuthTransientError(AuthenticationError):
    """Raised when the token endpoint stays unreachable after retrying.

    The grant itself is still valid; a later call may succeed.
    """

    pass


class AuthState(Enum):
    """Lifecycle state of a token provider."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


def _utcnow() -> datetime:
    # google-auth keeps expiry as a naive UTC datetime
    return datetime.now(timezone.utc).replace(tzinfo=None)


def write_token_store(path: Path, text: str) -> None:
    """
    Write the token store atomically.

    The new content goes to a temporary file in the same directory which
    then replaces the old file, so a crash mid-write leaves the previous
    token store intact.
    """
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, tmp_name = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class TokenProvider(ABC):
    """
    Shared token lifecycle for both authentication variants.

    The current credentials are shared by all workers. Refreshes are
    serialized by a lock: a worker needing a fresh token while another
    refreshes waits for that refresh instead of issuing its own.

    Attributes:
        scopes: OAuth scopes requested
        state: Current AuthState
    """

    def __init__(
        self,
        scopes: list[str] | None = None,
        refresh_margin: int = DEFAULT_REFRESH_MARGIN,
        max_retries: int = DEFAULT_REFRESH_RETRIES,
        retry_delay: float = DEFAULT_REFRESH_RETRY_DELAY,
    ):
        self.scopes = list(scopes or SCOPES)
        self.refresh_margin = timedelta(seconds=refresh_margin)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.state = AuthState.UNAUTHENTICATED
        self._credentials: Any = None
        self._failure: str | None = None
        self._lock = threading.Lock()

    @abstractmethod
    def _load_credentials(self) -> Any:
        """Load the credentials backing this provider."""

    def _persist(self, credentials: Any) -> None:
        """Persist credentials after a refresh. Nothing to do by default."""

    @property
    def expiry(self) -> datetime | None:
        return getattr(self._credentials, "expiry", None)

    def _needs_refresh(self, credentials: Any) -> bool:
        if not credentials.token:
            return True
        expiry = getattr(credentials, "expiry", None)
        if expiry is None:
            return False
        return expiry - self.refresh_margin <= _utcnow()

    def _ensure_usable(self) -> Any:
        if self.state is AuthState.FAILED:
            raise AuthExpiredError(f"Credentials are no longer valid: {self._failure}")
        if self._credentials is None:
            self._credentials = self._load_credentials()
        return self._credentials

    def _fail(self, message: str) -> AuthExpiredError:
        self.state = AuthState.FAILED
        self._failure = message
        logger.error(message)
        return AuthExpiredError(message)

    def _refresh(self) -> None:
        """
        Refresh the credentials, retrying transient token endpoint failures.

        Raises:
            AuthExpiredError: If the grant was revoked or is invalid
            AuthTransientError: If the token endpoint stays unreachable
        """
        delay = self.retry_delay

        for attempt in range(self.max_retries):
            try:
                self._credentials.refresh(Request())
                break
            except RefreshError as e:
                if not getattr(e, "retryable", False):
                    raise self._fail(f"Token refresh rejected: {e}") from e
                error: Exception = e
            except TransportError as e:
                error = e

            if attempt == self.max_retries - 1:
                raise AuthTransientError(
                    f"Token refresh failed after {self.max_retries} attempts: {error}"
                ) from error
            logger.warning(
                f"Token refresh failed ({error}), retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{self.max_retries})"
            )
            time.sleep(delay)
            delay *= 2

        logger.debug(f"Refreshed access token, expires {self._credentials.expiry}")
        self._persist(self._credentials)

    def get_token(self) -> str:
        """
        Return a valid bearer token, refreshing it when expired or near expiry.

        Raises:
            AuthenticationError: If no valid token can be obtained
        """
        with self._lock:
            credentials = self._ensure_usable()
            if self._needs_refresh(credentials):
                self._refresh()
            self.state = AuthState.AUTHENTICATED
            return str(self._credentials.token)

    def force_refresh(self, stale_token: str | None = None) -> str:
        """
        Refresh the token after the remote service rejected it.

        Args:
            stale_token: The token that was rejected. If another worker has
                already replaced it, the current token is returned without
                a second refresh.

        Raises:
            AuthenticationError: If no valid token can be obtained
        """
        with self._lock:
            credentials = self._ensure_usable()
            if (
                stale_token is not None
                and credentials.token
                and credentials.token != stale_token
                and not self._needs_refresh(credentials)
            ):
                return str(credentials.token)
            self._refresh()
            self.state = AuthState.AUTHENTICATED
            return str(self._credentials.token)


class OAuthTokenProvider(TokenProvider):
    """
    Interactive-delegated lifecycle backed by a persisted token store.

    The token store holds the access token, its expiry and the refresh
    token. It is read at startup and rewritten after every refresh.

    Usage:
        provider = OAuthTokenProvider("secret-oauth.json", "token.json")
        provider.consent()      # once, by a human
        token = provider.get_token()
    """

    def __init__(
        self,
        client_secret_path: Path | str,
        token_path: Path | str,
        scopes: list[str] | None = None,
        interactive: bool = False,
        **kwargs: Any,
    ):
        super().__init__(scopes, **kwargs)
        self.client_secret_path = Path(client_secret_path)
        self.token_path = Path(token_path)
        self.interactive = interactive

    def _read_token_store(self) -> Credentials | None:
        if not self.token_path.exists():
            logger.debug(f"No token store at {self.token_path}")
            return None

        try:
            creds: Credentials = Credentials.from_authorized_user_file(
                str(self.token_path), self.scopes
            )
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Invalid token store {self.token_path}: {e}")
            return None

        logger.debug(f"Loaded token store {self.token_path}")
        return creds

    def _load_credentials(self) -> Credentials:
        creds = self._read_token_store()
        if creds is not None and (creds.refresh_token or creds.valid):
            logger.info(f"Authenticating using OAuth (client_id={creds.client_id})")
            return creds

        if not self.interactive:
            raise ConsentRequiredError(
                f"No usable OAuth token in {self.token_path}. "
                "Run 'scma-gsync auth' to grant access."
            )
        return self._run_consent_flow()

    def _run_consent_flow(self) -> Credentials:
        if not self.client_secret_path.exists():
            raise AuthenticationError(
                f"OAuth client secret file not found: {self.client_secret_path}\n"
                "Download the OAuth client credentials from the "
                "Google Cloud Console and save them to this location."
            )

        logger.info("Starting OAuth consent flow")
        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self.client_secret_path), self.scopes
            )
            creds: Credentials = flow.run_local_server(port=0)
        except Exception as e:
            raise AuthenticationError(f"OAuth consent failed: {e}") from e

        self._persist(creds)
        logger.info(f"Saved OAuth token store to {self.token_path}")
        return creds

    def consent(self) -> None:
        """Run the interactive consent flow and store the resulting tokens."""
        with self._lock:
            self._credentials = self._run_consent_flow()
            self._failure = None
            self.state = AuthState.AUTHENTICATED

    def _persist(self, credentials: Credentials) -> None:
        write_token_store(self.token_path, credentials.to_json())


class ServiceAccountTokenProvider(TokenProvider):
    """
    Service-to-service lifecycle backed by a service account key file.

    The key file is read once and never rewritten; tokens live in memory.

    Usage:
        provider = ServiceAccountTokenProvider("secret-service-account.json")
        token = provider.get_token()
    """

    def __init__(
        self,
        key_path: Path | str,
        scopes: list[str] | None = None,
        subject: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(scopes, **kwargs)
        self.key_path = Path(key_path)
        self.subject = subject

    def _load_credentials(self) -> service_account.Credentials:
        try:
            creds = service_account.Credentials.from_service_account_file(
                str(self.key_path), scopes=self.scopes
            )
        except FileNotFoundError as e:
            raise AuthenticationError(
                f"Service account key file not found: {self.key_path}"
            ) from e
        except (OSError, ValueError) as e:
            raise AuthenticationError(
                f"Could not read service account key from {self.key_path}: {e}"
            ) from e

        if self.subject:
            creds = creds.with_subject(self.subject)

        logger.info(
            f"Authenticating using service account "
            f"(client_email={creds.service_account_email})"
        )
        return creds


def create_token_provider(
    auth_type: str,
    secret_file: Path | str,
    token_file: Path | str | None = None,
    scopes: list[str] | None = None,
    interactive: bool = False,
) -> TokenProvider:
    """
    Build the token provider selected by configuration.

    Args:
        auth_type: AUTH_TYPE_OAUTH or AUTH_TYPE_SERVICE_ACCOUNT
        secret_file: OAuth client secret or service account key file
        token_file: OAuth token store (required for OAuth)
        scopes: OAuth scopes to request
        interactive: Allow the OAuth consent flow when no token exists

    Raises:
        ValueError: If auth_type is unknown or the token file is missing
    """
    if auth_type == AUTH_TYPE_OAUTH:
        if token_file is None:
            raise ValueError("OAuth authentication requires a token file")
        return OAuthTokenProvider(
            secret_file, token_file, scopes=scopes, interactive=interactive
        )
    if auth_type == AUTH_TYPE_SERVICE_ACCOUNT:
        return ServiceAccountTokenProvider(secret_file, scopes=scopes)
    raise ValueError(
        f"Invalid auth type '{auth_type}'. Must be one of: {', '.join(AUTH_TYPES)}"
    )
