"""
Shared plumbing for the Google API wrappers.

Provides:
- The remote adapter contract (list / create / update) used by the sync engine
- A thread-aware Google API client that attaches bearer tokens per call
- Exponential backoff retry for rate limits, server errors and timeouts
- A single forced token refresh and retry on 401 responses
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from scma_gsync.auth.google_auth import AuthenticationError, TokenProvider

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds

# Network timeout for a single HTTP request
DEFAULT_TIMEOUT = 30  # seconds

# Error reasons Google reports with 403 when a quota or rate limit is hit
RATE_LIMIT_REASONS = (
    "ratelimitexceeded",
    "userratelimitexceeded",
    "quotaexceeded",
    "quota exceeded",
    "rate limit",
)

logger = logging.getLogger(__name__)


class RemoteCallError(Exception):
    """Raised when a remote API call fails."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientRemoteError(RemoteCallError):
    """Raised when a retryable failure persists after all retries."""

    pass


class RateLimitError(TransientRemoteError):
    """Raised when rate limit is exceeded and retries are exhausted."""

    pass


class PermanentRemoteError(RemoteCallError):
    """Raised for client errors which retrying cannot fix."""

    pass


class RemoteNotFoundError(PermanentRemoteError):
    """Raised when a calendar, group or record does not exist."""

    pass


class RemoteAuthError(RemoteCallError, AuthenticationError):
    """Raised when a call is still unauthorized after a forced token refresh."""

    pass


def _error_text(error: HttpError) -> str:
    content = error.content
    if isinstance(content, bytes):
        return content.decode("utf-8", "replace")
    return str(content)


def is_rate_limited(error: HttpError) -> bool:
    """Check whether an HttpError reports a rate limit or exhausted quota."""
    status = error.resp.status
    if status == 429:
        return True
    if status != 403:
        return False
    text = _error_text(error).lower()
    return any(reason in text for reason in RATE_LIMIT_REASONS)


def is_transient(error: HttpError) -> bool:
    """Check whether an HttpError is worth retrying."""
    return is_rate_limited(error) or error.resp.status >= 500


class GoogleService:
    """
    Discovery-based Google API client shared by several worker threads.

    googleapiclient service objects are not thread safe, so each thread
    builds its own. Tokens come from the token provider on every call.

    Attributes:
        service_name: API name (e.g. "calendar", "people")
        version: API version (e.g. "v3", "v1")
        token_provider: Source of bearer tokens

    Usage:
        client = GoogleService("calendar", "v3", provider)
        result = client.execute(
            lambda s: s.events().list(calendarId=calendar_id), "list_events"
        )
    """

    def __init__(
        self,
        service_name: str,
        version: str,
        token_provider: TokenProvider,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.service_name = service_name
        self.version = version
        self.token_provider = token_provider
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.timeout = timeout
        self._local = threading.local()

    @property
    def service(self) -> Any:
        """
        Get or create this thread's Google API service object.

        Raises:
            RemoteCallError: If the service cannot be created
        """
        service = getattr(self._local, "service", None)
        if service is None:
            try:
                service = build(
                    self.service_name,
                    self.version,
                    http=httplib2.Http(timeout=self.timeout),
                    cache_discovery=False,
                )
                logger.debug(f"Created {self.service_name} API service")
            except Exception as e:
                logger.error(f"Failed to create {self.service_name} API service: {e}")
                raise RemoteCallError(f"Failed to create API service: {e}") from e
            self._local.service = service
        return service

    def execute(
        self, make_request: Callable[[Any], Any], operation_name: str
    ) -> Any:
        """
        Build and execute a request with authentication and retry.

        Transient failures (timeouts, 429, rate-limit 403, 5xx) are retried
        with exponential backoff up to max_retries attempts. A 401 forces
        one token refresh and one more try, outside the backoff loop.

        Args:
            make_request: Builds the request from the service object
            operation_name: Name for logging purposes

        Returns:
            The decoded response

        Raises:
            TransientRemoteError: If retries are exhausted
            RateLimitError: If retries are exhausted due to rate limits
            PermanentRemoteError: For other client errors
            RemoteAuthError: If the refreshed token is rejected as well
            AuthenticationError: If no token can be obtained
        """
        delay = self.initial_retry_delay
        attempt = 0
        refreshed = False

        while True:
            token = self.token_provider.get_token()
            request = make_request(self.service)
            request.headers["authorization"] = f"Bearer {token}"

            rate_limited = False
            try:
                return request.execute()

            except HttpError as e:
                status = e.resp.status

                if status == 401:
                    if refreshed:
                        raise RemoteAuthError(
                            f"{operation_name} unauthorized after token refresh",
                            status=status,
                        ) from e
                    logger.warning(f"{operation_name} unauthorized, refreshing token")
                    self.token_provider.force_refresh(token)
                    refreshed = True
                    continue

                if not is_transient(e):
                    logger.error(
                        f"{operation_name} failed with status {status}: {e}"
                    )
                    error_class = (
                        RemoteNotFoundError if status == 404 else PermanentRemoteError
                    )
                    raise error_class(
                        f"{operation_name} failed: {e}", status=status
                    ) from e

                rate_limited = is_rate_limited(e)
                error: Exception = e
                reason = "rate limited" if rate_limited else f"server error ({status})"

            except (TimeoutError, ConnectionError, httplib2.HttpLib2Error) as e:
                error = e
                reason = f"network error ({e})"

            attempt += 1
            if attempt >= self.max_retries:
                error_class = RateLimitError if rate_limited else TransientRemoteError
                raise error_class(
                    f"{operation_name} failed after {self.max_retries} attempts: {error}"
                ) from error

            logger.warning(
                f"{operation_name} {reason}, retrying in {delay:.1f}s "
                f"(attempt {attempt}/{self.max_retries})"
            )
            time.sleep(delay)
            delay = min(delay * 2, self.max_retry_delay)


class RemoteAdapter(ABC):
    """
    Uniform capability the sync engine needs from a remote service.

    Implementations perform no existence checks; the diff decides
    between create and update.
    """

    # Entity kind, used in logs and reports
    kind = "entity"

    @abstractmethod
    def list(self) -> list[Any]:
        """
        List the remote entities. Only the first page is read.

        Raises:
            RemoteCallError: If listing fails
        """

    @abstractmethod
    def create(self, entity: Any) -> str:
        """
        Create a remote record and return its remote reference.

        Raises:
            RemoteCallError: If creation fails
        """

    @abstractmethod
    def update(self, remote_ref: str, entity: Any) -> None:
        """
        Overwrite the remote record remote_ref with the entity content.

        Raises:
            RemoteCallError: If the update fails
        """
