"""
Unit tests for the authentication module.

Tests the token providers for both authentication lifecycles, token
refresh, failure handling and token store persistence.
"""

import os
import stat
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError, TransportError

from scma_gsync.auth.google_auth import (
    AUTH_TYPE_OAUTH,
    AUTH_TYPE_SERVICE_ACCOUNT,
    SCOPES,
    AuthenticationError,
    AuthExpiredError,
    AuthState,
    AuthTransientError,
    ConsentRequiredError,
    OAuthTokenProvider,
    ServiceAccountTokenProvider,
    TokenProvider,
    _utcnow,
    create_token_provider,
    write_token_store,
)


def make_credentials(token="token-1", expires_in=3600):
    """Create mock google-auth credentials."""
    creds = MagicMock()
    creds.token = token
    creds.expiry = _utcnow() + timedelta(seconds=expires_in)
    return creds


def refresh_to(creds, token, expires_in=3600):
    """Make creds.refresh() install a new token."""

    def refresh(_request):
        creds.token = token
        creds.expiry = _utcnow() + timedelta(seconds=expires_in)

    creds.refresh.side_effect = refresh


class FakeTokenProvider(TokenProvider):
    """Token provider backed by preset credentials."""

    def __init__(self, credentials, **kwargs):
        super().__init__(**kwargs)
        self.loaded = credentials
        self.persisted = []

    def _load_credentials(self):
        return self.loaded

    def _persist(self, credentials):
        self.persisted.append(credentials.token)


@pytest.fixture(autouse=True)
def no_token_endpoint():
    """Never build a real transport request."""
    with patch("scma_gsync.auth.google_auth.Request"):
        yield


class TestWriteTokenStore:
    """Tests for atomic token store writes."""

    def test_writes_content(self, tmp_path):
        """Test that the token store holds the written text."""
        path = tmp_path / "token.json"
        write_token_store(path, '{"token": "abc"}')
        assert path.read_text(encoding="utf-8") == '{"token": "abc"}'

    def test_creates_parent_directory(self, tmp_path):
        """Test that missing parent directories are created."""
        path = tmp_path / "nested" / "token.json"
        write_token_store(path, "{}")
        assert path.exists()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_file_is_private(self, tmp_path):
        """Test that the token store is readable by the owner only."""
        path = tmp_path / "token.json"
        write_token_store(path, "{}")
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_failed_write_keeps_previous_store(self, tmp_path):
        """Test that a failure before the replace leaves the old file intact."""
        path = tmp_path / "token.json"
        path.write_text("old", encoding="utf-8")

        with patch("scma_gsync.auth.google_auth.os.replace", side_effect=OSError("disk")):
            with pytest.raises(OSError):
                write_token_store(path, "new")

        assert path.read_text(encoding="utf-8") == "old"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["token.json"]


class TestGetToken:
    """Tests for token retrieval and refresh."""

    def test_initial_state_is_unauthenticated(self):
        """Test that no credentials are loaded before the first token request."""
        provider = FakeTokenProvider(make_credentials())
        assert provider.state is AuthState.UNAUTHENTICATED

    def test_valid_token_is_returned_without_refresh(self):
        """Test that a fresh token is used as-is."""
        creds = make_credentials()
        provider = FakeTokenProvider(creds)

        assert provider.get_token() == "token-1"
        assert provider.state is AuthState.AUTHENTICATED
        creds.refresh.assert_not_called()

    def test_token_near_expiry_is_refreshed(self):
        """Test that a token inside the refresh margin is refreshed."""
        creds = make_credentials(expires_in=30)
        refresh_to(creds, "token-2")
        provider = FakeTokenProvider(creds, refresh_margin=60)

        assert provider.get_token() == "token-2"
        creds.refresh.assert_called_once()

    def test_missing_token_is_refreshed(self):
        """Test that credentials without a token are refreshed first."""
        creds = make_credentials(token=None)
        refresh_to(creds, "token-2")
        provider = FakeTokenProvider(creds)

        assert provider.get_token() == "token-2"

    def test_refresh_is_persisted(self):
        """Test that refreshed credentials are written back."""
        creds = make_credentials(token=None)
        refresh_to(creds, "token-2")
        provider = FakeTokenProvider(creds)

        provider.get_token()
        assert provider.persisted == ["token-2"]

    def test_revoked_refresh_token_fails_terminally(self):
        """Test that a rejected refresh puts the provider in the failed state."""
        creds = make_credentials(token=None)
        creds.refresh.side_effect = RefreshError("invalid_grant: Token has been revoked")
        provider = FakeTokenProvider(creds)

        with pytest.raises(AuthExpiredError, match="revoked"):
            provider.get_token()
        assert provider.state is AuthState.FAILED

        # Terminal for the run: no further refresh attempts
        with pytest.raises(AuthExpiredError):
            provider.get_token()
        assert creds.refresh.call_count == 1

    @patch("time.sleep")
    def test_transport_error_is_retried(self, mock_sleep):
        """Test that network failures reaching the token endpoint are retried."""
        creds = make_credentials(token=None)
        calls = [0]

        def refresh(_request):
            calls[0] += 1
            if calls[0] < 3:
                raise TransportError("connection reset")
            creds.token = "token-2"

        creds.refresh.side_effect = refresh
        provider = FakeTokenProvider(creds, max_retries=3, retry_delay=1.0)

        assert provider.get_token() == "token-2"
        assert [c[0][0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch("time.sleep")
    def test_transport_error_exhausted_is_not_terminal(self, mock_sleep):
        """Test that an unreachable token endpoint is not treated as revocation."""
        creds = make_credentials(token=None)
        creds.refresh.side_effect = TransportError("timeout")
        provider = FakeTokenProvider(creds, max_retries=2)

        with pytest.raises(AuthTransientError) as exc_info:
            provider.get_token()

        assert not isinstance(exc_info.value, AuthExpiredError)
        assert provider.state is not AuthState.FAILED
        assert creds.refresh.call_count == 2

    def test_concurrent_callers_share_one_refresh(self):
        """Test that workers waiting on an expired token trigger one refresh."""
        creds = make_credentials(expires_in=0)
        refresh_to(creds, "token-2")
        provider = FakeTokenProvider(creds)

        tokens = []
        start = threading.Barrier(5)

        def worker():
            start.wait()
            tokens.append(provider.get_token())

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tokens == ["token-2"] * 5
        assert creds.refresh.call_count == 1


class TestForceRefresh:
    """Tests for refreshing after a rejected token."""

    def test_refreshes_rejected_token(self):
        """Test that the rejected token is replaced."""
        creds = make_credentials()
        refresh_to(creds, "token-2")
        provider = FakeTokenProvider(creds)
        provider.get_token()

        assert provider.force_refresh("token-1") == "token-2"
        creds.refresh.assert_called_once()

    def test_skips_refresh_when_token_already_replaced(self):
        """Test that a second worker reuses the token another worker refreshed."""
        creds = make_credentials(token="token-2")
        provider = FakeTokenProvider(creds)
        provider.get_token()

        assert provider.force_refresh("token-1") == "token-2"
        creds.refresh.assert_not_called()

    def test_force_refresh_without_stale_token(self):
        """Test that force_refresh always refreshes without a stale token."""
        creds = make_credentials()
        refresh_to(creds, "token-2")
        provider = FakeTokenProvider(creds)

        assert provider.force_refresh() == "token-2"


class TestOAuthTokenProvider:
    """Tests for the interactive-delegated lifecycle."""

    def test_missing_token_store_requires_consent(self, tmp_path):
        """Test that unattended runs without a token store fail."""
        provider = OAuthTokenProvider(tmp_path / "secret.json", tmp_path / "token.json")

        with pytest.raises(ConsentRequiredError, match="scma-gsync auth"):
            provider.get_token()

    def test_consent_required_is_authentication_error(self):
        """Test that ConsentRequiredError is an AuthenticationError."""
        assert issubclass(ConsentRequiredError, AuthenticationError)

    @patch("scma_gsync.auth.google_auth.Credentials")
    def test_loads_token_store(self, mock_credentials_class, tmp_path):
        """Test that an existing token store is used."""
        token_path = tmp_path / "token.json"
        token_path.write_text("{}", encoding="utf-8")
        creds = make_credentials(token="stored")
        mock_credentials_class.from_authorized_user_file.return_value = creds

        provider = OAuthTokenProvider(tmp_path / "secret.json", token_path)

        assert provider.get_token() == "stored"
        mock_credentials_class.from_authorized_user_file.assert_called_once_with(
            str(token_path), SCOPES
        )

    @patch("scma_gsync.auth.google_auth.Credentials")
    def test_refresh_rewrites_token_store(self, mock_credentials_class, tmp_path):
        """Test that a refreshed token is written back to the token store."""
        token_path = tmp_path / "token.json"
        token_path.write_text("{}", encoding="utf-8")
        creds = make_credentials(expires_in=0)
        refresh_to(creds, "token-2")
        creds.to_json.return_value = '{"token": "token-2"}'
        mock_credentials_class.from_authorized_user_file.return_value = creds

        provider = OAuthTokenProvider(tmp_path / "secret.json", token_path)
        provider.get_token()

        assert token_path.read_text(encoding="utf-8") == '{"token": "token-2"}'

    @patch("scma_gsync.auth.google_auth.Credentials")
    def test_corrupt_token_store_requires_consent(self, mock_credentials_class, tmp_path):
        """Test that an unreadable token store is treated as missing."""
        token_path = tmp_path / "token.json"
        token_path.write_text("not json", encoding="utf-8")
        mock_credentials_class.from_authorized_user_file.side_effect = ValueError("bad")

        provider = OAuthTokenProvider(tmp_path / "secret.json", token_path)

        with pytest.raises(ConsentRequiredError):
            provider.get_token()

    @patch("scma_gsync.auth.google_auth.InstalledAppFlow")
    def test_consent_runs_flow_and_saves_tokens(self, mock_flow_class, tmp_path):
        """Test that consent() stores the tokens of the completed flow."""
        secret_path = tmp_path / "secret.json"
        secret_path.write_text("{}", encoding="utf-8")
        token_path = tmp_path / "token.json"

        creds = make_credentials(token="consented")
        creds.to_json.return_value = '{"token": "consented"}'
        mock_flow_class.from_client_secrets_file.return_value.run_local_server.return_value = (
            creds
        )

        provider = OAuthTokenProvider(secret_path, token_path, interactive=True)
        provider.consent()

        assert provider.state is AuthState.AUTHENTICATED
        assert provider.get_token() == "consented"
        assert token_path.read_text(encoding="utf-8") == '{"token": "consented"}'

    def test_consent_without_client_secret_fails(self, tmp_path):
        """Test that consent needs the OAuth client secret file."""
        provider = OAuthTokenProvider(
            tmp_path / "missing.json", tmp_path / "token.json", interactive=True
        )

        with pytest.raises(AuthenticationError, match="client secret file not found"):
            provider.consent()


class TestServiceAccountTokenProvider:
    """Tests for the service-identity lifecycle."""

    def test_missing_key_file(self, tmp_path):
        """Test that a missing key file is an authentication error."""
        provider = ServiceAccountTokenProvider(tmp_path / "missing.json")

        with pytest.raises(AuthenticationError, match="not found"):
            provider.get_token()

    @patch("scma_gsync.auth.google_auth.service_account.Credentials")
    def test_mints_token_on_demand(self, mock_sa_class, tmp_path):
        """Test that the first token is minted without human interaction."""
        creds = make_credentials(token=None)
        refresh_to(creds, "minted")
        mock_sa_class.from_service_account_file.return_value = creds

        provider = ServiceAccountTokenProvider(tmp_path / "key.json")

        assert provider.get_token() == "minted"
        mock_sa_class.from_service_account_file.assert_called_once_with(
            str(tmp_path / "key.json"), scopes=SCOPES
        )

    @patch("scma_gsync.auth.google_auth.service_account.Credentials")
    def test_invalid_key_file(self, mock_sa_class, tmp_path):
        """Test that a malformed key file is an authentication error."""
        mock_sa_class.from_service_account_file.side_effect = ValueError("bad key")

        provider = ServiceAccountTokenProvider(tmp_path / "key.json")

        with pytest.raises(AuthenticationError, match="bad key"):
            provider.get_token()

    @patch("scma_gsync.auth.google_auth.service_account.Credentials")
    def test_key_file_is_never_rewritten(self, mock_sa_class, tmp_path):
        """Test that refreshing does not touch the key file."""
        key_path = tmp_path / "key.json"
        key_path.write_text("original", encoding="utf-8")
        creds = make_credentials(token=None)
        refresh_to(creds, "minted")
        mock_sa_class.from_service_account_file.return_value = creds

        ServiceAccountTokenProvider(key_path).get_token()

        assert key_path.read_text(encoding="utf-8") == "original"


class TestCreateTokenProvider:
    """Tests for selecting the lifecycle from configuration."""

    def test_oauth(self, tmp_path):
        """Test that oauth selects the OAuth provider."""
        provider = create_token_provider(
            AUTH_TYPE_OAUTH, tmp_path / "secret.json", tmp_path / "token.json"
        )
        assert isinstance(provider, OAuthTokenProvider)
        assert provider.interactive is False

    def test_service_account(self, tmp_path):
        """Test that service-account selects the service account provider."""
        provider = create_token_provider(AUTH_TYPE_SERVICE_ACCOUNT, tmp_path / "key.json")
        assert isinstance(provider, ServiceAccountTokenProvider)

    def test_oauth_requires_token_file(self, tmp_path):
        """Test that oauth without a token store path is rejected."""
        with pytest.raises(ValueError, match="token file"):
            create_token_provider(AUTH_TYPE_OAUTH, tmp_path / "secret.json")

    def test_unknown_auth_type(self, tmp_path):
        """Test that unknown auth types are rejected."""
        with pytest.raises(ValueError, match="Invalid auth type"):
            create_token_provider("api-key", tmp_path / "secret.json")
