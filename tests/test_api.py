"""
Unit tests for the Google API modules.

Tests the shared GoogleService client (authentication, retry and 401
handling) and the Calendar and People wrappers and adapters with mocked
Google API responses.
"""

from datetime import date
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from googleapiclient.errors import HttpError

from scma_gsync.api.base import (
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    GoogleService,
    PermanentRemoteError,
    RateLimitError,
    RemoteAuthError,
    RemoteCallError,
    RemoteNotFoundError,
    TransientRemoteError,
    is_rate_limited,
    is_transient,
)
from scma_gsync.api.calendar_api import AclAdapter, CalendarAPI, EventsAdapter
from scma_gsync.api.people_api import (
    BATCH_GET_MAX_CONTACTS,
    CONTACT_GROUP_MAX_MEMBERS,
    UPDATE_PERSON_FIELDS,
    MembersAdapter,
    PeopleAPI,
)
from scma_gsync.auth.google_auth import AuthenticationError
from scma_gsync.sync.acl import AclGrant
from scma_gsync.sync.event import Event
from scma_gsync.sync.member import Member


def http_error(status, content=b"error"):
    """Create an HttpError with the given status."""
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.reason = "error"
    return HttpError(mock_resp, content)


def make_request(result=None, side_effect=None):
    """Create a mock API request."""
    request = MagicMock()
    request.headers = {}
    if side_effect is not None:
        request.execute.side_effect = side_effect
    else:
        request.execute.return_value = result
    return request


@pytest.fixture
def token_provider():
    """Create a mock token provider."""
    provider = MagicMock()
    provider.get_token.return_value = "token-1"
    provider.force_refresh.return_value = "token-2"
    return provider


@pytest.fixture
def client(token_provider):
    """Create a GoogleService with a mocked service object."""
    client = GoogleService("calendar", "v3", token_provider)
    client._local.service = MagicMock()
    return client


class TestErrorClassification:
    """Tests for HttpError classification."""

    def test_429_is_rate_limited(self):
        assert is_rate_limited(http_error(429))

    def test_403_with_rate_limit_reason_is_rate_limited(self):
        error = http_error(403, b'{"error": {"errors": [{"reason": "rateLimitExceeded"}]}}')
        assert is_rate_limited(error)
        assert is_transient(error)

    def test_403_permission_denied_is_not_transient(self):
        error = http_error(403, b'{"error": {"message": "Forbidden"}}')
        assert not is_rate_limited(error)
        assert not is_transient(error)

    def test_5xx_is_transient(self):
        assert is_transient(http_error(500))
        assert is_transient(http_error(503))

    def test_4xx_is_not_transient(self):
        assert not is_transient(http_error(400))
        assert not is_transient(http_error(404))

    def test_remote_auth_error_is_authentication_error(self):
        """Test that a persistent 401 counts as an authentication failure."""
        assert issubclass(RemoteAuthError, AuthenticationError)
        assert issubclass(RemoteAuthError, RemoteCallError)


class TestGoogleServiceCreation:
    """Tests for the per-thread service object."""

    @patch("scma_gsync.api.base.build")
    def test_service_created_on_first_access(self, mock_build, token_provider):
        """Test that the service is built lazily with its own HTTP object."""
        client = GoogleService("people", "v1", token_provider)

        service = client.service

        assert service is mock_build.return_value
        args, kwargs = mock_build.call_args
        assert args == ("people", "v1")
        assert isinstance(kwargs["http"], httplib2.Http)
        assert kwargs["cache_discovery"] is False

    @patch("scma_gsync.api.base.build")
    def test_service_cached_per_thread(self, mock_build, token_provider):
        """Test that the service is built once per thread."""
        client = GoogleService("people", "v1", token_provider)

        assert client.service is client.service
        assert mock_build.call_count == 1

    @patch("scma_gsync.api.base.build")
    def test_service_creation_failure(self, mock_build, token_provider):
        """Test that build failures are reported as RemoteCallError."""
        mock_build.side_effect = Exception("discovery failed")
        client = GoogleService("people", "v1", token_provider)

        with pytest.raises(RemoteCallError, match="Failed to create API service"):
            _ = client.service


class TestExecute:
    """Tests for authenticated execution with retry."""

    def test_attaches_bearer_token(self, client):
        """Test that every request carries the current token."""
        request = make_request({"ok": True})

        result = client.execute(lambda s: request, "test_operation")

        assert result == {"ok": True}
        assert request.headers["authorization"] == "Bearer token-1"

    def test_passes_service_to_request_builder(self, client):
        """Test that the request is built from the thread's service."""
        builder = MagicMock(return_value=make_request({}))

        client.execute(builder, "test_operation")

        builder.assert_called_once_with(client._local.service)

    @patch("time.sleep")
    def test_rate_limit_retries_with_backoff(self, mock_sleep, client):
        """Test that rate limit errors are retried."""
        request = make_request(
            side_effect=[http_error(429), http_error(429), {"ok": True}]
        )

        result = client.execute(lambda s: request, "test_operation")

        assert result == {"ok": True}
        assert request.execute.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("time.sleep")
    def test_rate_limit_exhausted(self, mock_sleep, client):
        """Test that exhausted retries on rate limits raise RateLimitError."""
        request = make_request(side_effect=http_error(429))

        with pytest.raises(RateLimitError, match="after 5 attempts"):
            client.execute(lambda s: request, "test_operation")

        assert request.execute.call_count == DEFAULT_MAX_RETRIES
        assert mock_sleep.call_count == DEFAULT_MAX_RETRIES - 1

    @patch("time.sleep")
    def test_server_error_exhausted_is_transient(self, mock_sleep, client):
        """Test that persistent 5xx errors raise TransientRemoteError."""
        request = make_request(side_effect=http_error(503))

        with pytest.raises(TransientRemoteError) as exc_info:
            client.execute(lambda s: request, "test_operation")

        assert not isinstance(exc_info.value, RateLimitError)

    @patch("time.sleep")
    def test_network_timeout_is_retried(self, mock_sleep, client):
        """Test that timeouts are retried."""
        request = make_request(side_effect=[TimeoutError("timed out"), {"ok": True}])

        assert client.execute(lambda s: request, "test_operation") == {"ok": True}
        assert mock_sleep.call_count == 1

    @patch("time.sleep")
    def test_backoff_delay_doubles(self, mock_sleep, client):
        """Test that the backoff delay doubles with each retry."""
        request = make_request(
            side_effect=[http_error(500), http_error(500), http_error(500), {}]
        )

        client.execute(lambda s: request, "test_operation")

        delays = [call[0][0] for call in mock_sleep.call_args_list]
        assert delays == [
            DEFAULT_INITIAL_RETRY_DELAY,
            DEFAULT_INITIAL_RETRY_DELAY * 2,
            DEFAULT_INITIAL_RETRY_DELAY * 4,
        ]

    @patch("time.sleep")
    def test_backoff_capped_at_max(self, mock_sleep, token_provider):
        """Test that the backoff delay never exceeds the maximum."""
        client = GoogleService(
            "calendar", "v3", token_provider, max_retries=10, initial_retry_delay=20.0
        )
        client._local.service = MagicMock()
        request = make_request(side_effect=http_error(500))

        with pytest.raises(TransientRemoteError):
            client.execute(lambda s: request, "test_operation")

        delays = [call[0][0] for call in mock_sleep.call_args_list]
        assert max(delays) == DEFAULT_MAX_RETRY_DELAY

    @patch("time.sleep")
    def test_client_error_does_not_retry(self, mock_sleep, client):
        """Test that 4xx errors fail immediately."""
        request = make_request(side_effect=http_error(400))

        with pytest.raises(PermanentRemoteError, match="test_operation failed"):
            client.execute(lambda s: request, "test_operation")

        assert request.execute.call_count == 1
        mock_sleep.assert_not_called()

    def test_not_found(self, client):
        """Test that 404 raises RemoteNotFoundError."""
        request = make_request(side_effect=http_error(404))

        with pytest.raises(RemoteNotFoundError):
            client.execute(lambda s: request, "test_operation")

    @patch("time.sleep")
    def test_401_forces_one_refresh_and_retries(self, mock_sleep, client, token_provider):
        """Test that an unauthorized call is retried once with a new token."""
        token_provider.get_token.side_effect = ["token-1", "token-2"]
        request = make_request(side_effect=[http_error(401), {"ok": True}])

        result = client.execute(lambda s: request, "test_operation")

        assert result == {"ok": True}
        token_provider.force_refresh.assert_called_once_with("token-1")
        assert request.headers["authorization"] == "Bearer token-2"
        mock_sleep.assert_not_called()

    def test_second_401_is_fatal(self, client, token_provider):
        """Test that a 401 after the forced refresh raises RemoteAuthError."""
        request = make_request(side_effect=[http_error(401), http_error(401)])

        with pytest.raises(RemoteAuthError, match="unauthorized after token refresh"):
            client.execute(lambda s: request, "test_operation")

        assert token_provider.force_refresh.call_count == 1
        assert request.execute.call_count == 2

    def test_token_failure_propagates(self, client, token_provider):
        """Test that token provider failures surface unchanged."""
        token_provider.get_token.side_effect = AuthenticationError("revoked")
        request = make_request({})

        with pytest.raises(AuthenticationError, match="revoked"):
            client.execute(lambda s: request, "test_operation")

        request.execute.assert_not_called()


class TestCalendarAPI:
    """Tests for the Calendar API wrapper."""

    @pytest.fixture
    def api(self, token_provider):
        api = CalendarAPI(token_provider)
        api.client._local.service = MagicMock()
        return api

    @pytest.fixture
    def service(self, api):
        return api.client._local.service

    def test_find_calendar_by_summary(self, api, service):
        """Test that the calendar is found by its name."""
        service.calendarList.return_value.list.return_value = make_request(
            {
                "items": [
                    {"id": "primary@example.com", "summary": "Personal"},
                    {"id": "abc@group.calendar.google.com", "summary": "SCMA"},
                ]
            }
        )

        assert api.find_calendar("SCMA") == "abc@group.calendar.google.com"

    def test_find_calendar_not_found(self, api, service):
        """Test that an unknown calendar name raises RemoteNotFoundError."""
        service.calendarList.return_value.list.return_value = make_request({"items": []})

        with pytest.raises(RemoteNotFoundError, match="Calendar not found"):
            api.find_calendar("SCMA")

    def test_find_calendar_uses_id_when_not_listed(self, api, service):
        """Test that a calendar id is accepted when it is not in the list."""
        service.calendarList.return_value.list.return_value = make_request({"items": []})

        assert api.find_calendar("abc@group.calendar.google.com") == (
            "abc@group.calendar.google.com"
        )

    def test_list_events_skips_cancelled(self, api, service):
        """Test that cancelled events are not part of the snapshot."""
        service.events.return_value.list.return_value = make_request(
            {
                "items": [
                    {"id": "1", "status": "confirmed"},
                    {"id": "2", "status": "cancelled"},
                ]
            }
        )

        assert [item["id"] for item in api.list_events("cal")] == ["1"]

    def test_list_events_reads_first_page_only(self, api, service):
        """Test that further pages are not requested."""
        service.events.return_value.list.return_value = make_request(
            {"items": [{"id": "1"}], "nextPageToken": "next"}
        )

        api.list_events("cal")

        assert service.events.return_value.list.call_count == 1

    def test_insert_acl_passes_notification_flag(self, api, service):
        """Test that sendNotifications is passed through."""
        service.acl.return_value.insert.return_value = make_request({"id": "user:a"})

        api.insert_acl("cal", {"role": "reader"}, send_notifications=True)

        service.acl.return_value.insert.assert_called_once_with(
            calendarId="cal", body={"role": "reader"}, sendNotifications=True
        )


class TestEventsAdapter:
    """Tests for the calendar events adapter."""

    def test_list_converts_events(self):
        api = MagicMock()
        api.list_events.return_value = [
            {
                "id": "evt1",
                "summary": "Hike",
                "start": {"date": "2024-06-01"},
                "end": {"date": "2024-06-02"},
            },
            {"id": "evt2", "summary": "No start"},
        ]

        events = EventsAdapter(api, "cal").list()

        assert len(events) == 1
        assert events[0].identity_key == "Hike|2024-06-01"
        assert events[0].remote_ref == "evt1"
        assert events[0].end_date == date(2024, 6, 1)

    def test_create_returns_event_id(self):
        api = MagicMock()
        api.insert_event.return_value = {"id": "evt1"}
        event = Event(title="Hike", start_date=date(2024, 6, 1), end_date=date(2024, 6, 1))

        assert EventsAdapter(api, "cal").create(event) == "evt1"
        api.insert_event.assert_called_once_with("cal", event.to_api_format())

    def test_update_patches_event(self):
        api = MagicMock()
        api.patch_event.return_value = {}
        event = Event(title="Hike", start_date=date(2024, 6, 1), end_date=date(2024, 6, 1))

        EventsAdapter(api, "cal").update("evt1", event)

        api.patch_event.assert_called_once_with("cal", "evt1", event.to_api_format())

    def test_summary_prefix_written_and_stripped(self):
        api = MagicMock()
        api.insert_event.return_value = {"id": "evt1"}
        event = Event(title="Hike", start_date=date(2024, 6, 1), end_date=date(2024, 6, 1))
        adapter = EventsAdapter(api, "cal", summary_prefix="SCMA: ")

        adapter.create(event)
        body = api.insert_event.call_args[0][1]
        api.list_events.return_value = [dict(body, id="evt1")]
        listed = adapter.list()

        assert body["summary"] == "SCMA: Hike"
        assert listed[0].title == "Hike"
        assert event.same_content(listed[0])


class TestAclAdapter:
    """Tests for the calendar sharing adapter."""

    def test_list_ignores_non_user_rules(self):
        api = MagicMock()
        api.list_acl.return_value = [
            {"id": "user:a@example.com", "role": "owner",
             "scope": {"type": "user", "value": "a@example.com"}},
            {"id": "default", "role": "none", "scope": {"type": "default"}},
            {"id": "domain:example.com", "role": "reader",
             "scope": {"type": "domain", "value": "example.com"}},
        ]

        grants = AclAdapter(api, "cal").list()

        assert [grant.identity_key for grant in grants] == ["a@example.com"]

    def test_create_sends_notification_when_enabled(self):
        api = MagicMock()
        api.insert_acl.return_value = {"id": "user:a@example.com"}
        grant = AclGrant(identity_key="a@example.com")

        ref = AclAdapter(api, "cal", send_notifications=True).create(grant)

        assert ref == "user:a@example.com"
        api.insert_acl.assert_called_once_with("cal", grant.to_api_format(), True)

    def test_create_without_notification_by_default(self):
        api = MagicMock()
        api.insert_acl.return_value = {"id": "user:a@example.com"}

        AclAdapter(api, "cal").create(AclGrant(identity_key="a@example.com"))

        assert api.insert_acl.call_args[0][2] is False

    def test_update_never_notifies(self):
        """Test that updates patch the role only."""
        api = MagicMock()
        grant = AclGrant(identity_key="a@example.com", role="writer")

        AclAdapter(api, "cal", send_notifications=True).update("user:a@example.com", grant)

        api.patch_acl.assert_called_once_with(
            "cal", "user:a@example.com", {"role": "writer"}
        )
        api.insert_acl.assert_not_called()


class TestPeopleAPI:
    """Tests for the People API wrapper."""

    @pytest.fixture
    def api(self, token_provider):
        api = PeopleAPI(token_provider)
        api.client._local.service = MagicMock()
        return api

    @pytest.fixture
    def service(self, api):
        return api.client._local.service

    def test_find_existing_contact_group(self, api, service):
        """Test that an existing group is reused."""
        service.contactGroups.return_value.list.return_value = make_request(
            {"contactGroups": [{"resourceName": "contactGroups/abc", "name": "SCMA"}]}
        )

        assert api.find_or_create_contact_group("SCMA") == "contactGroups/abc"
        service.contactGroups.return_value.create.assert_not_called()

    def test_create_missing_contact_group(self, api, service):
        """Test that a missing group is created."""
        service.contactGroups.return_value.list.return_value = make_request(
            {"contactGroups": [{"resourceName": "contactGroups/x", "name": "Other"}]}
        )
        service.contactGroups.return_value.create.return_value = make_request(
            {"resourceName": "contactGroups/new", "name": "SCMA"}
        )

        assert api.find_or_create_contact_group("SCMA") == "contactGroups/new"

    def test_group_members_single_request(self, api, service):
        """Test that members are listed with one contactGroups.get."""
        service.contactGroups.return_value.get.return_value = make_request(
            {"memberResourceNames": ["people/1", "people/2"], "memberCount": 2}
        )

        names = api.get_group_member_resource_names("contactGroups/abc")

        assert names == ["people/1", "people/2"]
        kwargs = service.contactGroups.return_value.get.call_args[1]
        assert kwargs["maxMembers"] == CONTACT_GROUP_MAX_MEMBERS

    def test_batch_get_in_chunks(self, api, service):
        """Test that people are fetched in chunks."""
        names = [f"people/{i}" for i in range(BATCH_GET_MAX_CONTACTS + 1)]
        service.people.return_value.getBatchGet.side_effect = [
            make_request({"responses": [{"person": {"resourceName": "people/0"}}]}),
            make_request({"responses": [{"person": {"resourceName": "people/50"}}, {}]}),
        ]

        people = api.batch_get_people(names)

        assert [p["resourceName"] for p in people] == ["people/0", "people/50"]
        calls = service.people.return_value.getBatchGet.call_args_list
        assert len(calls[0][1]["resourceNames"]) == BATCH_GET_MAX_CONTACTS
        assert calls[1][1]["resourceNames"] == [f"people/{BATCH_GET_MAX_CONTACTS}"]

    def test_update_contact_fields(self, api, service):
        """Test that updates name the fields they overwrite."""
        service.people.return_value.updateContact.return_value = make_request({})

        api.update_contact("people/1", {"etag": "e"})

        kwargs = service.people.return_value.updateContact.call_args[1]
        assert kwargs["resourceName"] == "people/1"
        assert kwargs["updatePersonFields"] == UPDATE_PERSON_FIELDS


class TestMembersAdapter:
    """Tests for the contacts adapter."""

    PERSON = {
        "resourceName": "people/1",
        "etag": "etag-1",
        "names": [{"unstructuredName": "J Doe"}],
        "emailAddresses": [
            {"value": "personal@example.com", "type": "home"},
            {"value": "jdoe@example.com", "type": "SCMA"},
        ],
        "phoneNumbers": [{"value": "555-0000", "type": "mobile"}],
    }

    def test_list_converts_people(self):
        api = MagicMock()
        api.get_group_member_resource_names.return_value = ["people/1", "people/2"]
        api.batch_get_people.return_value = [
            self.PERSON,
            {"resourceName": "people/2", "names": [{"unstructuredName": "No Email"}]},
        ]

        members = MembersAdapter(api, "contactGroups/abc").list()

        assert [m.identity_key for m in members] == ["jdoe@example.com"]
        assert members[0].remote_ref == "people/1"

    def test_list_empty_group(self):
        api = MagicMock()
        api.get_group_member_resource_names.return_value = []

        assert MembersAdapter(api, "contactGroups/abc").list() == []
        api.batch_get_people.assert_not_called()

    def test_create_adds_to_group(self):
        api = MagicMock()
        api.create_contact.return_value = {"resourceName": "people/9"}
        member = Member(identity_key="new@example.com", display_name="New Member")

        ref = MembersAdapter(api, "contactGroups/abc").create(member)

        assert ref == "people/9"
        body = api.create_contact.call_args[0][0]
        assert body["memberships"] == [
            {"contactGroupMembership": {"contactGroupResourceName": "contactGroups/abc"}}
        ]

    def test_update_merges_into_listed_contact(self):
        """Test that updates keep the fields of the contact they did not set."""
        api = MagicMock()
        api.get_group_member_resource_names.return_value = ["people/1"]
        api.batch_get_people.return_value = [self.PERSON]
        adapter = MembersAdapter(api, "contactGroups/abc")
        adapter.list()

        member = Member(
            identity_key="jdoe@example.com",
            display_name="Jane Doe",
            attributes={"phone": "555-1234"},
        )
        adapter.update("people/1", member)

        api.get_contact.assert_not_called()
        resource_name, body = api.update_contact.call_args[0]
        assert resource_name == "people/1"
        assert body["etag"] == "etag-1"
        assert body["names"] == [{"unstructuredName": "Jane Doe"}]
        phones = {p["type"]: p["value"] for p in body["phoneNumbers"]}
        assert phones == {"mobile": "555-0000", "SCMA": "555-1234"}

    def test_update_fetches_unlisted_contact(self):
        api = MagicMock()
        api.get_contact.return_value = dict(self.PERSON)
        member = Member(identity_key="jdoe@example.com", display_name="Jane Doe")

        MembersAdapter(api, "contactGroups/abc").update("people/1", member)

        api.get_contact.assert_called_once_with("people/1")
        api.update_contact.assert_called_once()
