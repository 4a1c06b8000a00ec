"""
Google Calendar API wrapper for event and sharing synchronization.

Provides a high-level interface to the Google Calendar API for:
- Finding the target calendar by name
- Listing, inserting and patching events
- Listing, inserting and patching ACL rules (calendar sharing)

and the two remote adapters built on it, EventsAdapter and AclAdapter.
"""

from __future__ import annotations

import logging
from typing import Any

from scma_gsync.api.base import (
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    GoogleService,
    RemoteAdapter,
    RemoteNotFoundError,
)
from scma_gsync.auth.google_auth import TokenProvider
from scma_gsync.sync.acl import AclGrant
from scma_gsync.sync.event import Event

# Largest page the API returns; further pages are not requested
MAX_EVENTS_PER_PAGE = 2500
MAX_ACL_RULES_PER_PAGE = 250
MAX_CALENDARS_PER_PAGE = 250

logger = logging.getLogger(__name__)


class CalendarAPI:
    """
    Google Calendar API wrapper.

    Attributes:
        client: Thread-aware Google API client

    Usage:
        api = CalendarAPI(token_provider)
        calendar_id = api.find_calendar("SCMA")
        items = api.list_events(calendar_id)
        created = api.insert_event(calendar_id, body)
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ):
        self.client = GoogleService(
            "calendar",
            "v3",
            token_provider,
            max_retries=max_retries,
            initial_retry_delay=initial_retry_delay,
            max_retry_delay=max_retry_delay,
        )

    def find_calendar(self, name: str) -> str:
        """
        Find a calendar id by calendar name.

        The calendar list is searched for a calendar whose summary or id
        matches. A calendar shared with a service account does not always
        appear in its calendar list, so a name that looks like a calendar
        id is used as-is when no entry matches.

        Raises:
            RemoteNotFoundError: If no calendar matches
        """
        logger.info(f"Finding calendar {name}")

        response = self.client.execute(
            lambda s: s.calendarList().list(maxResults=MAX_CALENDARS_PER_PAGE),
            "list_calendars",
        )

        for entry in response.get("items", []):
            if name in (entry.get("summary"), entry.get("id")):
                calendar_id = str(entry["id"])
                logger.info(f"Found calendar {name}: {calendar_id}")
                return calendar_id

        if "@" in name:
            logger.info(f"Calendar {name} not in calendar list, using it as an id")
            return name

        raise RemoteNotFoundError(f"Calendar not found: {name}")

    def list_events(self, calendar_id: str) -> list[dict[str, Any]]:
        """
        List the events of a calendar (first page only).

        Raises:
            RemoteCallError: If listing fails
        """
        logger.debug(f"Listing events of {calendar_id}")

        response = self.client.execute(
            lambda s: s.events().list(
                calendarId=calendar_id,
                maxResults=MAX_EVENTS_PER_PAGE,
                showDeleted=False,
            ),
            "list_events",
        )

        if response.get("nextPageToken"):
            logger.warning(
                f"Calendar {calendar_id} has more than one page of events; "
                "only the first page is compared"
            )

        items = [
            item
            for item in response.get("items", [])
            if item.get("status") != "cancelled"
        ]
        logger.info(f"Listed {len(items)} events")
        return items

    def insert_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Insert an event and return the created event resource."""
        response = self.client.execute(
            lambda s: s.events().insert(calendarId=calendar_id, body=body),
            "insert_event",
        )
        return dict(response)

    def patch_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Patch an existing event and return the updated event resource."""
        response = self.client.execute(
            lambda s: s.events().patch(
                calendarId=calendar_id, eventId=event_id, body=body
            ),
            f"patch_event({event_id})",
        )
        return dict(response)

    def list_acl(self, calendar_id: str) -> list[dict[str, Any]]:
        """
        List the ACL rules of a calendar (first page only).

        Raises:
            RemoteCallError: If listing fails
        """
        logger.debug(f"Listing ACL of {calendar_id}")

        response = self.client.execute(
            lambda s: s.acl().list(
                calendarId=calendar_id, maxResults=MAX_ACL_RULES_PER_PAGE
            ),
            "list_acl",
        )

        if response.get("nextPageToken"):
            logger.warning(
                f"Calendar {calendar_id} has more than one page of ACL rules; "
                "only the first page is compared"
            )

        items = list(response.get("items", []))
        logger.info(f"Listed {len(items)} ACL rules")
        return items

    def insert_acl(
        self, calendar_id: str, body: dict[str, Any], send_notifications: bool
    ) -> dict[str, Any]:
        """
        Insert an ACL rule.

        Args:
            send_notifications: Whether Google emails the grantee about the
                newly shared calendar
        """
        response = self.client.execute(
            lambda s: s.acl().insert(
                calendarId=calendar_id,
                body=body,
                sendNotifications=send_notifications,
            ),
            "insert_acl",
        )
        return dict(response)

    def patch_acl(
        self, calendar_id: str, rule_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Patch an existing ACL rule."""
        response = self.client.execute(
            lambda s: s.acl().patch(calendarId=calendar_id, ruleId=rule_id, body=body),
            f"patch_acl({rule_id})",
        )
        return dict(response)


class EventsAdapter(RemoteAdapter):
    """
    Remote adapter for the events of one calendar.

    summary_prefix is written before every event title and stripped again
    when listing, so titles compare equal to the source.
    """

    kind = "event"

    def __init__(self, api: CalendarAPI, calendar_id: str, summary_prefix: str = ""):
        self.api = api
        self.calendar_id = calendar_id
        self.summary_prefix = summary_prefix

    def list(self) -> list[Event]:
        events = []
        for item in self.api.list_events(self.calendar_id):
            if not item.get("start"):
                continue
            events.append(Event.from_api_response(item, self.summary_prefix))
        return events

    def create(self, entity: Event) -> str:
        response = self.api.insert_event(
            self.calendar_id, entity.to_api_format(self.summary_prefix)
        )
        logger.info(f"Inserted event {entity}: {response.get('htmlLink', '')}")
        return str(response["id"])

    def update(self, remote_ref: str, entity: Event) -> None:
        response = self.api.patch_event(
            self.calendar_id, remote_ref, entity.to_api_format(self.summary_prefix)
        )
        logger.info(f"Updated event {entity}: {response.get('htmlLink', '')}")


class AclAdapter(RemoteAdapter):
    """
    Remote adapter for the sharing rules of one calendar.

    Google only notifies a grantee when a rule is first inserted, so
    send_notifications applies to create() alone.
    """

    kind = "acl"

    def __init__(
        self, api: CalendarAPI, calendar_id: str, send_notifications: bool = False
    ):
        self.api = api
        self.calendar_id = calendar_id
        self.send_notifications = send_notifications

    def list(self) -> list[AclGrant]:
        grants = []
        for rule in self.api.list_acl(self.calendar_id):
            grant = AclGrant.from_api_response(rule)
            if grant is not None:
                grants.append(grant)
        return grants

    def create(self, entity: AclGrant) -> str:
        response = self.api.insert_acl(
            self.calendar_id, entity.to_api_format(), self.send_notifications
        )
        logger.info(
            f"Shared calendar with {entity} (notify={self.send_notifications})"
        )
        return str(response.get("id", f"user:{entity.identity_key}"))

    def update(self, remote_ref: str, entity: AclGrant) -> None:
        self.api.patch_acl(self.calendar_id, remote_ref, {"role": entity.role})
        logger.info(f"Updated calendar access for {entity}")
