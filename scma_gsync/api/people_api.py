"""
Google People API wrapper for member synchronization.

Provides a high-level interface to the Google People API for:
- Finding or creating the contact group that holds the club members
- Listing the group members with batch gets
- Creating and updating contacts

and MembersAdapter, the remote adapter built on it.
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
)
from scma_gsync.auth.google_auth import TokenProvider
from scma_gsync.sync.member import DEFAULT_FIELD_LABEL, Member

# Person fields to request from the API
PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
        "addresses",
        "userDefined",
        "memberships",
    ]
)

# Fields to overwrite when updating contacts
UPDATE_PERSON_FIELDS = ",".join(
    [
        "names",
        "phoneNumbers",
        "addresses",
        "userDefined",
    ]
)

GROUP_FIELDS = "name,groupType,memberCount"

# Members returned by a single contactGroups.get; larger groups are truncated
CONTACT_GROUP_MAX_MEMBERS = 999

# Maximum resource names per people.getBatchGet
BATCH_GET_MAX_CONTACTS = 50

# Maximum contact groups returned by a single contactGroups.list
MAX_GROUPS_PER_PAGE = 1000

logger = logging.getLogger(__name__)


class PeopleAPI:
    """
    Google People API wrapper for contact operations.

    Attributes:
        client: Thread-aware Google API client

    Usage:
        api = PeopleAPI(token_provider)
        group = api.find_or_create_contact_group("SCMA")
        names = api.get_group_member_resource_names(group)
        people = api.batch_get_people(names)
        created = api.create_contact(body)
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ):
        self.client = GoogleService(
            "people",
            "v1",
            token_provider,
            max_retries=max_retries,
            initial_retry_delay=initial_retry_delay,
            max_retry_delay=max_retry_delay,
        )

    def find_or_create_contact_group(self, name: str) -> str:
        """
        Return the resource name of the named contact group.

        If the named contact group does not exist, it is created.

        Raises:
            RemoteCallError: If listing or creation fails
        """
        logger.info(f"Finding contact group {name}")

        response = self.client.execute(
            lambda s: s.contactGroups().list(
                groupFields=GROUP_FIELDS, pageSize=MAX_GROUPS_PER_PAGE
            ),
            "list_contact_groups",
        )

        for group in response.get("contactGroups", []):
            if group.get("name") == name:
                resource_name = str(group["resourceName"])
                logger.info(f"Found existing contact group {name}: {resource_name}")
                return resource_name

        logger.info(f"Contact group {name} not found, creating it")
        body = {"contactGroup": {"name": name}, "readGroupFields": GROUP_FIELDS}
        created = self.client.execute(
            lambda s: s.contactGroups().create(body=body),
            f"create_contact_group({name})",
        )
        resource_name = str(created["resourceName"])
        logger.info(f"Created contact group {name}: {resource_name}")
        return resource_name

    def get_group_member_resource_names(self, group_resource_name: str) -> list[str]:
        """
        Return the resource names of the contacts in a group.

        Only the first CONTACT_GROUP_MAX_MEMBERS members are returned.
        """
        response = self.client.execute(
            lambda s: s.contactGroups().get(
                resourceName=group_resource_name,
                maxMembers=CONTACT_GROUP_MAX_MEMBERS,
                groupFields=GROUP_FIELDS,
            ),
            f"get_contact_group({group_resource_name})",
        )

        member_count = response.get("memberCount", 0)
        if member_count > CONTACT_GROUP_MAX_MEMBERS:
            logger.warning(
                f"Contact group {group_resource_name} has {member_count} members; "
                f"only the first {CONTACT_GROUP_MAX_MEMBERS} are compared"
            )

        return list(response.get("memberResourceNames", []))

    def batch_get_people(self, resource_names: list[str]) -> list[dict[str, Any]]:
        """Get person resources in batches of BATCH_GET_MAX_CONTACTS."""
        people: list[dict[str, Any]] = []

        for start in range(0, len(resource_names), BATCH_GET_MAX_CONTACTS):
            chunk = resource_names[start : start + BATCH_GET_MAX_CONTACTS]
            logger.debug(
                f"Getting contacts {start + 1} to {start + len(chunk)} "
                f"of {len(resource_names)}"
            )

            def execute_batch_get(s: Any, names: list[str] = chunk) -> Any:
                return s.people().getBatchGet(
                    resourceNames=names, personFields=PERSON_FIELDS
                )

            response = self.client.execute(execute_batch_get, "batch_get_people")
            for person_response in response.get("responses", []):
                person = person_response.get("person")
                if person:
                    people.append(person)

        return people

    def get_contact(self, resource_name: str) -> dict[str, Any]:
        """Get a single person resource."""
        response = self.client.execute(
            lambda s: s.people().get(
                resourceName=resource_name, personFields=PERSON_FIELDS
            ),
            f"get_contact({resource_name})",
        )
        return dict(response)

    def create_contact(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create a contact and return the created person resource."""
        response = self.client.execute(
            lambda s: s.people().createContact(body=body, personFields=PERSON_FIELDS),
            "create_contact",
        )
        return dict(response)

    def update_contact(self, resource_name: str, body: dict[str, Any]) -> dict[str, Any]:
        """
        Update a contact.

        The body must carry the etag of the contact it was read from.
        """
        response = self.client.execute(
            lambda s: s.people().updateContact(
                resourceName=resource_name,
                updatePersonFields=UPDATE_PERSON_FIELDS,
                personFields=PERSON_FIELDS,
                body=body,
            ),
            f"update_contact({resource_name})",
        )
        return dict(response)


class MembersAdapter(RemoteAdapter):
    """
    Remote adapter for the members of one contact group.

    People updates replace whole fields, so updates merge the member into
    the contact as it was listed (read-modify-write).
    """

    kind = "member"

    def __init__(
        self,
        api: PeopleAPI,
        group_resource_name: str,
        label: str = DEFAULT_FIELD_LABEL,
    ):
        self.api = api
        self.group_resource_name = group_resource_name
        self.label = label
        self._listed: dict[str, dict[str, Any]] = {}

    def list(self) -> list[Member]:
        resource_names = self.api.get_group_member_resource_names(
            self.group_resource_name
        )
        people = self.api.batch_get_people(resource_names) if resource_names else []
        logger.info(f"Listed {len(people)} contacts in {self.group_resource_name}")

        members = []
        for person in people:
            member = Member.from_api_response(person, self.label)
            if member is None:
                logger.debug(
                    f"Ignoring contact without email: {person.get('resourceName')}"
                )
                continue
            self._listed[str(member.remote_ref)] = person
            members.append(member)
        return members

    def create(self, entity: Member) -> str:
        body = entity.to_api_format(self.group_resource_name, self.label)
        response = self.api.create_contact(body)
        logger.info(f"Created contact {entity}")
        return str(response["resourceName"])

    def update(self, remote_ref: str, entity: Member) -> None:
        person = self._listed.get(remote_ref)
        if person is None:
            person = self.api.get_contact(remote_ref)
        body = entity.merge_into(person, self.label)
        self.api.update_contact(remote_ref, body)
        logger.info(f"Updated contact {entity}")
