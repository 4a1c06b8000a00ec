"""
Member data model for Google Contacts synchronization.

Provides an immutable Member representation with methods for:
- Building members from source records with email validation
- Converting to/from Google People API format
- Merging member data into an existing contact (read-modify-write)
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from scma_gsync.sync.validation import ValidationError, normalize_email

# Type label put on the emails, phone numbers and addresses written by the sync
DEFAULT_FIELD_LABEL = "SCMA"

# Attributes stored in dedicated People fields rather than user-defined fields
PHONE_ATTRIBUTE = "phone"
ADDRESS_ATTRIBUTE = "address"

# Record keys which are not member attributes
_RESERVED_KEYS = frozenset({"email", "display_name", "name", "attributes"})


def normalize_attribute_key(key: str) -> str:
    """Normalize an attribute name to lower snake case ("Member Status" -> "member_status")."""
    return re.sub(r"[^a-z0-9]+", "_", str(key).lower()).strip("_")


def user_defined_key(attribute: str, label: str = DEFAULT_FIELD_LABEL) -> str:
    """People user-defined key for an attribute ("member_status" -> "SCMA Member Status")."""
    return f"{label} {attribute.replace('_', ' ').title()}"


def _typed_value(entries: list[dict[str, Any]], label: str, value_key: str) -> str:
    for entry in entries:
        if (entry.get("type") or "").lower() == label.lower():
            return str(entry.get(value_key) or "")
    return ""


def _replace_typed(
    entries: list[dict[str, Any]] | None, new_entry: dict[str, Any], label: str
) -> list[dict[str, Any]]:
    """Update the entry carrying our type label, or append one."""
    result = [
        entry
        for entry in (entries or [])
        if (entry.get("type") or "").lower() != label.lower()
    ]
    result.append(new_entry)
    return result


@dataclass(frozen=True)
class Member:
    """
    Normalized club member.

    Attributes:
        identity_key: Canonical email address (after alias resolution)
        display_name: Full name of the member
        attributes: Tracked attributes (phone, address, member_status, ...)
        remote_ref: People resource name, only set on remote members

    Usage:
        member = Member.from_record({"email": "jdoe@example.com",
                                     "display_name": "J Doe", "phone": "555-1234"})
        body = member.to_api_format(group_resource_name)
        remote = Member.from_api_response(person)
        member.same_content(remote)
    """

    identity_key: str
    display_name: str
    attributes: dict[str, str] = field(default_factory=dict, hash=False)
    remote_ref: Optional[str] = field(default=None, compare=False)

    @property
    def email(self) -> str:
        return self.identity_key

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Member:
        """
        Create a Member from a source record.

        Attributes may be given as a nested ``attributes`` mapping or as
        additional top-level keys. Empty values are dropped.

        Raises:
            ValidationError: If the email is missing or malformed
        """
        if "email" not in record:
            raise ValidationError(f"Member without an email: {record!r}")
        email = normalize_email(record["email"])

        display_name = str(record.get("display_name") or record.get("name") or "")
        display_name = " ".join(display_name.split())

        raw_attributes: dict[str, Any] = {
            key: value for key, value in record.items() if key not in _RESERVED_KEYS
        }
        nested = record.get("attributes") or {}
        if not isinstance(nested, dict):
            raise ValidationError(f"Member {email}: attributes must be a mapping")
        raw_attributes.update(nested)

        attributes = {
            normalize_attribute_key(key): str(value).strip()
            for key, value in raw_attributes.items()
            if value is not None and str(value).strip()
        }

        return cls(identity_key=email, display_name=display_name, attributes=attributes)

    @classmethod
    def from_api_response(
        cls, person: dict[str, Any], label: str = DEFAULT_FIELD_LABEL
    ) -> Member | None:
        """
        Create a Member from a Google People API person resource.

        The identity key is the email carrying the sync type label, or the
        first email otherwise. People without any email cannot be matched
        and yield None.

        Example API response structure::

            {
                'resourceName': 'people/c12345',
                'etag': 'abc123',
                'names': [{'displayName': 'John Doe'}],
                'emailAddresses': [{'value': 'john@example.com', 'type': 'SCMA'}],
                'phoneNumbers': [{'value': '555-1234', 'type': 'SCMA'}],
                'addresses': [{'formattedValue': '1 Main St', 'type': 'SCMA'}],
                'userDefined': [{'key': 'SCMA Member Status', 'value': 'Active'}]
            }
        """
        emails = [e for e in person.get("emailAddresses", []) if e.get("value")]
        if not emails:
            return None

        email = _typed_value(emails, label, "value") or emails[0]["value"]

        names = person.get("names", [])
        primary_name = names[0] if names else {}
        display_name = primary_name.get("displayName") or primary_name.get(
            "unstructuredName", ""
        )

        attributes: dict[str, str] = {}
        phone = _typed_value(person.get("phoneNumbers", []), label, "value")
        if phone:
            attributes[PHONE_ATTRIBUTE] = phone
        address = _typed_value(person.get("addresses", []), label, "formattedValue")
        if address:
            attributes[ADDRESS_ATTRIBUTE] = address

        prefix = f"{label} ".lower()
        for entry in person.get("userDefined", []):
            key = entry.get("key") or ""
            if key.lower().startswith(prefix) and entry.get("value"):
                attributes[normalize_attribute_key(key[len(prefix) :])] = entry["value"]

        return cls(
            identity_key=email.strip().lower(),
            display_name=display_name,
            attributes=attributes,
            remote_ref=person.get("resourceName"),
        )

    def _user_defined(self, label: str) -> list[dict[str, str]]:
        return [
            {"key": user_defined_key(key, label), "value": value}
            for key, value in sorted(self.attributes.items())
            if key not in (PHONE_ATTRIBUTE, ADDRESS_ATTRIBUTE)
        ]

    def to_api_format(
        self,
        group_resource_name: str | None = None,
        label: str = DEFAULT_FIELD_LABEL,
    ) -> dict[str, Any]:
        """
        Convert the Member to Google People API format for contact creation.

        Args:
            group_resource_name: Contact group the new contact should join
            label: Type label for the emails, phone numbers and addresses
        """
        person: dict[str, Any] = {
            "names": [{"unstructuredName": self.display_name}],
            "emailAddresses": [{"type": label, "value": self.identity_key}],
        }

        phone = self.attributes.get(PHONE_ATTRIBUTE)
        if phone:
            person["phoneNumbers"] = [{"type": label, "value": phone}]

        address = self.attributes.get(ADDRESS_ATTRIBUTE)
        if address:
            person["addresses"] = [{"type": label, "formattedValue": address}]

        user_defined = self._user_defined(label)
        if user_defined:
            person["userDefined"] = user_defined

        if group_resource_name:
            person["memberships"] = [
                {
                    "contactGroupMembership": {
                        "contactGroupResourceName": group_resource_name
                    }
                }
            ]

        return person

    def merge_into(
        self, person: dict[str, Any], label: str = DEFAULT_FIELD_LABEL
    ) -> dict[str, Any]:
        """
        Merge this member into an existing People person resource.

        People updates overwrite whole fields, so the existing contact is
        read first and only the entries carrying our type label (and our
        user-defined keys) are replaced. Everything else is preserved.

        Returns:
            A new person dict; the input is not modified
        """
        merged = copy.deepcopy(person)
        merged["names"] = [{"unstructuredName": self.display_name}]

        phone = self.attributes.get(PHONE_ATTRIBUTE)
        if phone:
            merged["phoneNumbers"] = _replace_typed(
                merged.get("phoneNumbers"), {"type": label, "value": phone}, label
            )

        address = self.attributes.get(ADDRESS_ATTRIBUTE)
        if address:
            merged["addresses"] = _replace_typed(
                merged.get("addresses"),
                {"type": label, "formattedValue": address},
                label,
            )

        ours = {entry["key"]: entry for entry in self._user_defined(label)}
        kept = [
            entry
            for entry in merged.get("userDefined", [])
            if entry.get("key") not in ours
        ]
        merged["userDefined"] = kept + list(ours.values())

        return merged

    def to_record(self) -> dict[str, Any]:
        """Convert the Member back to a structured source record."""
        record: dict[str, Any] = {
            "email": self.identity_key,
            "display_name": self.display_name,
        }
        record.update(sorted(self.attributes.items()))
        return record

    def same_content(self, remote: Member) -> bool:
        """
        Check whether a remote member agrees with this source member.

        Only tracked attributes (those present on the source member) are
        compared; extra attributes on the remote contact are ignored.
        """
        if self.display_name != remote.display_name:
            return False
        return all(
            remote.attributes.get(key, "") == value
            for key, value in self.attributes.items()
        )

    def with_identity(self, identity_key: str) -> Member:
        """Return a copy of this member with another identity key."""
        return replace(self, identity_key=identity_key)

    def name_email(self) -> str:
        """Display form used in logs: ``Name <email>``."""
        if self.display_name:
            return f"{self.display_name} <{self.identity_key}>"
        return self.identity_key

    def __str__(self) -> str:
        return self.name_email()
