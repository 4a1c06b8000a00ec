"""
Calendar access control data model.

An AclGrant gives one member access to the shared club calendar. Grants
are derived from the member roster and compared with the calendar's ACL.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

# Calendar roles, least to most privileged
ROLE_RANK = {
    "none": 0,
    "freeBusyReader": 1,
    "reader": 2,
    "writer": 3,
    "owner": 4,
}

DEFAULT_ROLE = "reader"


@dataclass(frozen=True)
class AclGrant:
    """
    Calendar access for a single user.

    Attributes:
        identity_key: Email address of the grantee
        role: Calendar role (reader, writer, ...)
        remote_ref: ACL rule id (e.g. "user:jdoe@example.com"), only on remote grants
    """

    identity_key: str
    role: str = DEFAULT_ROLE
    remote_ref: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_api_response(cls, rule: dict[str, Any]) -> AclGrant | None:
        """
        Create an AclGrant from a Google Calendar ACL rule.

        Only rules scoped to a single user are matched against the roster;
        domain, group and default rules yield None.

        Example API response structure::

            {
                'id': 'user:jdoe@example.com',
                'role': 'reader',
                'scope': {'type': 'user', 'value': 'jdoe@example.com'}
            }
        """
        scope = rule.get("scope", {})
        if scope.get("type") != "user" or not scope.get("value"):
            return None

        return cls(
            identity_key=scope["value"].strip().lower(),
            role=rule.get("role", DEFAULT_ROLE),
            remote_ref=rule.get("id"),
        )

    def to_api_format(self) -> dict[str, Any]:
        """Convert the grant to Google Calendar ACL rule format."""
        return {
            "role": self.role,
            "scope": {"type": "user", "value": self.identity_key},
        }

    def same_content(self, remote: AclGrant) -> bool:
        """
        Check whether a remote grant satisfies this grant.

        A remote role at least as privileged as the desired one is accepted,
        so calendar owners and writers are never demoted.
        """
        return ROLE_RANK.get(remote.role, 0) >= ROLE_RANK.get(self.role, 0)

    def __str__(self) -> str:
        return f"{self.identity_key} ({self.role})"
