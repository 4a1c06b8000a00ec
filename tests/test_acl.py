"""
Unit tests for the AclGrant model.

Tests conversion from calendar ACL rules and the role comparison used
to protect existing access.
"""

from scma_gsync.sync.acl import DEFAULT_ROLE, ROLE_RANK, AclGrant


class TestFromApiResponse:
    """Tests for reading ACL rules."""

    def test_user_rule(self):
        grant = AclGrant.from_api_response(
            {
                "id": "user:JDoe@example.com",
                "role": "reader",
                "scope": {"type": "user", "value": "JDoe@example.com"},
            }
        )

        assert grant.identity_key == "jdoe@example.com"
        assert grant.role == "reader"
        assert grant.remote_ref == "user:JDoe@example.com"

    def test_non_user_rules_ignored(self):
        assert AclGrant.from_api_response({"id": "default", "scope": {"type": "default"}}) is None
        assert (
            AclGrant.from_api_response(
                {"id": "group:g", "scope": {"type": "group", "value": "g@example.com"}}
            )
            is None
        )


class TestRoleComparison:
    """Tests for role protection."""

    def test_role_order(self):
        assert ROLE_RANK["reader"] < ROLE_RANK["writer"] < ROLE_RANK["owner"]

    def test_same_role_is_satisfied(self):
        assert AclGrant("a@example.com").same_content(AclGrant("a@example.com", "reader"))

    def test_higher_remote_role_is_satisfied(self):
        """Test that owners are never demoted to the default role."""
        assert AclGrant("a@example.com").same_content(AclGrant("a@example.com", "owner"))
        assert AclGrant("a@example.com").same_content(AclGrant("a@example.com", "writer"))

    def test_lower_remote_role_needs_update(self):
        assert not AclGrant("a@example.com").same_content(
            AclGrant("a@example.com", "freeBusyReader")
        )

    def test_default_role(self):
        assert AclGrant("a@example.com").role == DEFAULT_ROLE == "reader"


class TestToApiFormat:
    """Tests for ACL rule bodies."""

    def test_rule_body(self):
        assert AclGrant("a@example.com", "writer").to_api_format() == {
            "role": "writer",
            "scope": {"type": "user", "value": "a@example.com"},
        }
