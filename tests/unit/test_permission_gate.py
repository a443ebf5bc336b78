"""Tests for notify_router/permissions.py

Every admin operation asks a PermissionGate first. Key functionality:
- resource:action matching with wildcards
- Static grants per subject
- Anonymous callers are always denied
"""

from notify_router.permissions import (
    AllowAllGate,
    GrantPermissionGate,
    permission_matches,
)


class TestPermissionMatches:
    """Tests for permission_matches function."""

    def test_exact_match(self):
        assert permission_matches("notifications:read", "notifications:read") is True

    def test_exact_mismatch(self):
        assert permission_matches("notifications:read", "notifications:manage") is False

    def test_action_wildcard(self):
        assert permission_matches("notifications:*", "notifications:read") is True
        assert permission_matches("notifications:*", "notifications:manage") is True

    def test_superuser_wildcard(self):
        assert permission_matches("*:*", "notifications:manage") is True

    def test_resource_wildcard_does_not_leak_actions(self):
        assert permission_matches("*:read", "notifications:manage") is False

    def test_malformed_permission(self):
        assert permission_matches("notifications", "notifications:read") is False


class TestGrantPermissionGate:
    def test_granted_subject(self):
        gate = GrantPermissionGate({"alice": ["notifications:*"]})

        assert gate.authorized("alice", "notifications", "manage") is True

    def test_read_only_subject_cannot_manage(self):
        gate = GrantPermissionGate({"bob": ["notifications:read"]})

        assert gate.authorized("bob", "notifications", "read") is True
        assert gate.authorized("bob", "notifications", "manage") is False

    def test_unknown_and_anonymous_subjects(self):
        gate = GrantPermissionGate({"alice": ["*:*"]})

        assert gate.authorized("mallory", "notifications", "read") is False
        assert gate.authorized(None, "notifications", "read") is False

    def test_grant_adds_permission(self):
        gate = GrantPermissionGate()
        gate.grant("carol", "notifications:manage")

        assert gate.authorized("carol", "notifications", "manage") is True


class TestAllowAllGate:
    def test_allows_everything(self):
        assert AllowAllGate().authorized(None, "notifications", "manage") is True
