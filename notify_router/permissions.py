"""
Tool: Permission Gate
Purpose: Authorization check in front of every admin operation

Permission Format:
    resource:action
    Examples: notifications:manage, notifications:read, notifications:*, *:*

Usage:
    from notify_router.permissions import GrantPermissionGate

    gate = GrantPermissionGate({"alice": ["notifications:*"], "bob": ["notifications:read"]})
    gate.authorized("bob", "notifications", "manage")  # False

A denied check aborts the admin operation before any read or write.
"""

import fnmatch
from abc import ABC, abstractmethod

from notify_router.logging_config import get_logger

logger = get_logger(__name__)

RESOURCE_NOTIFICATIONS = "notifications"
ACTION_READ = "read"
ACTION_MANAGE = "manage"


def permission_matches(granted: str, required: str) -> bool:
    """
    Check if a granted permission covers a required one.
    Supports wildcards: notifications:* matches notifications:manage, *:* matches everything.
    """
    if granted == required or granted == "*:*":
        return True

    granted_parts = granted.split(":")
    required_parts = required.split(":")
    if len(granted_parts) != 2 or len(required_parts) != 2:
        return False

    granted_resource, granted_action = granted_parts
    required_resource, required_action = required_parts

    return fnmatch.fnmatch(required_resource, granted_resource) and fnmatch.fnmatch(
        required_action, granted_action
    )


class PermissionGate(ABC):
    """authorized(subject, resource, action[, target_id]) -> allow/deny"""

    @abstractmethod
    def authorized(
        self,
        subject: str | None,
        resource: str,
        action: str,
        target_id: str | None = None,
    ) -> bool: ...


class AllowAllGate(PermissionGate):
    """Trusts every caller; for local operator tooling such as the CLI."""

    def authorized(self, subject, resource, action, target_id=None) -> bool:
        return True


class GrantPermissionGate(PermissionGate):
    """Static grants per subject, matched with resource:action wildcards."""

    def __init__(self, grants: dict[str, list[str]] | None = None):
        self.grants = {subject: list(perms) for subject, perms in (grants or {}).items()}

    def grant(self, subject: str, permission: str) -> None:
        self.grants.setdefault(subject, []).append(permission)

    def authorized(self, subject, resource, action, target_id=None) -> bool:
        if not subject:
            return False
        required = f"{resource}:{action}"
        allowed = any(permission_matches(p, required) for p in self.grants.get(subject, []))
        if not allowed:
            logger.warning(
                "permission_denied",
                subject=subject,
                permission=required,
                target_id=target_id,
            )
        return allowed
