"""Role-based authorization for certificate and document operations.

This module provides:
- Permission definitions for platform operations
- Role classes with permission mappings
- A principal representation and permission checks

Authentication happens upstream (HTTP gateway); callers hand an already
authenticated ``Principal`` to the services that need a capability check.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Capabilities checked by the services.

    Permission names follow the pattern: ACTION_RESOURCE. Issuance, submission
    and status reads are gated by the gateway, not here.
    """

    REVOKE_CERTIFICATE = "revoke_certificate"


class RoleClass(str, Enum):
    """Role classes with a predefined set of permissions."""

    ADMIN = "admin"
    SIGNER = "signer"


ROLE_PERMISSIONS: dict[RoleClass, frozenset[Permission]] = {
    RoleClass.ADMIN: frozenset([Permission.REVOKE_CERTIFICATE]),
    RoleClass.SIGNER: frozenset(),
}


@dataclass
class Principal:
    """An authenticated actor (user or service client)."""

    principal_id: UUID
    principal_type: str  # "user", "admin_user", "api_client"

    roles: frozenset[str] = field(default_factory=frozenset)

    # Extra permissions granted outside role classes
    explicit_permissions: frozenset[str] = field(default_factory=frozenset)

    is_active: bool = True

    def get_role_classes(self) -> frozenset[RoleClass]:
        """Convert role names to RoleClass enums, ignoring custom roles."""
        result = set()
        for role_name in self.roles:
            with contextlib.suppress(ValueError):
                result.add(RoleClass(role_name))
        return frozenset(result)


# ---------------------------------------------------------------------------
# Authorization errors
# ---------------------------------------------------------------------------


class AuthorizationError(Exception):
    """Base exception for authorization failures."""

    def __init__(self, message: str, permission: Permission | None = None) -> None:
        self.permission = permission
        super().__init__(message)


class PermissionDeniedError(AuthorizationError):
    """Raised when a principal lacks required permission."""

    pass


class InactiveAccountError(AuthorizationError):
    """Raised when the principal's account is not active."""

    pass


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def get_all_permissions(principal: Principal) -> frozenset[Permission]:
    """Combine role class permissions with explicit grants."""
    if not principal.is_active:
        return frozenset()

    permissions: set[Permission] = set()
    for role_class in principal.get_role_classes():
        permissions.update(ROLE_PERMISSIONS.get(role_class, frozenset()))

    for perm_str in principal.explicit_permissions:
        try:
            permissions.add(Permission(perm_str))
        except ValueError:
            logger.warning("Unknown permission string: %s", perm_str)

    return frozenset(permissions)


def has_permission(principal: Principal, permission: Permission) -> bool:
    return permission in get_all_permissions(principal)


def require_permission(principal: Principal, permission: Permission) -> None:
    """Require a permission or raise an error.

    Args:
        principal: The authenticated principal.
        permission: The required permission.

    Raises:
        InactiveAccountError: If the account is not active.
        PermissionDeniedError: If the permission is not granted.
    """
    if not principal.is_active:
        raise InactiveAccountError("Account is not active", permission=permission)

    if not has_permission(principal, permission):
        logger.warning(
            "Permission denied: principal=%s, permission=%s",
            principal.principal_id,
            permission.value,
        )
        raise PermissionDeniedError(
            f"Permission denied: {permission.value}",
            permission=permission,
        )
