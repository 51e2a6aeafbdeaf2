from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence, TypeVar

from tenantgate.core.errors import PermissionDeniedError
from tenantgate.domain.models import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    TeamMember,
    TenantContext,
    compare_roles,
)


@dataclass(frozen=True)
class AccessPolicy:
    # Declares what an operation needs; resource/action are for messages and audits.
    resource: str
    action: str
    required_permissions: tuple[Permission, ...]


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    reason: str
    missing_permissions: list[Permission] = field(default_factory=list)


class _PermissionGated(Protocol):
    required_permission: Permission | None


GatedT = TypeVar("GatedT", bound=_PermissionGated)


def get_user_permissions(
    user: TeamMember,
    custom_permissions: Sequence[Permission] | None = None,
) -> list[Permission]:
    # A non-empty custom list replaces the role grant entirely.
    if custom_permissions:
        return list(custom_permissions)
    return list(ROLE_PERMISSIONS.get(Role(user.role), ()))


def has_permission(
    user: TeamMember,
    permission: Permission,
    custom_permissions: Sequence[Permission] | None = None,
) -> bool:
    return permission in get_user_permissions(user, custom_permissions)


def has_all_permissions(
    user: TeamMember,
    permissions: Iterable[Permission],
    custom_permissions: Sequence[Permission] | None = None,
) -> bool:
    granted = get_user_permissions(user, custom_permissions)
    return all(permission in granted for permission in permissions)


def has_any_permission(
    user: TeamMember,
    permissions: Iterable[Permission],
    custom_permissions: Sequence[Permission] | None = None,
) -> bool:
    granted = get_user_permissions(user, custom_permissions)
    return any(permission in granted for permission in permissions)


def check_access(context: TenantContext, policy: AccessPolicy) -> AccessDecision:
    # Evaluate against the already-resolved context permissions, never the raw role.
    granted = set(context.permissions)
    missing = [permission for permission in policy.required_permissions if permission not in granted]
    if not missing:
        return AccessDecision(
            granted=True,
            reason=f"User has all required permissions for {policy.resource}:{policy.action}",
        )
    return AccessDecision(
        granted=False,
        reason=f"User lacks required permissions for {policy.resource}:{policy.action}",
        missing_permissions=missing,
    )


def can_perform_action(
    context: TenantContext,
    resource: str,
    action: str,
    required_permissions: Iterable[Permission],
) -> AccessDecision:
    policy = AccessPolicy(resource=resource, action=action, required_permissions=tuple(required_permissions))
    return check_access(context, policy)


def assert_permission(
    user: TeamMember,
    permission: Permission,
    custom_permissions: Sequence[Permission] | None = None,
) -> None:
    if not has_permission(user, permission, custom_permissions):
        raise PermissionDeniedError(
            f"User does not have permission: {permission.value}",
            [permission],
        )


def assert_all_permissions(
    user: TeamMember,
    permissions: Iterable[Permission],
    custom_permissions: Sequence[Permission] | None = None,
) -> None:
    granted = get_user_permissions(user, custom_permissions)
    missing = [permission for permission in permissions if permission not in granted]
    if missing:
        raise PermissionDeniedError("User does not have required permissions", missing)


def is_organization_owner(context: TenantContext) -> bool:
    return context.user.user_id == context.organization.owner_id and context.user.role == Role.OWNER


def is_team_admin(context: TenantContext) -> bool:
    if context.team is None:
        return False
    return context.user.role in (Role.OWNER, Role.ADMIN)


def filter_by_permission(
    user: TeamMember,
    resources: Iterable[GatedT],
    custom_permissions: Sequence[Permission] | None = None,
) -> list[GatedT]:
    # Resources without a required permission are always visible.
    granted = get_user_permissions(user, custom_permissions)
    return [
        resource
        for resource in resources
        if resource.required_permission is None or resource.required_permission in granted
    ]


def can_modify_user(actor: TeamMember, target: TeamMember) -> AccessDecision:
    if actor.role == Role.OWNER:
        return AccessDecision(granted=True, reason="Owner can modify any user")
    if actor.role == Role.ADMIN:
        if target.role in (Role.MEMBER, Role.VIEWER):
            return AccessDecision(granted=True, reason="Admin can modify members and viewers")
        return AccessDecision(granted=False, reason="Admin cannot modify owners or other admins")
    if compare_roles(actor.role, target.role) > 0:
        return AccessDecision(granted=True, reason="User has sufficient role level")
    return AccessDecision(granted=False, reason="Cannot modify user with equal or higher role")
