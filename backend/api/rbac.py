from __future__ import annotations

import logging
from typing import Iterable, Tuple

from api.authentication import Principal

logger = logging.getLogger(__name__)

PERM_PR_VIEW = "requisitions.pr.view"
PERM_PR_CREATE = "requisitions.pr.create"
PERM_PR_APPROVE_HOD = "requisitions.pr.approve_hod"
PERM_PR_APPROVE_FINANCE = "requisitions.pr.approve_finance"
PERM_PR_SPLIT = "requisitions.pr.split"

ROLE_EMPLOYEE = "Employee"
ROLE_HOD = "HOD"
ROLE_FINANCE = "Finance"
ROLE_ADMIN = "Admin"
ROLE_SUPERUSER = "SuperUser"

# Highest privilege first; the first match is the user's effective role.
ROLE_PRECEDENCE = (ROLE_SUPERUSER, ROLE_ADMIN, ROLE_FINANCE, ROLE_HOD, ROLE_EMPLOYEE)

_ROLE_ALIASES = {
    "EMPLOYEE": ROLE_EMPLOYEE,
    "HOD": ROLE_HOD,
    "HEAD_OF_DEPARTMENT": ROLE_HOD,
    "FINANCE": ROLE_FINANCE,
    "ADMIN": ROLE_ADMIN,
    "SUPERUSER": ROLE_SUPERUSER,
    "SUPER_USER": ROLE_SUPERUSER,
}

_ROLE_PERMISSION_MAP = {
    ROLE_EMPLOYEE: {
        PERM_PR_VIEW,
        PERM_PR_CREATE,
    },
    ROLE_HOD: {
        PERM_PR_VIEW,
        PERM_PR_CREATE,
        PERM_PR_APPROVE_HOD,
        PERM_PR_SPLIT,
    },
    ROLE_FINANCE: {
        PERM_PR_VIEW,
        PERM_PR_CREATE,
        PERM_PR_APPROVE_FINANCE,
        PERM_PR_SPLIT,
    },
    ROLE_ADMIN: {
        PERM_PR_VIEW,
        PERM_PR_CREATE,
        PERM_PR_APPROVE_HOD,
        PERM_PR_APPROVE_FINANCE,
        PERM_PR_SPLIT,
    },
    ROLE_SUPERUSER: {
        PERM_PR_VIEW,
        PERM_PR_CREATE,
        PERM_PR_APPROVE_HOD,
        PERM_PR_APPROVE_FINANCE,
        PERM_PR_SPLIT,
    },
}


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def canonical_role(role: object) -> str | None:
    key = str(role or "").strip().upper().replace("-", "_").replace(" ", "_")
    return _ROLE_ALIASES.get(key)


def primary_role(roles: Iterable[str]) -> str | None:
    """The most privileged recognised role, or None when no role is known."""
    known = {canonical_role(role) for role in roles}
    for role in ROLE_PRECEDENCE:
        if role in known:
            return role
    return None


def resolve_roles_and_permissions(
    request, principal: Principal
) -> Tuple[list[str], list[str]]:
    if hasattr(request, "_rbac_cache"):
        cached = request._rbac_cache
        return cached["roles"], cached["permissions"]

    roles: list[str] = list(principal.roles or [])
    permissions: list[str] = list(getattr(principal, "permissions", []) or [])

    if not permissions:
        permissions = _dedupe_preserve_order(list(_permissions_for_roles(roles)))
    unknown = [role for role in roles if canonical_role(role) is None]
    if unknown:
        logger.debug("Ignoring unrecognised roles: %s", ", ".join(unknown))

    request._rbac_cache = {"roles": roles, "permissions": permissions}
    return roles, permissions


def _permissions_for_roles(roles: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for role in roles:
        permissions |= _ROLE_PERMISSION_MAP.get(canonical_role(role) or "", set())
    return permissions
