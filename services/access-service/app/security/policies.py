"""Authorization checks layered after the authentication gate.

Each check either returns normally or raises ``ForbiddenError``; none of them
has side effects, so they can be chained in any order and stop at the first
failure.
"""

from __future__ import annotations

from typing import Iterable

from ..domain.account import ADMIN_ROLES, AuthenticatedPrincipal, Role
from ..domain.errors import ForbiddenError


def require_role(principal: AuthenticatedPrincipal, allowed: Iterable[Role]) -> None:
    """Fail unless the principal's role is one of ``allowed``."""
    if principal.role not in frozenset(allowed):
        raise ForbiddenError("insufficient permissions")


def require_admin(principal: AuthenticatedPrincipal) -> None:
    if principal.role not in ADMIN_ROLES:
        raise ForbiddenError("admin access required")


def first_supplied(*candidates: object) -> str | None:
    """Return the first non-empty candidate as a string (route, query, body order)."""
    for candidate in candidates:
        if candidate is None:
            continue
        value = str(candidate).strip()
        if value:
            return value
    return None


def resolve_tenant_scope(
    principal: AuthenticatedPrincipal,
    route_tenant: object = None,
    query_tenant: object = None,
    body_tenant: object = None,
) -> str | None:
    """Return the tenant id the request is allowed to act on.

    A super admin passes for any target, and the result is whatever target was
    supplied (possibly ``None`` for "all tenants"). Everyone else is pinned to
    their own tenant.
    """
    target = first_supplied(route_tenant, query_tenant, body_tenant)
    if principal.role is Role.super_admin:
        return target
    if principal.role not in (Role.company_admin, Role.user):
        raise ForbiddenError("unknown role")
    if target is None:
        if principal.tenant_id is None:
            raise ForbiddenError("no tenant associated with account")
        return principal.tenant_id
    if target != principal.tenant_id:
        raise ForbiddenError("access denied to this tenant")
    return target


def can_manage_tenant(principal: AuthenticatedPrincipal, tenant_id: str | None) -> bool:
    """Admin-tier check bound to a concrete tenant, used for row-level decisions."""
    if principal.role is Role.super_admin:
        return True
    return principal.role is Role.company_admin and tenant_id is not None and principal.tenant_id == tenant_id
