"""FastAPI dependencies shared by the route modules."""

from __future__ import annotations

import json
import logging
import math
from typing import Callable

from fastapi import Depends, Header, Request

from ..domain.account import AuthenticatedPrincipal, Role
from ..domain.audit import AuditTrail
from ..domain.contracts import RequestOrigin
from ..domain.errors import RateLimitedError
from ..domain.invitations import InvitationService
from ..domain.service import AccountService
from ..domain.tenants import TenantService
from ..security.gate import AuthenticationGate
from ..security.policies import require_admin, require_role, resolve_tenant_scope

logger = logging.getLogger(__name__)


def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


def get_invitation_service(request: Request) -> InvitationService:
    return request.app.state.invitation_service


def get_tenant_service(request: Request) -> TenantService:
    return request.app.state.tenant_service


def get_audit_trail(request: Request) -> AuditTrail:
    return request.app.state.audit_trail


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_origin(request: Request) -> RequestOrigin:
    """Network origin recorded on audit entries."""
    return RequestOrigin(
        ip_address=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_principal(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> AuthenticatedPrincipal:
    """Authenticate the bearer token; every protected route depends on this."""
    gate: AuthenticationGate = request.app.state.gate
    return gate.authenticate(authorization)


def require_roles(*roles: Role) -> Callable[..., AuthenticatedPrincipal]:
    """Build a dependency admitting only principals holding one of ``roles``."""

    def dependency(principal: AuthenticatedPrincipal = Depends(get_principal)) -> AuthenticatedPrincipal:
        require_role(principal, roles)
        return principal

    return dependency


def get_admin(principal: AuthenticatedPrincipal = Depends(get_principal)) -> AuthenticatedPrincipal:
    require_admin(principal)
    return principal


async def _body_tenant(request: Request) -> object:
    body = await request.body()
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("tenantId", data.get("tenant_id"))


async def get_tenant_scope(
    request: Request,
    principal: AuthenticatedPrincipal = Depends(get_principal),
) -> str | None:
    """Tenant the request acts on, taken from path, query, then body.

    ``None`` only for a super admin who named no tenant, meaning all tenants.
    """
    query = request.query_params
    return resolve_tenant_scope(
        principal,
        route_tenant=request.path_params.get("tenant_id"),
        query_tenant=query.get("tenantId") or query.get("tenant_id"),
        body_tenant=await _body_tenant(request),
    )


def rate_limited(scope: str) -> Callable[[Request], None]:
    """Dependency factory throttling ``scope`` per client address."""

    def dependency(request: Request) -> None:
        limiter = request.app.state.rate_limiter
        address = client_address(request)
        allowed, retry_after = limiter.check(f"{scope}:{address}")
        if not allowed:
            logger.warning("rate limit exceeded scope=%s client=%s", scope, address)
            raise RateLimitedError(
                "too many requests, please try again later", retry_after=max(1, math.ceil(retry_after))
            )

    return dependency
