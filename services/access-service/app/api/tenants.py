"""HTTP routes for tenant administration and the audit log."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from ..domain.account import AuthenticatedPrincipal, Role
from ..domain.audit import AuditTrail
from ..domain.contracts import RequestOrigin
from ..domain.tenants import TenantService
from .dependencies import get_admin, get_audit_trail, get_origin, get_tenant_scope, get_tenant_service, require_roles
from .schemas import (
    AuditLogEntry,
    AuditLogResponse,
    CreateTenantRequest,
    RenameTenantRequest,
    TenantSummary,
    UpdateSeatsRequest,
)

router = APIRouter(prefix="/v1")

require_super_admin = require_roles(Role.super_admin)


@router.post("/tenants", response_model=TenantSummary, status_code=status.HTTP_201_CREATED)
def create_tenant(
    payload: CreateTenantRequest,
    actor: AuthenticatedPrincipal = Depends(require_super_admin),
    tenants: TenantService = Depends(get_tenant_service),
    origin: RequestOrigin = Depends(get_origin),
) -> TenantSummary:
    tenant = tenants.create(
        actor,
        payload.name,
        seats_purchased=payload.seats_purchased,
        subscription_status=payload.subscription_status,
        origin=origin,
    )
    return TenantSummary.from_domain(tenant)


@router.get("/tenants", response_model=list[TenantSummary])
def list_tenants(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _actor: AuthenticatedPrincipal = Depends(require_super_admin),
    tenants: TenantService = Depends(get_tenant_service),
) -> list[TenantSummary]:
    return [TenantSummary.from_domain(tenant) for tenant in tenants.list_tenants(limit=limit, offset=offset)]


@router.get("/tenants/{tenant_id}", response_model=TenantSummary)
def get_tenant(
    tenant_id: str,
    scoped_tenant: str | None = Depends(get_tenant_scope),
    tenants: TenantService = Depends(get_tenant_service),
) -> TenantSummary:
    return TenantSummary.from_domain(tenants.get(scoped_tenant or tenant_id))


@router.put("/tenants/{tenant_id}", response_model=TenantSummary)
def rename_tenant(
    tenant_id: str,
    payload: RenameTenantRequest,
    admin: AuthenticatedPrincipal = Depends(get_admin),
    scoped_tenant: str | None = Depends(get_tenant_scope),
    tenants: TenantService = Depends(get_tenant_service),
    origin: RequestOrigin = Depends(get_origin),
) -> TenantSummary:
    return TenantSummary.from_domain(tenants.rename(admin, scoped_tenant or tenant_id, payload.name, origin))


@router.put("/tenants/{tenant_id}/seats", response_model=TenantSummary)
def update_seats(
    tenant_id: str,
    payload: UpdateSeatsRequest,
    actor: AuthenticatedPrincipal = Depends(require_super_admin),
    tenants: TenantService = Depends(get_tenant_service),
    origin: RequestOrigin = Depends(get_origin),
) -> TenantSummary:
    """Change purchased seats or subscription state."""
    tenant = tenants.update_seats(
        actor,
        tenant_id,
        payload.seats_purchased,
        payload.subscription_status,
        origin,
    )
    return TenantSummary.from_domain(tenant)


@router.delete("/tenants/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tenant(
    tenant_id: str,
    actor: AuthenticatedPrincipal = Depends(require_super_admin),
    tenants: TenantService = Depends(get_tenant_service),
    origin: RequestOrigin = Depends(get_origin),
) -> None:
    tenants.delete(actor, tenant_id, origin)


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str | None = Query(default=None, alias="accountId"),
    action: str | None = Query(default=None),
    entity_type: str | None = Query(default=None, alias="entityType"),
    created_after: datetime | None = Query(default=None, alias="createdAfter"),
    created_before: datetime | None = Query(default=None, alias="createdBefore"),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    _admin: AuthenticatedPrincipal = Depends(get_admin),
    tenant_id: str | None = Depends(get_tenant_scope),
    trail: AuditTrail = Depends(get_audit_trail),
) -> AuditLogResponse:
    """Return audit events newest first; a super admin without a tenant sees all."""
    records, next_cursor = trail.list_events(
        tenant_id=tenant_id,
        actor_id=account_id,
        action=action,
        entity_type=entity_type,
        created_after=created_after,
        created_before=created_before,
        limit=limit,
        cursor=cursor,
    )
    return AuditLogResponse(
        items=[AuditLogEntry.from_record(record) for record in records],
        next_cursor=next_cursor,
    )
