"""Tenant administration: creation, seats and subscription state."""

from __future__ import annotations

import re
import secrets
from dataclasses import asdict

from .account import AuthenticatedPrincipal, SubscriptionStatus, Tenant
from .audit import AuditLogger
from .contracts import AuditAction, AuditEntry, RequestOrigin
from .errors import NotFoundError, ValidationError

DEFAULT_SEATS = 5
MAX_SEATS = 10000

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _SLUG_STRIP.sub("-", name.lower()).strip("-")
    return slug[:90] or "tenant"


def _snapshot(tenant: Tenant) -> dict:
    data = asdict(tenant)
    data["subscription_status"] = tenant.subscription_status.value
    data["created_at"] = tenant.created_at.isoformat() if tenant.created_at else None
    return data


def _validate_seats(seats: int) -> None:
    if not 1 <= seats <= MAX_SEATS:
        raise ValidationError(
            "invalid seat count", fields={"seatsPurchased": f"must be between 1 and {MAX_SEATS}"}
        )


class TenantService:
    def __init__(self, repository, audit: AuditLogger) -> None:
        self._repository = repository
        self._audit = audit

    def create(
        self,
        actor: AuthenticatedPrincipal,
        name: str,
        seats_purchased: int = DEFAULT_SEATS,
        subscription_status: SubscriptionStatus = SubscriptionStatus.active,
        origin: RequestOrigin | None = None,
    ) -> Tenant:
        name = name.strip()
        if len(name) < 2:
            raise ValidationError("invalid name", fields={"name": "must be at least 2 characters"})
        _validate_seats(seats_purchased)

        slug = slugify(name)
        if self._repository.get_tenant_by_slug(slug) is not None:
            slug = f"{slug}-{secrets.token_hex(3)}"

        tenant = self._repository.create_tenant(
            name=name,
            slug=slug,
            seats_purchased=seats_purchased,
            subscription_status=subscription_status,
            created_by=actor.account_id,
        )
        self._audit.record(
            AuditEntry(
                action=AuditAction.company_create,
                actor_id=actor.account_id,
                tenant_id=tenant.tenant_id,
                entity_type="company",
                entity_id=tenant.tenant_id,
                new_values=_snapshot(tenant),
                origin=origin or RequestOrigin(),
            )
        )
        return tenant

    def get(self, tenant_id: str) -> Tenant:
        tenant = self._repository.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    def list_tenants(self, *, limit: int = 20, offset: int = 0) -> list[Tenant]:
        return self._repository.list_tenants(limit=limit, offset=offset)

    def rename(
        self,
        actor: AuthenticatedPrincipal,
        tenant_id: str,
        name: str,
        origin: RequestOrigin | None = None,
    ) -> Tenant:
        current = self.get(tenant_id)
        name = name.strip()
        if len(name) < 2:
            raise ValidationError("invalid name", fields={"name": "must be at least 2 characters"})
        updated = self._repository.rename_tenant(tenant_id, name)
        if updated is None:
            raise NotFoundError("tenant not found")
        self._audit.record(
            AuditEntry(
                action=AuditAction.company_update,
                actor_id=actor.account_id,
                tenant_id=tenant_id,
                entity_type="company",
                entity_id=tenant_id,
                old_values=_snapshot(current),
                new_values=_snapshot(updated),
                origin=origin or RequestOrigin(),
            )
        )
        return updated

    def update_seats(
        self,
        actor: AuthenticatedPrincipal,
        tenant_id: str,
        seats_purchased: int,
        subscription_status: SubscriptionStatus | None = None,
        origin: RequestOrigin | None = None,
    ) -> Tenant:
        """Change purchased seats; they can never drop below the seats in use."""
        _validate_seats(seats_purchased)
        current = self.get(tenant_id)
        if seats_purchased < current.seats_used:
            raise ValidationError(
                f"cannot reduce seats below current usage ({current.seats_used})",
                fields={"seatsPurchased": "below usage"},
            )
        updated = self._repository.update_seats(tenant_id, seats_purchased, subscription_status)
        if updated is None:
            # usage grew between the read and the guarded update
            raise ValidationError("cannot reduce seats below current usage", fields={"seatsPurchased": "below usage"})

        old_values = {"seatsPurchased": current.seats_purchased}
        new_values = {"seatsPurchased": updated.seats_purchased}
        if subscription_status is not None:
            old_values["subscriptionStatus"] = current.subscription_status.value
            new_values["subscriptionStatus"] = updated.subscription_status.value
        self._audit.record(
            AuditEntry(
                action=AuditAction.license_update,
                actor_id=actor.account_id,
                tenant_id=tenant_id,
                entity_type="company",
                entity_id=tenant_id,
                old_values=old_values,
                new_values=new_values,
                origin=origin or RequestOrigin(),
            )
        )
        return updated

    def delete(
        self,
        actor: AuthenticatedPrincipal,
        tenant_id: str,
        origin: RequestOrigin | None = None,
    ) -> None:
        """Delete the tenant together with its accounts and invitations."""
        current = self.get(tenant_id)
        if not self._repository.delete_tenant(tenant_id):
            raise NotFoundError("tenant not found")
        self._audit.record(
            AuditEntry(
                action=AuditAction.company_delete,
                actor_id=actor.account_id,
                tenant_id=tenant_id,
                entity_type="company",
                entity_id=tenant_id,
                old_values=_snapshot(current),
                origin=origin or RequestOrigin(),
            )
        )
