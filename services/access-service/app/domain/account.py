from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of principal roles, ordered from least to most privileged."""

    user = "user"
    company_admin = "company_admin"
    super_admin = "super_admin"

    @property
    def is_admin(self) -> bool:
        return self in ADMIN_ROLES


ADMIN_ROLES = frozenset({Role.company_admin, Role.super_admin})
INVITABLE_ROLES = frozenset({Role.user, Role.company_admin})


class SubscriptionStatus(str, Enum):
    active = "active"
    trial = "trial"
    suspended = "suspended"
    inactive = "inactive"


class IdentityProvider(str, Enum):
    """External login providers an account can be linked to."""

    google = "google"
    microsoft = "microsoft"


def normalize_email(email: str) -> str:
    """Return the canonical (trimmed, lower-cased) form used as the join key."""
    return email.strip().lower()


@dataclass(slots=True)
class Account:
    """Aggregate root for an authenticated principal."""

    account_id: str
    email: str
    role: Role
    tenant_id: str | None
    created_at: datetime
    first_name: str = ""
    last_name: str = ""
    avatar_url: str | None = None
    password_hash: str | None = None
    external_ids: dict[IdentityProvider, str] = field(default_factory=dict)
    active: bool = True
    email_verified: bool = False
    last_login_at: datetime | None = None
    token_generation: int = 0

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email


@dataclass(slots=True)
class Tenant:
    """Billing/organizational unit that owns accounts, seats and invitations."""

    tenant_id: str
    name: str
    slug: str
    seats_purchased: int
    seats_used: int
    subscription_status: SubscriptionStatus
    created_at: datetime

    @property
    def has_free_seat(self) -> bool:
        return self.seats_used < self.seats_purchased


@dataclass(frozen=True, slots=True)
class AuthenticatedPrincipal:
    """Immutable view of the account behind the current request."""

    account_id: str
    email: str
    role: Role
    tenant_id: str | None
    display_name: str

    @classmethod
    def from_account(cls, account: Account) -> "AuthenticatedPrincipal":
        return cls(
            account_id=account.account_id,
            email=account.email,
            role=account.role,
            tenant_id=account.tenant_id,
            display_name=account.display_name,
        )
