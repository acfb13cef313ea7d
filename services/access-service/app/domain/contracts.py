"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .account import IdentityProvider, Role


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to persist a new account."""

    email: str
    role: Role = Role.user
    tenant_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    avatar_url: str | None = None
    password_hash: str | None = None
    external_ids: dict[IdentityProvider, str] = field(default_factory=dict)
    email_verified: bool = False
    last_login_at: datetime | None = None


@dataclass(slots=True)
class ExternalProfile:
    """Profile handed back by an external identity provider after login."""

    provider: IdentityProvider
    external_id: str
    email: str | None
    given_name: str | None = None
    family_name: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None

    def split_name(self) -> tuple[str, str]:
        """Best-effort (first, last) split, preferring structured name parts."""
        parts = (self.display_name or "").split()
        first = self.given_name or (parts[0] if parts else "")
        last = self.family_name or " ".join(parts[1:])
        return first, last


@dataclass(frozen=True, slots=True)
class RequestOrigin:
    """Network origin of the request being audited."""

    ip_address: str | None = None
    user_agent: str | None = None


class AuditAction(str, Enum):
    """Closed vocabulary of audited actions."""

    user_login = "user.login"
    user_logout = "user.logout"
    user_register = "user.register"
    user_update = "user.update"
    user_invite = "user.invite"
    user_invite_accept = "user.invite_accept"
    user_invite_revoke = "user.invite_revoke"
    user_sessions_revoke = "user.sessions_revoke"
    company_create = "company.create"
    company_update = "company.update"
    company_delete = "company.delete"
    license_update = "admin.license_update"


@dataclass(slots=True)
class AuditEntry:
    """Append-only record of a privileged action."""

    action: AuditAction
    actor_id: str | None = None
    tenant_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    origin: RequestOrigin = field(default_factory=RequestOrigin)


def utcnow() -> datetime:
    """Timezone-aware current time; services accept an override for tests."""
    return datetime.now(timezone.utc)
