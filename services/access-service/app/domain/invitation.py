from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .account import Role


class InvitationStatus(str, Enum):
    """Stored, write-driven invitation states."""

    pending = "pending"
    accepted = "accepted"
    revoked = "revoked"


class EffectiveStatus(str, Enum):
    """Read-time status; ``expired`` is derived and never written."""

    pending = "pending"
    accepted = "accepted"
    revoked = "revoked"
    expired = "expired"


@dataclass(slots=True)
class Invitation:
    """Offer for an email address to join a tenant with a given role."""

    invitation_id: str
    email: str
    tenant_id: str
    invited_by: str
    role: Role
    token: str
    status: InvitationStatus
    expires_at: datetime
    created_at: datetime
    accepted_at: datetime | None = None

    def effective_status(self, now: datetime) -> EffectiveStatus:
        if self.status is InvitationStatus.pending and now >= self.expires_at:
            return EffectiveStatus.expired
        return EffectiveStatus(self.status.value)

    def is_open(self, now: datetime) -> bool:
        return self.effective_status(now) is EffectiveStatus.pending


@dataclass(slots=True)
class InvitationDetails:
    """Invitation joined with the names shown on the public invite page."""

    invitation: Invitation
    tenant_name: str
    inviter_name: str
