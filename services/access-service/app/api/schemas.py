"""Request and response bodies for the HTTP API (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl
from pydantic.alias_generators import to_camel

from ..domain.account import Account, Role, SubscriptionStatus, Tenant
from ..domain.invitation import EffectiveStatus, Invitation, InvitationDetails
from ..repository import AuditLogRecord
from ..security.tokens import TokenPair


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TenantSummary(ApiModel):
    id: str
    name: str
    slug: str
    seats_purchased: int
    seats_used: int
    subscription_status: SubscriptionStatus
    created_at: datetime

    @classmethod
    def from_domain(cls, tenant: Tenant) -> "TenantSummary":
        return cls(
            id=tenant.tenant_id,
            name=tenant.name,
            slug=tenant.slug,
            seats_purchased=tenant.seats_purchased,
            seats_used=tenant.seats_used,
            subscription_status=tenant.subscription_status,
            created_at=tenant.created_at,
        )


class AccountResponse(ApiModel):
    """Serialised representation of an `Account` aggregate."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    tenant_id: str | None
    avatar_url: str | None = None
    active: bool
    email_verified: bool
    last_login_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.account_id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role,
            tenant_id=account.tenant_id,
            avatar_url=account.avatar_url,
            active=account.active,
            email_verified=account.email_verified,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )


class ProfileResponse(AccountResponse):
    tenant: TenantSummary | None = None


class TokenResponse(ApiModel):
    """Token pair returned by sign-in and refresh, optionally with the account."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    user: AccountResponse | None = None

    @classmethod
    def from_pair(cls, pair: TokenPair, account: Account | None = None) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.access_expires_in,
            refresh_expires_in=pair.refresh_expires_in,
            user=AccountResponse.from_domain(account) if account else None,
        )


class RegisterRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    invite_token: str | None = None


class LoginRequest(ApiModel):
    email: EmailStr
    password: str


class RefreshRequest(ApiModel):
    refresh_token: str


class RevokeSessionsResponse(ApiModel):
    token_generation: int


class InvitationResponse(ApiModel):
    id: str
    email: str
    tenant_id: str
    invited_by: str
    role: Role
    status: EffectiveStatus
    expires_at: datetime
    created_at: datetime
    accepted_at: datetime | None = None

    @classmethod
    def from_domain(cls, invitation: Invitation, status: EffectiveStatus) -> "InvitationResponse":
        return cls(
            id=invitation.invitation_id,
            email=invitation.email,
            tenant_id=invitation.tenant_id,
            invited_by=invitation.invited_by,
            role=invitation.role,
            status=status,
            expires_at=invitation.expires_at,
            created_at=invitation.created_at,
            accepted_at=invitation.accepted_at,
        )


class InviteRequest(ApiModel):
    email: EmailStr
    role: Role = Role.user
    tenant_id: str | None = None


class InviteResponse(ApiModel):
    invitation: InvitationResponse
    invite_link: str
    email_sent: bool
    email_error: str | None = None


class InvitationPreview(ApiModel):
    """What an invitee sees before accepting."""

    email: str
    role: Role
    tenant_name: str
    inviter_name: str
    expires_at: datetime

    @classmethod
    def from_domain(cls, details: InvitationDetails) -> "InvitationPreview":
        return cls(
            email=details.invitation.email,
            role=details.invitation.role,
            tenant_name=details.tenant_name,
            inviter_name=details.inviter_name,
            expires_at=details.invitation.expires_at,
        )


class UpdateStatusRequest(ApiModel):
    active: bool


class UpdateRoleRequest(ApiModel):
    role: Role


class UpdateProfileRequest(ApiModel):
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    avatar_url: HttpUrl | None = None


class CreateTenantRequest(ApiModel):
    name: str = Field(..., max_length=255)
    seats_purchased: int = 5
    subscription_status: SubscriptionStatus = SubscriptionStatus.active


class RenameTenantRequest(ApiModel):
    name: str = Field(..., max_length=255)


class UpdateSeatsRequest(ApiModel):
    seats_purchased: int
    subscription_status: SubscriptionStatus | None = None


class AuditLogEntry(ApiModel):
    """Audit log response entry."""

    id: int
    actor_id: str | None
    tenant_id: str | None
    action: str
    entity_type: str | None
    entity_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    metadata: dict[str, Any]
    ip_address: str | None
    user_agent: str | None
    created_at: datetime

    @classmethod
    def from_record(cls, record: AuditLogRecord) -> "AuditLogEntry":
        return cls(
            id=record.audit_id,
            actor_id=record.actor_id,
            tenant_id=record.tenant_id,
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            old_values=record.old_values,
            new_values=record.new_values,
            metadata=record.metadata,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=record.created_at,
        )


class AuditLogResponse(ApiModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None
