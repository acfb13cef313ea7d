from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.routes import router as v1_router
from app.api.tenants import router as tenants_router
from app.config import Settings
from app.domain.account import Account, IdentityProvider, Role, SubscriptionStatus, Tenant
from app.domain.contracts import AuditEntry, CreateAccountInput, utcnow
from app.domain.errors import ConflictError, NotFoundError, QuotaExceededError
from app.domain.invitation import Invitation, InvitationDetails, InvitationStatus
from app.main import build_state, register_exception_handlers
from app.notifications import DeliveryResult, InvitationNotice
from app.repository import AuditLogRecord
from app.security.passwords import hash_password
from app.security.rate_limiter import SlidingWindowRateLimiter
from app.security.tokens import TokenManager

ACCESS_SECRET = "test-access-secret-0123456789abcdef"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef"


class FakeRepository:
    """In-memory repository mimicking Postgres-backed behaviors."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.tenants: dict[str, Tenant] = {}
        self.invitations: dict[str, Invitation] = {}
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0

    # accounts

    def get_account(self, account_id: str):
        return self.accounts.get(account_id)

    def get_account_by_email(self, email: str):
        for account in self.accounts.values():
            if account.email.lower() == email.lower():
                return account
        return None

    def get_account_by_external_id(self, provider: IdentityProvider, external_id: str):
        for account in self.accounts.values():
            if account.external_ids.get(provider) == external_id:
                return account
        return None

    def active_account_in_tenant(self, email: str, tenant_id: str) -> bool:
        account = self.get_account_by_email(email)
        return account is not None and account.tenant_id == tenant_id and account.active

    def create_account(self, payload: CreateAccountInput, *, invitation_id=None, now=None) -> Account:
        now = now or utcnow()
        tenant = self.tenants.get(payload.tenant_id) if payload.tenant_id else None
        if payload.tenant_id and (tenant is None or not tenant.has_free_seat):
            raise QuotaExceededError("no seats available")
        if self.get_account_by_email(payload.email) is not None:
            raise ConflictError("account already exists")
        for provider, external_id in payload.external_ids.items():
            if self.get_account_by_external_id(provider, external_id) is not None:
                raise ConflictError("account already exists")
        invitation = self.invitations.get(invitation_id) if invitation_id else None
        if invitation_id and (invitation is None or not invitation.is_open(now)):
            raise NotFoundError("invitation not found")

        if tenant is not None:
            tenant.seats_used += 1
        if invitation is not None:
            invitation.status = InvitationStatus.accepted
            invitation.accepted_at = now
        account = Account(
            account_id=str(uuid.uuid4()),
            email=payload.email,
            role=payload.role,
            tenant_id=payload.tenant_id,
            created_at=now,
            first_name=payload.first_name,
            last_name=payload.last_name,
            avatar_url=payload.avatar_url,
            password_hash=payload.password_hash,
            external_ids=dict(payload.external_ids),
            email_verified=payload.email_verified,
            last_login_at=payload.last_login_at,
        )
        self.accounts[account.account_id] = account
        return account

    def link_external_identity(self, account_id, provider, external_id) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError("account not found")
        account.external_ids[provider] = external_id
        account.last_login_at = utcnow()
        return account

    def touch_last_login(self, account_id: str) -> None:
        if account_id in self.accounts:
            self.accounts[account_id].last_login_at = utcnow()

    def set_account_active(self, account_id: str, active: bool):
        account = self.accounts.get(account_id)
        if account is None:
            return None
        account.active = active
        if not active:
            account.token_generation += 1
        return account

    def set_account_role(self, account_id: str, role: Role):
        account = self.accounts.get(account_id)
        if account is None:
            return None
        account.role = role
        return account

    def update_account_profile(self, account_id: str, changes: dict):
        account = self.accounts.get(account_id)
        if account is None:
            return None
        for column, value in changes.items():
            setattr(account, column, value)
        return account

    def bump_token_generation(self, account_id: str):
        account = self.accounts.get(account_id)
        if account is None:
            return None
        account.token_generation += 1
        return account.token_generation

    def list_accounts(self, *, tenant_id, search=None, limit=50, offset=0):
        results = [a for a in self.accounts.values() if tenant_id is None or a.tenant_id == tenant_id]
        if search:
            needle = search.lower()
            results = [
                a
                for a in results
                if needle in a.email.lower() or needle in a.first_name.lower() or needle in a.last_name.lower()
            ]
        results.sort(key=lambda a: a.created_at, reverse=True)
        return results[offset : offset + limit]

    # tenants

    def create_tenant(self, *, name, slug, seats_purchased, subscription_status, created_by) -> Tenant:
        if self.get_tenant_by_slug(slug) is not None:
            raise ConflictError("tenant slug already taken")
        tenant = Tenant(
            tenant_id=str(uuid.uuid4()),
            name=name,
            slug=slug,
            seats_purchased=seats_purchased,
            seats_used=0,
            subscription_status=subscription_status,
            created_at=utcnow(),
        )
        self.tenants[tenant.tenant_id] = tenant
        return tenant

    def get_tenant(self, tenant_id: str):
        return self.tenants.get(tenant_id)

    def get_tenant_by_slug(self, slug: str):
        for tenant in self.tenants.values():
            if tenant.slug == slug:
                return tenant
        return None

    def list_tenants(self, *, limit=20, offset=0):
        results = sorted(self.tenants.values(), key=lambda t: t.created_at, reverse=True)
        return results[offset : offset + limit]

    def rename_tenant(self, tenant_id: str, name: str):
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            return None
        updated = replace(tenant, name=name)
        self.tenants[tenant_id] = updated
        return updated

    def update_seats(self, tenant_id, seats_purchased, subscription_status):
        tenant = self.tenants.get(tenant_id)
        if tenant is None or tenant.seats_used > seats_purchased:
            return None
        updated = replace(
            tenant,
            seats_purchased=seats_purchased,
            subscription_status=subscription_status or tenant.subscription_status,
        )
        self.tenants[tenant_id] = updated
        return updated

    def delete_tenant(self, tenant_id: str) -> bool:
        if self.tenants.pop(tenant_id, None) is None:
            return False
        self.accounts = {k: a for k, a in self.accounts.items() if a.tenant_id != tenant_id}
        self.invitations = {k: i for k, i in self.invitations.items() if i.tenant_id != tenant_id}
        return True

    # invitations

    def insert_invitation(self, *, email, tenant_id, invited_by, role, token, expires_at, now):
        tenant = self.tenants.get(tenant_id)
        if tenant is None or not tenant.has_free_seat:
            return None
        if self.find_open_invitation(email, tenant_id, now) is not None:
            return None
        if self.active_account_in_tenant(email, tenant_id):
            return None
        invitation = Invitation(
            invitation_id=str(uuid.uuid4()),
            email=email,
            tenant_id=tenant_id,
            invited_by=invited_by,
            role=role,
            token=token,
            status=InvitationStatus.pending,
            expires_at=expires_at,
            created_at=now,
        )
        self.invitations[invitation.invitation_id] = invitation
        return invitation

    def _open(self, now, **match):
        results = [
            i
            for i in self.invitations.values()
            if i.is_open(now) and all(getattr(i, key) == value for key, value in match.items())
        ]
        results.sort(key=lambda i: i.created_at, reverse=True)
        return results[0] if results else None

    def find_open_invitation(self, email, tenant_id, now):
        return self._open(now, email=email, tenant_id=tenant_id)

    def latest_open_invitation_for_email(self, email, now):
        return self._open(now, email=email)

    def get_invitation(self, invitation_id: str):
        return self.invitations.get(invitation_id)

    def get_invitation_details(self, token: str):
        for invitation in self.invitations.values():
            if invitation.token != token:
                continue
            tenant = self.tenants.get(invitation.tenant_id)
            inviter = self.accounts.get(invitation.invited_by)
            if tenant is None or inviter is None:
                return None
            return InvitationDetails(
                invitation=invitation,
                tenant_name=tenant.name,
                inviter_name=inviter.display_name,
            )
        return None

    def list_invitations(self, tenant_id: str):
        results = [i for i in self.invitations.values() if i.tenant_id == tenant_id]
        return sorted(results, key=lambda i: i.created_at, reverse=True)

    def revoke_invitation(self, invitation_id: str):
        invitation = self.invitations.get(invitation_id)
        if invitation is None or invitation.status is not InvitationStatus.pending:
            return None
        invitation.status = InvitationStatus.revoked
        return invitation

    def accept_invitation(self, invitation_id: str, now):
        invitation = self.invitations.get(invitation_id)
        if invitation is None or not invitation.is_open(now):
            return None
        invitation.status = InvitationStatus.accepted
        invitation.accepted_at = now
        return invitation

    # audit

    def write_audit_event(self, entry: AuditEntry) -> None:
        self._audit_seq += 1
        self.audit_log.append(
            AuditLogRecord(
                audit_id=self._audit_seq,
                actor_id=entry.actor_id,
                tenant_id=entry.tenant_id,
                action=entry.action.value,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                old_values=entry.old_values,
                new_values=entry.new_values,
                metadata=entry.metadata or {},
                ip_address=entry.origin.ip_address,
                user_agent=entry.origin.user_agent,
                created_at=datetime.now(timezone.utc),
            )
        )

    def actions(self) -> list[str]:
        return [record.action for record in self.audit_log]

    def list_audit_events(
        self,
        *,
        tenant_id=None,
        actor_id=None,
        action=None,
        entity_type=None,
        created_after=None,
        created_before=None,
        limit=50,
        cursor=None,
    ):
        results = [r for r in self.audit_log if tenant_id is None or r.tenant_id == tenant_id]
        if actor_id:
            results = [r for r in results if r.actor_id == actor_id]
        if action:
            results = [r for r in results if r.action == action]
        if entity_type:
            results = [r for r in results if r.entity_type == entity_type]
        if created_after:
            results = [r for r in results if r.created_at >= created_after]
        if created_before:
            results = [r for r in results if r.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [r for r in results if (r.created_at, r.audit_id) < cursor]
        page = results[:limit]
        next_cursor = None
        if len(page) == limit:
            next_cursor = (page[-1].created_at, page[-1].audit_id)
        return page, next_cursor


class RecordingNotifier:
    """Captures invitation notices; can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[InvitationNotice] = []
        self.fail_with: Exception | None = None

    def deliver_invitation(self, notice: InvitationNotice) -> DeliveryResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(notice)
        return DeliveryResult(delivered=True)


class FailingSink:
    def write_audit_event(self, entry: AuditEntry) -> None:
        raise RuntimeError("audit store unavailable")


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_access_secret": ACCESS_SECRET,
        "jwt_refresh_secret": REFRESH_SECRET,
        "frontend_url": "http://app.example.com",
        "google_client_id": "google-client",
        "google_client_secret": "google-secret",
        "google_callback_url": "http://api.example.com/v1/auth/google/callback",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def tokens(settings) -> TokenManager:
    return TokenManager(settings)


def seed_tenant(repo: FakeRepository, name: str = "Acme", seats: int = 5) -> Tenant:
    slug = name.lower().replace(" ", "-")
    return repo.create_tenant(
        name=name,
        slug=slug,
        seats_purchased=seats,
        subscription_status=SubscriptionStatus.active,
        created_by=None,
    )


def seed_account(
    repo: FakeRepository,
    email: str,
    *,
    role: Role = Role.user,
    tenant: Tenant | None = None,
    password: str | None = "correct-horse",
    first_name: str = "Test",
    last_name: str = "User",
) -> Account:
    return repo.create_account(
        CreateAccountInput(
            email=email,
            role=role,
            tenant_id=tenant.tenant_id if tenant else None,
            first_name=first_name,
            last_name=last_name,
            password_hash=hash_password(password) if password else None,
        )
    )


def seed_invitation(
    repo: FakeRepository,
    tenant: Tenant,
    inviter: Account,
    email: str,
    *,
    role: Role = Role.user,
    expires_in: timedelta = timedelta(days=7),
    created_at: datetime | None = None,
) -> Invitation:
    now = created_at or utcnow()
    invitation = repo.insert_invitation(
        email=email,
        tenant_id=tenant.tenant_id,
        invited_by=inviter.account_id,
        role=role,
        token=f"tok-{uuid.uuid4().hex}",
        expires_at=now + expires_in,
        now=now,
    )
    assert invitation is not None
    return invitation


def bearer(tokens: TokenManager, account: Account) -> dict[str, str]:
    return {"Authorization": f"Bearer {tokens.issue_access_token(account)}"}


def _unreachable_provider(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"error": "unavailable"})


@pytest.fixture
def app(settings, repository, notifier) -> FastAPI:
    """Provide a FastAPI application wired to in-memory collaborators."""
    application = FastAPI()
    register_exception_handlers(application)
    application.include_router(v1_router)
    application.include_router(tenants_router)
    build_state(
        application,
        settings,
        repository,
        notifier=notifier,
        http_client=httpx.Client(transport=httpx.MockTransport(_unreachable_provider)),
        rate_limiter=SlidingWindowRateLimiter(max_requests=100, window_seconds=60),
    )
    return application


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client
