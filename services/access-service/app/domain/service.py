"""Account service orchestrating credentials, token issuance, and auditing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Tuple

from ..observability import AUTH_FAILURES, INVITATIONS
from ..security.passwords import hash_password, verify_password
from ..security.policies import can_manage_tenant
from ..security.tokens import TokenKind, TokenManager, TokenPair
from .account import Account, AuthenticatedPrincipal, Role, Tenant, normalize_email
from .audit import AuditLogger
from .contracts import AuditAction, AuditEntry, CreateAccountInput, ExternalProfile, RequestOrigin, utcnow
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from .identity import IdentityResolver
from .invitations import InvitationService

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


@dataclass(slots=True)
class RegistrationInput:
    """Validated inputs for password-based self registration."""

    email: str
    password: str
    first_name: str
    last_name: str
    invite_token: str | None = None


class AccountService:
    """Account workflows: sign-in, token rotation and team management."""

    def __init__(
        self,
        repository,
        tokens: TokenManager,
        invitations: InvitationService,
        resolver: IdentityResolver,
        audit: AuditLogger,
        clock: Callable = utcnow,
    ) -> None:
        """Store dependencies used to orchestrate persistence and token issuance."""
        self._repository = repository
        self._tokens = tokens
        self._invitations = invitations
        self._resolver = resolver
        self._audit = audit
        self._clock = clock

    # -- sign-in ------------------------------------------------------------

    def register(
        self, payload: RegistrationInput, origin: RequestOrigin | None = None
    ) -> Tuple[Account, TokenPair]:
        """Create a password account, optionally joining a tenant through an invitation.

        The invitation, when given, decides tenant and role and is accepted in
        the same write that creates the account and takes the tenant seat.
        """
        origin = origin or RequestOrigin()
        email = normalize_email(payload.email)
        if len(payload.password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "password too short",
                fields={"password": f"must be at least {MIN_PASSWORD_LENGTH} characters"},
            )
        if self._repository.get_account_by_email(email) is not None:
            raise ConflictError("email already registered")

        invitation = None
        if payload.invite_token:
            invitation = self._invitations.open_invitation_for(payload.invite_token, email)

        now = self._clock()
        account = self._repository.create_account(
            CreateAccountInput(
                email=email,
                role=invitation.role if invitation else Role.user,
                tenant_id=invitation.tenant_id if invitation else None,
                first_name=payload.first_name.strip(),
                last_name=payload.last_name.strip(),
                password_hash=hash_password(payload.password),
                email_verified=invitation is not None,
                last_login_at=now,
            ),
            invitation_id=invitation.invitation_id if invitation else None,
            now=now,
        )

        self._audit.record(
            AuditEntry(
                action=AuditAction.user_register,
                actor_id=account.account_id,
                tenant_id=account.tenant_id,
                entity_type="user",
                entity_id=account.account_id,
                origin=origin,
            )
        )
        if invitation is not None:
            INVITATIONS.labels(outcome="accepted").inc()
            self._audit.record(
                AuditEntry(
                    action=AuditAction.user_invite_accept,
                    actor_id=account.account_id,
                    tenant_id=invitation.tenant_id,
                    entity_type="invitation",
                    entity_id=invitation.invitation_id,
                    new_values={"role": invitation.role.value},
                    origin=origin,
                )
            )
        return account, self._tokens.issue_token_pair(account)

    def login(
        self, email: str, password: str, origin: RequestOrigin | None = None
    ) -> Tuple[Account, TokenPair]:
        account = self._repository.get_account_by_email(normalize_email(email))
        if account is None or not account.password_hash:
            AUTH_FAILURES.labels(reason="bad_credentials").inc()
            raise UnauthenticatedError("invalid credentials")
        if not account.active:
            AUTH_FAILURES.labels(reason="inactive").inc()
            raise UnauthenticatedError("account is deactivated")
        if not verify_password(account.password_hash, password):
            AUTH_FAILURES.labels(reason="bad_credentials").inc()
            raise UnauthenticatedError("invalid credentials")

        self._repository.touch_last_login(account.account_id)
        account.last_login_at = self._clock()
        self._record_login(account, origin, provider="password")
        return account, self._tokens.issue_token_pair(account)

    def login_external(
        self, profile: ExternalProfile, origin: RequestOrigin | None = None
    ) -> Tuple[Account, TokenPair]:
        """Resolve an external identity and issue tokens for the resulting account."""
        account = self._resolver.resolve(profile, origin)
        if not account.active:
            AUTH_FAILURES.labels(reason="inactive").inc()
            raise UnauthenticatedError("account is deactivated")
        self._record_login(account, origin, provider=profile.provider.value)
        return account, self._tokens.issue_token_pair(account)

    def _record_login(self, account: Account, origin: RequestOrigin | None, *, provider: str) -> None:
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_login,
                actor_id=account.account_id,
                tenant_id=account.tenant_id,
                entity_type="user",
                entity_id=account.account_id,
                metadata={"provider": provider},
                origin=origin or RequestOrigin(),
            )
        )

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair built from the current account state.

        Raises ``TokenExpiredError`` for an expired token so clients can tell
        it apart from an invalid or revoked one.
        """
        claims = self._tokens.verify(refresh_token, TokenKind.refresh)
        account = self._repository.get_account(claims.account_id)
        if account is None or not account.active:
            AUTH_FAILURES.labels(reason="inactive").inc()
            raise UnauthenticatedError("account not found or inactive")
        if claims.generation != account.token_generation:
            AUTH_FAILURES.labels(reason="revoked").inc()
            raise InvalidTokenError("refresh token revoked")
        return self._tokens.issue_token_pair(account)

    def logout(self, principal: AuthenticatedPrincipal, origin: RequestOrigin | None = None) -> None:
        """Record the logout; tokens are stateless and simply discarded by the client."""
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_logout,
                actor_id=principal.account_id,
                tenant_id=principal.tenant_id,
                entity_type="user",
                entity_id=principal.account_id,
                origin=origin or RequestOrigin(),
            )
        )

    def revoke_sessions(self, principal: AuthenticatedPrincipal, origin: RequestOrigin | None = None) -> int:
        """Invalidate every outstanding refresh token for the principal."""
        generation = self._repository.bump_token_generation(principal.account_id)
        if generation is None:
            raise NotFoundError("account not found")
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_sessions_revoke,
                actor_id=principal.account_id,
                tenant_id=principal.tenant_id,
                entity_type="user",
                entity_id=principal.account_id,
                new_values={"token_generation": generation},
                origin=origin or RequestOrigin(),
            )
        )
        return generation

    # -- profile and team management ---------------------------------------

    def get_profile(self, principal: AuthenticatedPrincipal) -> Tuple[Account, Tenant | None]:
        account = self._repository.get_account(principal.account_id)
        if account is None:
            raise NotFoundError("account not found")
        tenant = self._repository.get_tenant(account.tenant_id) if account.tenant_id else None
        return account, tenant

    def get_account(self, principal: AuthenticatedPrincipal, account_id: str) -> Account:
        """Return an account visible to ``principal``: itself, or one it administers."""
        if account_id != principal.account_id and not principal.role.is_admin:
            raise ForbiddenError("access denied")
        account = self._repository.get_account(account_id)
        if account is None:
            raise NotFoundError("user not found")
        if account_id != principal.account_id and not can_manage_tenant(principal, account.tenant_id):
            raise ForbiddenError("access denied")
        return account

    def update_profile(
        self,
        principal: AuthenticatedPrincipal,
        account_id: str,
        changes: dict[str, str | None],
        origin: RequestOrigin | None = None,
    ) -> Account:
        """Edit name and avatar of an account visible to ``principal``.

        Names are trimmed and may not be blank; an absent or null name is left
        unchanged. ``avatar_url`` is applied whenever present, so ``None``
        clears it. An update that changes nothing is rejected.
        """
        target = self.get_account(principal, account_id)

        updates: dict[str, str | None] = {}
        for field_name, wire_name in (("first_name", "firstName"), ("last_name", "lastName")):
            value = changes.get(field_name)
            if value is None:
                continue
            value = value.strip()
            if not value:
                raise ValidationError("name cannot be blank", fields={wire_name: "blank"})
            updates[field_name] = value
        if "avatar_url" in changes:
            updates["avatar_url"] = changes["avatar_url"]
        if not updates:
            raise ValidationError("no updates provided")

        before = {field_name: getattr(target, field_name) for field_name in updates}
        updated = self._repository.update_account_profile(account_id, updates)
        if updated is None:
            raise NotFoundError("user not found")
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_update,
                actor_id=principal.account_id,
                tenant_id=updated.tenant_id,
                entity_type="user",
                entity_id=account_id,
                old_values=before,
                new_values=dict(updates),
                origin=origin or RequestOrigin(),
            )
        )
        return updated

    def list_accounts(
        self,
        tenant_id: str | None,
        *,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Account]:
        return self._repository.list_accounts(
            tenant_id=tenant_id, search=search, limit=limit, offset=offset
        )

    def set_active(
        self,
        actor: AuthenticatedPrincipal,
        account_id: str,
        active: bool,
        origin: RequestOrigin | None = None,
    ) -> Account:
        target = self._managed_account(actor, account_id)
        if account_id == actor.account_id:
            raise ValidationError("cannot change your own status")
        if target.role is Role.super_admin:
            raise ValidationError("cannot change the status of a super admin")

        updated = self._repository.set_account_active(account_id, active)
        if updated is None:
            raise NotFoundError("user not found")
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_update,
                actor_id=actor.account_id,
                tenant_id=target.tenant_id,
                entity_type="user",
                entity_id=account_id,
                old_values={"active": target.active},
                new_values={"active": active},
                origin=origin or RequestOrigin(),
            )
        )
        return updated

    def set_role(
        self,
        actor: AuthenticatedPrincipal,
        account_id: str,
        role: Role,
        origin: RequestOrigin | None = None,
    ) -> Account:
        if role is Role.super_admin:
            raise ValidationError("role cannot be assigned", fields={"role": role.value})
        target = self._managed_account(actor, account_id)
        if target.role is Role.super_admin:
            raise ValidationError("cannot change the role of a super admin")

        updated = self._repository.set_account_role(account_id, role)
        if updated is None:
            raise NotFoundError("user not found")
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_update,
                actor_id=actor.account_id,
                tenant_id=target.tenant_id,
                entity_type="user",
                entity_id=account_id,
                old_values={"role": target.role.value},
                new_values={"role": role.value},
                origin=origin or RequestOrigin(),
            )
        )
        return updated

    def _managed_account(self, actor: AuthenticatedPrincipal, account_id: str) -> Account:
        target = self._repository.get_account(account_id)
        if target is None:
            raise NotFoundError("user not found")
        if not can_manage_tenant(actor, target.tenant_id):
            raise ForbiddenError("access denied")
        return target
