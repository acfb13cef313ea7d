"""Invitation lifecycle: create, describe, consume and revoke team invitations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from ..config import Settings
from ..notifications import DeliveryResult, InvitationNotice, InvitationNotifier, redact_email
from ..observability import INVITATIONS
from ..security.policies import can_manage_tenant
from ..security.tokens import generate_invitation_token
from .account import INVITABLE_ROLES, AuthenticatedPrincipal, Role, normalize_email
from .audit import AuditLogger
from .contracts import AuditAction, AuditEntry, RequestOrigin, utcnow
from .errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from .invitation import EffectiveStatus, Invitation, InvitationDetails, InvitationStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InvitationResult:
    """A created invitation plus the outcome of handing it to the notifier."""

    invitation: Invitation
    delivery: DeliveryResult


class InvitationService:
    """Seat-bounded invitations for joining a tenant."""

    def __init__(
        self,
        repository,
        notifier: InvitationNotifier,
        audit: AuditLogger,
        settings: Settings,
        clock: Callable = utcnow,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._audit = audit
        self._settings = settings
        self._clock = clock

    def create(
        self,
        inviter: AuthenticatedPrincipal,
        tenant_id: str,
        email: str,
        role: Role = Role.user,
        origin: RequestOrigin | None = None,
    ) -> InvitationResult:
        """Create a pending invitation and hand it to the notifier.

        Checks run in a fixed order and abort without side effects: an active
        account for the email in the tenant (``ConflictError``), a free seat
        (``QuotaExceededError``), then an open invitation for the same pair
        (``ConflictError``). A delivery failure is reported in the result; the
        invitation is kept either way.
        """
        if role not in INVITABLE_ROLES:
            raise ValidationError("role cannot be granted by invitation", fields={"role": role.value})
        if not can_manage_tenant(inviter, tenant_id):
            raise ForbiddenError("access denied to this tenant")

        email = normalize_email(email)
        tenant = self._repository.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")

        if self._repository.active_account_in_tenant(email, tenant_id):
            INVITATIONS.labels(outcome="conflict").inc()
            raise ConflictError("user already exists in this tenant")
        if not tenant.has_free_seat:
            INVITATIONS.labels(outcome="quota_exceeded").inc()
            raise QuotaExceededError("no seats available")

        now = self._clock()
        if self._repository.find_open_invitation(email, tenant_id, now) is not None:
            INVITATIONS.labels(outcome="conflict").inc()
            raise ConflictError("invitation already sent to this email")

        invitation = self._repository.insert_invitation(
            email=email,
            tenant_id=tenant_id,
            invited_by=inviter.account_id,
            role=role,
            token=generate_invitation_token(),
            expires_at=now + timedelta(seconds=self._settings.invitation_ttl_seconds),
            now=now,
        )
        if invitation is None:
            # A concurrent request won between our checks and the guarded insert.
            current = self._repository.get_tenant(tenant_id)
            if current is None:
                raise NotFoundError("tenant not found")
            if not current.has_free_seat:
                INVITATIONS.labels(outcome="quota_exceeded").inc()
                raise QuotaExceededError("no seats available")
            INVITATIONS.labels(outcome="conflict").inc()
            raise ConflictError("invitation already sent to this email")

        INVITATIONS.labels(outcome="created").inc()
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_invite,
                actor_id=inviter.account_id,
                tenant_id=tenant_id,
                entity_type="invitation",
                entity_id=invitation.invitation_id,
                new_values={"email": email, "role": role.value},
                origin=origin or RequestOrigin(),
            )
        )

        delivery = self._deliver(
            InvitationNotice(
                to_email=email,
                inviter_name=inviter.display_name,
                tenant_name=tenant.name,
                role=role.value,
                invite_link=self.invite_link(invitation.token),
                expires_in_days=max(1, self._settings.invitation_ttl_seconds // 86400),
            )
        )
        return InvitationResult(invitation=invitation, delivery=delivery)

    def invite_link(self, token: str) -> str:
        return f"{self._settings.frontend_url.rstrip('/')}/invite/{token}"

    def _deliver(self, notice: InvitationNotice) -> DeliveryResult:
        try:
            return self._notifier.deliver_invitation(notice)
        except Exception as exc:
            logger.exception("invitation notifier raised for %s", redact_email(notice.to_email))
            return DeliveryResult(delivered=False, error=f"delivery failed: {type(exc).__name__}")

    def revoke(
        self,
        actor: AuthenticatedPrincipal,
        invitation_id: str,
        origin: RequestOrigin | None = None,
    ) -> Invitation:
        invitation = self._repository.get_invitation(invitation_id)
        if invitation is None:
            raise NotFoundError("invitation not found")
        if not can_manage_tenant(actor, invitation.tenant_id):
            raise ForbiddenError("access denied")

        revoked = self._repository.revoke_invitation(invitation_id)
        if revoked is None:
            raise NotFoundError("invitation is not pending")

        INVITATIONS.labels(outcome="revoked").inc()
        self._audit.record(
            AuditEntry(
                action=AuditAction.user_invite_revoke,
                actor_id=actor.account_id,
                tenant_id=revoked.tenant_id,
                entity_type="invitation",
                entity_id=revoked.invitation_id,
                old_values={"status": InvitationStatus.pending.value},
                new_values={"status": InvitationStatus.revoked.value},
                origin=origin or RequestOrigin(),
            )
        )
        return revoked

    def describe(self, token: str) -> InvitationDetails:
        """Public lookup used by the invite landing page."""
        details = self._repository.get_invitation_details(token)
        if details is None:
            raise NotFoundError("invitation not found")
        status = details.invitation.effective_status(self._clock())
        if status is EffectiveStatus.expired:
            raise ExpiredError("invitation expired")
        if status is not EffectiveStatus.pending:
            raise NotFoundError("invitation already used")
        return details

    def open_invitation_for(self, token: str, email: str) -> Invitation:
        """Return the open invitation behind ``token`` provided it targets ``email``."""
        details = self._repository.get_invitation_details(token)
        if details is None or not details.invitation.is_open(self._clock()):
            raise ValidationError("invalid or expired invitation", fields={"inviteToken": "invalid"})
        if details.invitation.email != normalize_email(email):
            raise ValidationError("email does not match invitation", fields={"email": "mismatch"})
        return details.invitation

    def latest_open_for_email(self, email: str) -> Invitation | None:
        return self._repository.latest_open_invitation_for_email(normalize_email(email), self._clock())

    def consume(self, invitation_id: str) -> Invitation:
        """Transition ``pending -> accepted``; a second call fails with ``NotFoundError``.

        This is the standalone form of the transition. Registration and
        external login get it from ``create_account``, which accepts the
        invitation in the same transaction as the account insert and the
        seat claim.
        """
        accepted = self._repository.accept_invitation(invitation_id, self._clock())
        if accepted is None:
            raise NotFoundError("invitation not found")
        INVITATIONS.labels(outcome="accepted").inc()
        return accepted

    def list_for_tenant(self, tenant_id: str) -> list[tuple[Invitation, EffectiveStatus]]:
        now = self._clock()
        return [
            (invitation, invitation.effective_status(now))
            for invitation in self._repository.list_invitations(tenant_id)
        ]
