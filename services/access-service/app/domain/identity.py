"""Resolution of external-identity logins into internal accounts."""

from __future__ import annotations

import logging
from typing import Callable

from ..notifications import redact_email
from ..observability import INVITATIONS
from .account import Account, Role, normalize_email
from .audit import AuditLogger
from .contracts import AuditAction, AuditEntry, CreateAccountInput, ExternalProfile, RequestOrigin, utcnow
from .errors import MissingRequiredAttributeError
from .invitations import InvitationService

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Finds or creates the account behind an external identity provider profile."""

    def __init__(
        self,
        repository,
        invitations: InvitationService,
        audit: AuditLogger,
        clock: Callable = utcnow,
    ) -> None:
        self._repository = repository
        self._invitations = invitations
        self._audit = audit
        self._clock = clock

    def resolve(self, profile: ExternalProfile, origin: RequestOrigin | None = None) -> Account:
        """Return the internal account for ``profile``.

        Lookup order: provider id, then email (linking the provider id), then
        a new account placed by the most recent open invitation for the
        email, if any. The invitation is accepted in the same write that
        creates the account.
        """
        email = normalize_email(profile.email or "")
        if not email:
            raise MissingRequiredAttributeError("identity provider returned no email")
        now = self._clock()

        account = self._repository.get_account_by_external_id(profile.provider, profile.external_id)
        if account is not None:
            self._repository.touch_last_login(account.account_id)
            account.last_login_at = now
            return account

        account = self._repository.get_account_by_email(email)
        if account is not None:
            logger.info(
                "linking %s identity to existing account %s",
                profile.provider.value,
                account.account_id,
            )
            return self._repository.link_external_identity(
                account.account_id, profile.provider, profile.external_id
            )

        invitation = self._invitations.latest_open_for_email(email)
        first_name, last_name = profile.split_name()
        account = self._repository.create_account(
            CreateAccountInput(
                email=email,
                role=invitation.role if invitation else Role.user,
                tenant_id=invitation.tenant_id if invitation else None,
                first_name=first_name,
                last_name=last_name,
                avatar_url=profile.avatar_url,
                external_ids={profile.provider: profile.external_id},
                email_verified=True,
                last_login_at=now,
            ),
            invitation_id=invitation.invitation_id if invitation else None,
            now=now,
        )
        logger.info(
            "created account %s for %s via %s",
            account.account_id,
            redact_email(email),
            profile.provider.value,
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
                    new_values={"role": invitation.role.value, "provider": profile.provider.value},
                    origin=origin or RequestOrigin(),
                )
            )
        return account
