"""Bearer-token authentication for protected requests."""

from __future__ import annotations

import logging
from typing import Protocol

from ..domain.account import Account, AuthenticatedPrincipal
from ..domain.errors import TokenExpiredError, UnauthenticatedError
from ..observability import AUTH_FAILURES
from .tokens import TokenKind, TokenManager

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


class AccountLookup(Protocol):
    def get_account(self, account_id: str) -> Account | None: ...


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX):].strip()
    return token or None


class AuthenticationGate:
    """Turns an inbound credential into a freshly loaded principal.

    Claims only establish identity: role, tenant and activation always come
    from the stored account, so changes apply before the token expires.
    """

    def __init__(self, tokens: TokenManager, accounts: AccountLookup) -> None:
        self._tokens = tokens
        self._accounts = accounts

    def authenticate(self, authorization: str | None) -> AuthenticatedPrincipal:
        token = extract_bearer(authorization)
        if token is None:
            AUTH_FAILURES.labels(reason="missing").inc()
            raise UnauthenticatedError("no token provided")

        try:
            claims = self._tokens.verify(token, TokenKind.access)
        except TokenExpiredError:
            AUTH_FAILURES.labels(reason="expired").inc()
            raise
        except UnauthenticatedError as exc:
            AUTH_FAILURES.labels(reason="invalid").inc()
            raise UnauthenticatedError("invalid token") from exc

        account = self._accounts.get_account(claims.account_id)
        if account is None or not account.active:
            AUTH_FAILURES.labels(reason="inactive").inc()
            logger.info("rejecting token for unavailable account %s", claims.account_id)
            raise UnauthenticatedError("account not found or inactive")
        return AuthenticatedPrincipal.from_account(account)
