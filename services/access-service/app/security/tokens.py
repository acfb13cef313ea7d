"""Issuing and verifying the service's stateless JWT credentials."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import jwt

from ..config import Settings
from ..domain.account import Account, Role
from ..domain.errors import InvalidTokenError, TokenExpiredError
from ..observability import TOKENS_ISSUED

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"


@dataclass(frozen=True, slots=True)
class TokenClaims:
    """Verified claim set extracted from a token."""

    kind: TokenKind
    account_id: str
    expires_at: int
    role: Role | None = None
    tenant_id: str | None = None
    generation: int | None = None


@dataclass(slots=True)
class TokenPair:
    """Encapsulates the access/refresh token pair returned to API consumers."""

    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int


class TokenManager:
    """Mints and verifies access and refresh tokens with per-kind secrets.

    Nothing is stored server-side; a refresh token stays usable until it
    expires or the account's token generation moves past the one it carries.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock

    def _secret(self, kind: TokenKind) -> str:
        if kind is TokenKind.access:
            return self._settings.jwt_access_secret
        return self._settings.jwt_refresh_secret

    def _ttl(self, kind: TokenKind) -> int:
        if kind is TokenKind.access:
            return self._settings.access_ttl_seconds
        return self._settings.refresh_ttl_seconds

    def _encode(self, kind: TokenKind, subject: str, extra: dict[str, Any]) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self._settings.jwt_issuer,
            "sub": subject,
            "typ": kind.value,
            "iat": now,
            "exp": now + self._ttl(kind),
            "jti": secrets.token_hex(8),
        }
        payload.update(extra)
        TOKENS_ISSUED.labels(kind=kind.value).inc()
        return jwt.encode(payload, self._secret(kind), algorithm=_ALGORITHM)

    def issue_access_token(self, account: Account) -> str:
        """Encode the account id, role and tenant with a short expiry."""
        return self._encode(
            TokenKind.access,
            account.account_id,
            {"role": account.role.value, "tenant_id": account.tenant_id},
        )

    def issue_refresh_token(self, account: Account) -> str:
        """Encode only the account id and its current token generation."""
        return self._encode(
            TokenKind.refresh,
            account.account_id,
            {"gen": account.token_generation},
        )

    def issue_token_pair(self, account: Account) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(account),
            access_expires_in=self._settings.access_ttl_seconds,
            refresh_token=self.issue_refresh_token(account),
            refresh_expires_in=self._settings.refresh_ttl_seconds,
        )

    def verify(self, token: str, kind: TokenKind) -> TokenClaims:
        """Check signature, issuer and expiry against the secret for ``kind``.

        Raises
        ------
        TokenExpiredError
            The token is well signed but past its expiry.
        InvalidTokenError
            The token is malformed, mis-signed, or of another kind.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret(kind),
                algorithms=[_ALGORITHM],
                issuer=self._settings.jwt_issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError("token expired") from exc
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("invalid token") from exc

        if payload.get("typ") != kind.value:
            raise InvalidTokenError("invalid token")

        try:
            if kind is TokenKind.access:
                return TokenClaims(
                    kind=kind,
                    account_id=str(payload["sub"]),
                    expires_at=int(payload["exp"]),
                    role=Role(payload["role"]),
                    tenant_id=payload.get("tenant_id"),
                )
            return TokenClaims(
                kind=kind,
                account_id=str(payload["sub"]),
                expires_at=int(payload["exp"]),
                generation=int(payload.get("gen", 0)),
            )
        except (KeyError, ValueError, TypeError) as exc:
            raise InvalidTokenError("invalid token") from exc

    def issue_oauth_state(self, provider: str) -> str:
        """Return a short-lived signed value binding an OAuth round-trip to ``provider``."""
        now = int(self._clock())
        payload = {
            "iss": self._settings.jwt_issuer,
            "typ": "oauth_state",
            "provider": provider,
            "nonce": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + self._settings.oauth_state_ttl_seconds,
        }
        return jwt.encode(payload, self._settings.jwt_access_secret, algorithm=_ALGORITHM)

    def verify_oauth_state(self, state: str, provider: str) -> None:
        try:
            payload = jwt.decode(
                state,
                self._settings.jwt_access_secret,
                algorithms=[_ALGORITHM],
                issuer=self._settings.jwt_issuer,
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("invalid oauth state") from exc
        if payload.get("typ") != "oauth_state" or payload.get("provider") != provider:
            raise InvalidTokenError("invalid oauth state")


def generate_invitation_token() -> str:
    """Return an opaque, URL-safe invitation token."""
    return secrets.token_urlsafe(24)
