from __future__ import annotations

from datetime import datetime, timezone

import jwt
import pytest

from app.domain.account import Account, Role
from app.domain.errors import InvalidTokenError, TokenExpiredError
from app.security.tokens import TokenKind, TokenManager, generate_invitation_token

from conftest import ACCESS_SECRET, REFRESH_SECRET, make_settings


class FrozenClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _account(role: Role, tenant_id: str | None, generation: int = 0) -> Account:
    return Account(
        account_id="acct-1",
        email="person@example.com",
        role=role,
        tenant_id=tenant_id,
        created_at=datetime.now(timezone.utc),
        token_generation=generation,
    )


@pytest.mark.parametrize(
    ("role", "tenant_id"),
    [
        (Role.user, "tenant-1"),
        (Role.company_admin, "tenant-2"),
        (Role.super_admin, None),
    ],
)
def test_access_token_round_trip(tokens, role, tenant_id):
    account = _account(role, tenant_id)
    claims = tokens.verify(tokens.issue_access_token(account), TokenKind.access)
    assert claims.account_id == "acct-1"
    assert claims.role is role
    assert claims.tenant_id == tenant_id


def test_refresh_token_carries_generation_only(tokens):
    token = tokens.issue_refresh_token(_account(Role.company_admin, "tenant-1", generation=3))
    claims = tokens.verify(token, TokenKind.refresh)
    assert claims.account_id == "acct-1"
    assert claims.generation == 3
    assert claims.role is None

    raw = jwt.decode(token, REFRESH_SECRET, algorithms=["HS256"], options={"verify_iss": False})
    assert "role" not in raw
    assert "tenant_id" not in raw


def test_access_and_refresh_tokens_use_distinct_secrets(tokens):
    account = _account(Role.user, "tenant-1")
    with pytest.raises(InvalidTokenError):
        tokens.verify(tokens.issue_access_token(account), TokenKind.refresh)
    with pytest.raises(InvalidTokenError):
        tokens.verify(tokens.issue_refresh_token(account), TokenKind.access)


def test_expired_token_is_distinguished_from_invalid():
    clock = FrozenClock(1_700_000_000)
    manager = TokenManager(make_settings(access_ttl_seconds=60), clock=clock)
    token = manager.issue_access_token(_account(Role.user, "tenant-1"))

    clock.now += 61
    with pytest.raises(TokenExpiredError) as excinfo:
        manager.verify(token, TokenKind.access)
    assert excinfo.value.code == "TOKEN_EXPIRED"


def test_expired_token_with_bad_signature_is_invalid():
    clock = FrozenClock(1_700_000_000)
    manager = TokenManager(make_settings(access_ttl_seconds=60), clock=clock)
    token = manager.issue_access_token(_account(Role.user, "tenant-1"))
    tampered = token[:-4] + ("aaaa" if not token.endswith("aaaa") else "bbbb")

    clock.now += 61
    with pytest.raises(InvalidTokenError):
        manager.verify(tampered, TokenKind.access)


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
def test_malformed_tokens_are_invalid(tokens, token):
    with pytest.raises(InvalidTokenError):
        tokens.verify(token, TokenKind.access)


def test_token_signed_with_foreign_secret_is_invalid(tokens):
    foreign = jwt.encode(
        {"sub": "acct-1", "typ": "access", "iat": 1, "exp": 4_000_000_000, "iss": "access.identity", "role": "user"},
        "some-other-secret-0123456789abcdef",
        algorithm="HS256",
    )
    with pytest.raises(InvalidTokenError):
        tokens.verify(foreign, TokenKind.access)


def test_unknown_role_claim_is_invalid(tokens):
    forged = jwt.encode(
        {"sub": "acct-1", "typ": "access", "iat": 1, "exp": 4_000_000_000, "iss": "access.identity", "role": "root"},
        ACCESS_SECRET,
        algorithm="HS256",
    )
    with pytest.raises(InvalidTokenError):
        tokens.verify(forged, TokenKind.access)


def test_oauth_state_is_bound_to_provider(tokens):
    state = tokens.issue_oauth_state("google")
    tokens.verify_oauth_state(state, "google")
    with pytest.raises(InvalidTokenError):
        tokens.verify_oauth_state(state, "microsoft")


def test_equal_secrets_are_rejected():
    with pytest.raises(ValueError):
        make_settings(jwt_access_secret="same-secret-0123456789abcdef0123", jwt_refresh_secret="same-secret-0123456789abcdef0123")


def test_invitation_tokens_are_unique_and_url_safe():
    issued = {generate_invitation_token() for _ in range(50)}
    assert len(issued) == 50
    assert all("/" not in token and "+" not in token for token in issued)
