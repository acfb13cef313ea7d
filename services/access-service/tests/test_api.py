from __future__ import annotations

import time

import jwt
import pytest

from app.domain.account import Role
from app.domain.invitation import InvitationStatus
from app.security.rate_limiter import SlidingWindowRateLimiter
from app.security.tokens import TokenKind

from conftest import REFRESH_SECRET, bearer, seed_account, seed_invitation, seed_tenant


@pytest.fixture
def acme(repository):
    tenant = seed_tenant(repository, "Acme", seats=3)
    admin = seed_account(
        repository, "boss@example.com", role=Role.company_admin, tenant=tenant, first_name="Ada", last_name="Boss"
    )
    return tenant, admin


def _register(client, email="new@example.com", password="long-enough-pw", **extra):
    body = {"email": email, "password": password, "firstName": "New", "lastName": "Person"}
    body.update(extra)
    return client.post("/v1/auth/register", json=body)


def test_register_without_invitation(client, repository):
    response = _register(client)
    assert response.status_code == 201
    data = response.json()
    assert data["accessToken"]
    assert data["refreshToken"]
    assert data["tokenType"] == "bearer"
    assert data["user"]["tenantId"] is None
    assert data["user"]["role"] == "user"
    assert data["user"]["emailVerified"] is False
    assert repository.actions() == ["user.register"]


def test_register_with_invitation_joins_tenant(client, repository, acme):
    tenant, admin = acme
    invitation = seed_invitation(repository, tenant, admin, "new@example.com", role=Role.company_admin)

    response = _register(client, inviteToken=invitation.token)

    assert response.status_code == 201
    user = response.json()["user"]
    assert user["tenantId"] == tenant.tenant_id
    assert user["role"] == "company_admin"
    assert user["emailVerified"] is True
    assert repository.get_invitation(invitation.invitation_id).status is InvitationStatus.accepted
    assert repository.get_tenant(tenant.tenant_id).seats_used == 2
    assert repository.actions() == ["user.register", "user.invite_accept"]


def test_register_rejects_invitation_for_other_email(client, repository, acme):
    tenant, admin = acme
    invitation = seed_invitation(repository, tenant, admin, "invited@example.com")

    response = _register(client, email="intruder@example.com", inviteToken=invitation.token)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert repository.get_account_by_email("intruder@example.com") is None


def test_register_rejects_duplicates_and_short_passwords(client, repository):
    seed_account(repository, "taken@example.com")
    assert _register(client, email="taken@example.com").status_code == 409

    short = _register(client, email="short@example.com", password="abc")
    assert short.status_code == 400
    assert short.json()["fields"] == {"password": "must be at least 8 characters"}


def test_request_body_errors_are_reported_as_validation_errors(client):
    response = client.post("/v1/auth/login", json={"email": "not-an-email"})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "password" in body["fields"]


def test_login_flow(client, repository):
    account = seed_account(repository, "member@example.com", password="s3cret-pass")

    ok = client.post("/v1/auth/login", json={"email": "Member@Example.com", "password": "s3cret-pass"})
    assert ok.status_code == 200
    assert ok.json()["user"]["id"] == account.account_id
    assert repository.get_account(account.account_id).last_login_at is not None

    bad = client.post("/v1/auth/login", json={"email": "member@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401
    assert bad.json() == {"detail": "invalid credentials", "code": "UNAUTHENTICATED"}

    unknown = client.post("/v1/auth/login", json={"email": "nobody@example.com", "password": "whatever"})
    assert unknown.status_code == 401

    repository.set_account_active(account.account_id, False)
    inactive = client.post("/v1/auth/login", json={"email": "member@example.com", "password": "s3cret-pass"})
    assert inactive.status_code == 401


def test_refresh_reflects_current_role_and_tenant(client, repository, tokens, acme):
    tenant, _ = acme
    account = seed_account(repository, "member@example.com")
    refresh_token = tokens.issue_refresh_token(account)

    repository.set_account_role(account.account_id, Role.company_admin)
    repository.accounts[account.account_id].tenant_id = tenant.tenant_id

    response = client.post("/v1/auth/refresh", json={"refreshToken": refresh_token})
    assert response.status_code == 200
    claims = tokens.verify(response.json()["accessToken"], TokenKind.access)
    assert claims.role is Role.company_admin
    assert claims.tenant_id == tenant.tenant_id


def test_refresh_distinguishes_expired_from_invalid(client, repository, settings):
    account = seed_account(repository, "member@example.com")
    now = int(time.time())
    expired = jwt.encode(
        {
            "iss": settings.jwt_issuer,
            "sub": account.account_id,
            "typ": "refresh",
            "gen": 0,
            "iat": now - 3600,
            "exp": now - 60,
        },
        REFRESH_SECRET,
        algorithm="HS256",
    )

    response = client.post("/v1/auth/refresh", json={"refreshToken": expired})
    assert response.status_code == 401
    assert response.json()["code"] == "TOKEN_EXPIRED"

    garbage = client.post("/v1/auth/refresh", json={"refreshToken": "garbage"})
    assert garbage.status_code == 401
    assert garbage.json()["code"] == "INVALID_TOKEN"


def test_revoking_sessions_invalidates_refresh_tokens(client, repository, tokens):
    account = seed_account(repository, "member@example.com")
    refresh_token = tokens.issue_refresh_token(account)

    revoke = client.post("/v1/auth/sessions/revoke", headers=bearer(tokens, account))
    assert revoke.status_code == 200
    assert revoke.json() == {"tokenGeneration": 1}

    response = client.post("/v1/auth/refresh", json={"refreshToken": refresh_token})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


def test_me_requires_a_token_and_returns_tenant(client, repository, tokens, acme):
    tenant, admin = acme
    assert client.get("/v1/auth/me").status_code == 401

    response = client.get("/v1/auth/me", headers=bearer(tokens, admin))
    assert response.status_code == 200
    body = response.json()
    assert body["email"] == "boss@example.com"
    assert body["tenant"]["id"] == tenant.tenant_id
    assert body["tenant"]["seatsPurchased"] == 3


def test_logout_is_audited(client, repository, tokens):
    account = seed_account(repository, "member@example.com")
    assert client.post("/v1/auth/logout", headers=bearer(tokens, account)).status_code == 204
    assert repository.actions() == ["user.logout"]


def test_invite_describe_and_register(client, repository, tokens, notifier, acme):
    tenant, admin = acme
    response = client.post("/v1/users/invite", json={"email": "guest@example.com"}, headers=bearer(tokens, admin))
    assert response.status_code == 201
    body = response.json()
    assert body["emailSent"] is True
    assert body["invitation"]["status"] == "pending"
    assert body["invitation"]["tenantId"] == tenant.tenant_id
    token = notifier.sent[0].invite_link.rsplit("/", 1)[-1]
    assert body["inviteLink"].endswith(token)

    preview = client.get(f"/v1/auth/invite/{token}")
    assert preview.status_code == 200
    assert preview.json() == {
        "email": "guest@example.com",
        "role": "user",
        "tenantName": "Acme",
        "inviterName": "Ada Boss",
        "expiresAt": preview.json()["expiresAt"],
    }

    assert _register(client, email="guest@example.com", inviteToken=token).status_code == 201
    used = client.get(f"/v1/auth/invite/{token}")
    assert used.status_code == 404


def test_invite_into_another_tenant_is_forbidden(client, repository, tokens, acme):
    _, admin = acme
    other = seed_tenant(repository, "Other")
    response = client.post(
        "/v1/users/invite",
        json={"email": "guest@example.com", "tenantId": other.tenant_id},
        headers=bearer(tokens, admin),
    )
    assert response.status_code == 403


def test_invite_requires_admin(client, repository, tokens, acme):
    tenant, _ = acme
    member = seed_account(repository, "member@example.com", tenant=tenant)
    response = client.post("/v1/users/invite", json={"email": "guest@example.com"}, headers=bearer(tokens, member))
    assert response.status_code == 403


def test_invite_when_tenant_is_full(client, repository, tokens):
    tenant = seed_tenant(repository, "Tiny", seats=1)
    admin = seed_account(repository, "solo@example.com", role=Role.company_admin, tenant=tenant)
    response = client.post("/v1/users/invite", json={"email": "guest@example.com"}, headers=bearer(tokens, admin))
    assert response.status_code == 409
    assert response.json()["code"] == "QUOTA_EXCEEDED"


def test_super_admin_must_name_tenant_for_invites(client, repository, tokens, acme):
    tenant, _ = acme
    root = seed_account(repository, "root@example.com", role=Role.super_admin)
    missing = client.post("/v1/users/invite", json={"email": "guest@example.com"}, headers=bearer(tokens, root))
    assert missing.status_code == 400

    named = client.post(
        "/v1/users/invite",
        json={"email": "guest@example.com", "tenantId": tenant.tenant_id},
        headers=bearer(tokens, root),
    )
    assert named.status_code == 201


def test_list_and_revoke_invitations(client, repository, tokens, acme):
    tenant, admin = acme
    invitation = seed_invitation(repository, tenant, admin, "guest@example.com")
    headers = bearer(tokens, admin)

    listed = client.get("/v1/users/invitations", headers=headers)
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [invitation.invitation_id]

    assert client.delete(f"/v1/users/invitations/{invitation.invitation_id}", headers=headers).status_code == 204
    assert client.delete(f"/v1/users/invitations/{invitation.invitation_id}", headers=headers).status_code == 404
    assert client.get("/v1/users/invitations", headers=headers).json()[0]["status"] == "revoked"


def test_team_listing_is_tenant_scoped(client, repository, tokens, acme):
    tenant, admin = acme
    seed_account(repository, "member@example.com", tenant=tenant)
    other = seed_tenant(repository, "Other")
    outsider = seed_account(repository, "outsider@example.com", tenant=other)

    response = client.get("/v1/users", headers=bearer(tokens, admin))
    assert response.status_code == 200
    assert {item["email"] for item in response.json()} == {"boss@example.com", "member@example.com"}

    assert client.get("/v1/users", params={"tenantId": other.tenant_id}, headers=bearer(tokens, admin)).status_code == 403
    assert client.get(f"/v1/users/{outsider.account_id}", headers=bearer(tokens, admin)).status_code == 403


def test_user_sees_self_but_not_teammates(client, repository, tokens, acme):
    tenant, admin = acme
    member = seed_account(repository, "member@example.com", tenant=tenant)
    assert client.get(f"/v1/users/{member.account_id}", headers=bearer(tokens, member)).status_code == 200
    assert client.get(f"/v1/users/{admin.account_id}", headers=bearer(tokens, member)).status_code == 403
    assert client.get("/v1/users", headers=bearer(tokens, member)).status_code == 403


def test_member_edits_own_profile(client, repository, tokens, acme):
    tenant, _ = acme
    member = seed_account(repository, "member@example.com", tenant=tenant)

    response = client.put(
        f"/v1/users/{member.account_id}",
        json={"firstName": "  Grace ", "avatarUrl": "https://img.example.com/grace.png"},
        headers=bearer(tokens, member),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["firstName"] == "Grace"
    assert data["lastName"] == "User"
    assert data["avatarUrl"] == "https://img.example.com/grace.png"

    record = repository.audit_log[-1]
    assert record.action == "user.update"
    assert record.actor_id == member.account_id
    assert record.old_values == {"first_name": "Test", "avatar_url": None}
    assert record.new_values == {"first_name": "Grace", "avatar_url": "https://img.example.com/grace.png"}


def test_profile_edit_permissions(client, repository, tokens, acme):
    tenant, admin = acme
    member = seed_account(repository, "member@example.com", tenant=tenant)
    globex = seed_tenant(repository, "Globex")
    outsider_admin = seed_account(repository, "other@example.com", role=Role.company_admin, tenant=globex)

    assert client.put(
        f"/v1/users/{admin.account_id}", json={"lastName": "Hacked"}, headers=bearer(tokens, member)
    ).status_code == 403
    assert client.put(
        f"/v1/users/{member.account_id}", json={"lastName": "Hacked"}, headers=bearer(tokens, outsider_admin)
    ).status_code == 403
    assert repository.get_account(admin.account_id).last_name == "Boss"

    edited = client.put(f"/v1/users/{member.account_id}", json={"lastName": "Hopper"}, headers=bearer(tokens, admin))
    assert edited.status_code == 200
    assert repository.get_account(member.account_id).last_name == "Hopper"
    assert repository.actions() == ["user.update"]


def test_profile_edit_rejects_empty_and_blank_updates(client, repository, tokens):
    account = seed_account(repository, "solo@example.com")
    headers = bearer(tokens, account)

    empty = client.put(f"/v1/users/{account.account_id}", json={}, headers=headers)
    assert empty.status_code == 400
    assert empty.json()["code"] == "VALIDATION_ERROR"

    blank = client.put(f"/v1/users/{account.account_id}", json={"firstName": "   "}, headers=headers)
    assert blank.status_code == 400
    assert blank.json()["fields"] == {"firstName": "blank"}

    bad_url = client.put(f"/v1/users/{account.account_id}", json={"avatarUrl": "not a url"}, headers=headers)
    assert bad_url.status_code == 400

    assert repository.get_account(account.account_id).first_name == "Test"
    assert repository.audit_log == []


def test_status_and_role_changes(client, repository, tokens, acme):
    tenant, admin = acme
    member = seed_account(repository, "member@example.com", tenant=tenant)
    headers = bearer(tokens, admin)

    deactivated = client.put(f"/v1/users/{member.account_id}/status", json={"active": False}, headers=headers)
    assert deactivated.status_code == 200
    assert deactivated.json()["active"] is False
    assert repository.get_account(member.account_id).token_generation == 1

    assert client.put(f"/v1/users/{admin.account_id}/status", json={"active": False}, headers=headers).status_code == 400

    promoted = client.put(f"/v1/users/{member.account_id}/role", json={"role": "company_admin"}, headers=headers)
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "company_admin"

    escalate = client.put(f"/v1/users/{member.account_id}/role", json={"role": "super_admin"}, headers=headers)
    assert escalate.status_code == 400
    assert repository.actions() == ["user.update", "user.update"]


def test_tenant_administration(client, repository, tokens, acme):
    tenant, admin = acme
    root = seed_account(repository, "root@example.com", role=Role.super_admin)
    root_headers = bearer(tokens, root)

    assert client.post("/v1/tenants", json={"name": "Globex"}, headers=bearer(tokens, admin)).status_code == 403

    created = client.post("/v1/tenants", json={"name": "Acme"}, headers=root_headers)
    assert created.status_code == 201
    assert created.json()["seatsPurchased"] == 5
    assert created.json()["slug"].startswith("acme-")

    assert client.get(f"/v1/tenants/{tenant.tenant_id}", headers=bearer(tokens, admin)).status_code == 200
    assert client.get(f"/v1/tenants/{created.json()['id']}", headers=bearer(tokens, admin)).status_code == 403

    renamed = client.put(f"/v1/tenants/{tenant.tenant_id}", json={"name": "Acme Corp"}, headers=bearer(tokens, admin))
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Acme Corp"

    too_few = client.put(f"/v1/tenants/{tenant.tenant_id}/seats", json={"seatsPurchased": 0}, headers=root_headers)
    assert too_few.status_code == 400
    seed_account(repository, "member@example.com", tenant=tenant)
    below = client.put(f"/v1/tenants/{tenant.tenant_id}/seats", json={"seatsPurchased": 1}, headers=root_headers)
    assert below.status_code == 400

    grown = client.put(
        f"/v1/tenants/{tenant.tenant_id}/seats",
        json={"seatsPurchased": 10, "subscriptionStatus": "trial"},
        headers=root_headers,
    )
    assert grown.status_code == 200
    assert grown.json()["subscriptionStatus"] == "trial"

    assert client.delete(f"/v1/tenants/{tenant.tenant_id}", headers=root_headers).status_code == 204
    assert repository.get_account(admin.account_id) is None
    assert client.get(f"/v1/tenants/{tenant.tenant_id}", headers=root_headers).status_code == 404
    assert "company.delete" in repository.actions()


def test_audit_log_endpoint_returns_paginated_entries(client, repository, tokens, acme):
    tenant, admin = acme
    headers = bearer(tokens, admin)
    for idx in range(5):
        client.post("/v1/users/invite", json={"email": f"guest{idx}@example.com"}, headers=headers)

    other = seed_tenant(repository, "Other")
    root = seed_account(repository, "root@example.com", role=Role.super_admin)
    client.put(f"/v1/tenants/{other.tenant_id}", json={"name": "Other Co"}, headers=bearer(tokens, root))

    resp = client.get("/v1/audit/logs", params={"limit": 3}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["items"]) == 3
    assert body["nextCursor"]
    assert all(entry["tenantId"] == tenant.tenant_id for entry in body["items"])
    assert body["items"][0]["action"] == "user.invite"
    assert body["items"][0]["ipAddress"] == "testclient"

    next_resp = client.get("/v1/audit/logs", params={"cursor": body["nextCursor"], "limit": 3}, headers=headers)
    assert next_resp.status_code == 200
    assert len(next_resp.json()["items"]) == 2
    seen = {entry["id"] for entry in body["items"]} | {entry["id"] for entry in next_resp.json()["items"]}
    assert len(seen) == 5

    filtered = client.get("/v1/audit/logs", params={"accountId": "non-existent"}, headers=headers)
    assert filtered.status_code == 200
    assert filtered.json()["items"] == []

    everything = client.get("/v1/audit/logs", headers=bearer(tokens, root))
    assert {entry["action"] for entry in everything.json()["items"]} == {"user.invite", "company.update"}

    assert client.get("/v1/audit/logs", params={"tenantId": other.tenant_id}, headers=headers).status_code == 403


def test_audit_log_endpoint_rejects_bad_cursor(client, tokens, acme):
    _, admin = acme
    resp = client.get("/v1/audit/logs", params={"cursor": "not-valid"}, headers=bearer(tokens, admin))
    assert resp.status_code == 400
    assert resp.json()["fields"] == {"cursor": "malformed"}


def test_login_endpoint_respects_rate_limits(client, app, repository):
    app.state.rate_limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60)
    seed_account(repository, "member@example.com", password="s3cret-pass")
    payload = {"email": "member@example.com", "password": "wrong-pass"}

    first = client.post("/v1/auth/login", json=payload)
    second = client.post("/v1/auth/login", json=payload)
    third = client.post("/v1/auth/login", json=payload)

    assert first.status_code == 401
    assert second.status_code == 401
    assert third.status_code == 429
    assert third.json()["code"] == "RATE_LIMITED"
    assert 1 <= int(third.headers["Retry-After"]) <= 60
