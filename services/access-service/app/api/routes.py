"""HTTP routes for sign-in, sessions, invitations and team management."""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from ..domain.account import AuthenticatedPrincipal
from ..domain.contracts import RequestOrigin
from ..domain.errors import AccessError, ValidationError
from ..domain.invitation import EffectiveStatus
from ..domain.invitations import InvitationService
from ..domain.service import AccountService, RegistrationInput
from ..security.oauth import get_provider
from .dependencies import (
    get_account_service,
    get_admin,
    get_invitation_service,
    get_origin,
    get_principal,
    get_tenant_scope,
    rate_limited,
)
from .schemas import (
    AccountResponse,
    InvitationPreview,
    InvitationResponse,
    InviteRequest,
    InviteResponse,
    LoginRequest,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    RevokeSessionsResponse,
    TenantSummary,
    TokenResponse,
    UpdateProfileRequest,
    UpdateRoleRequest,
    UpdateStatusRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


def _require_tenant(tenant_id: str | None) -> str:
    # a super admin acting on "all tenants" must name one for tenant-bound writes
    if tenant_id is None:
        raise ValidationError("tenantId is required", fields={"tenantId": "required"})
    return tenant_id


# -- authentication -----------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited("register"))],
)
def register(
    payload: RegisterRequest,
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> TokenResponse:
    account, pair = service.register(
        RegistrationInput(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            invite_token=payload.invite_token,
        ),
        origin,
    )
    return TokenResponse.from_pair(pair, account)


@router.post("/auth/login", response_model=TokenResponse, dependencies=[Depends(rate_limited("login"))])
def login(
    payload: LoginRequest,
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> TokenResponse:
    account, pair = service.login(payload.email, payload.password, origin)
    return TokenResponse.from_pair(pair, account)


@router.post("/auth/refresh", response_model=TokenResponse, dependencies=[Depends(rate_limited("refresh"))])
def refresh(
    payload: RefreshRequest,
    service: AccountService = Depends(get_account_service),
) -> TokenResponse:
    """Exchange a refresh token; expiry is reported with the ``TOKEN_EXPIRED`` code."""
    return TokenResponse.from_pair(service.refresh(payload.refresh_token))


@router.get("/auth/me", response_model=ProfileResponse)
def me(
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
) -> ProfileResponse:
    account, tenant = service.get_profile(principal)
    return ProfileResponse(
        **AccountResponse.from_domain(account).model_dump(),
        tenant=TenantSummary.from_domain(tenant) if tenant else None,
    )


@router.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> None:
    service.logout(principal, origin)


@router.post("/auth/sessions/revoke", response_model=RevokeSessionsResponse)
def revoke_sessions(
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> RevokeSessionsResponse:
    """Invalidate every refresh token issued to the caller so far."""
    return RevokeSessionsResponse(token_generation=service.revoke_sessions(principal, origin))


@router.get(
    "/auth/invite/{token}",
    response_model=InvitationPreview,
    dependencies=[Depends(rate_limited("invite-validate"))],
)
def describe_invitation(
    token: str,
    invitations: InvitationService = Depends(get_invitation_service),
) -> InvitationPreview:
    return InvitationPreview.from_domain(invitations.describe(token))


@router.get("/auth/{provider}")
def oauth_start(provider: str, request: Request) -> RedirectResponse:
    """Send the browser to the provider's consent screen."""
    selected = get_provider(request.app.state.oauth_providers, provider)
    state = request.app.state.tokens.issue_oauth_state(selected.provider.value)
    return RedirectResponse(selected.authorization_url(state), status_code=status.HTTP_302_FOUND)


@router.get("/auth/{provider}/callback")
def oauth_callback(
    provider: str,
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> RedirectResponse:
    """Finish the provider round-trip and hand tokens to the frontend."""
    frontend = request.app.state.settings.frontend_url.rstrip("/")
    try:
        if error or not code or not state:
            raise ValidationError(f"provider returned no code: {error or 'missing'}")
        selected = get_provider(request.app.state.oauth_providers, provider)
        request.app.state.tokens.verify_oauth_state(state, selected.provider.value)
        profile = selected.fetch_profile(code, request.app.state.http_client)
        _, pair = service.login_external(profile, origin)
    except AccessError as exc:
        logger.warning("oauth login via %s failed: %s", provider, exc.message)
        return RedirectResponse(f"{frontend}/login?error=oauth_failed", status_code=status.HTTP_302_FOUND)

    query = urlencode({"accessToken": pair.access_token, "refreshToken": pair.refresh_token})
    return RedirectResponse(f"{frontend}/auth/callback?{query}", status_code=status.HTTP_302_FOUND)


# -- team management ----------------------------------------------------------


@router.get("/users", response_model=list[AccountResponse])
def list_users(
    search: str | None = Query(default=None, max_length=100),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _admin: AuthenticatedPrincipal = Depends(get_admin),
    tenant_id: str | None = Depends(get_tenant_scope),
    service: AccountService = Depends(get_account_service),
) -> list[AccountResponse]:
    accounts = service.list_accounts(tenant_id, search=search, limit=limit, offset=offset)
    return [AccountResponse.from_domain(account) for account in accounts]


@router.post("/users/invite", response_model=InviteResponse, status_code=status.HTTP_201_CREATED)
def invite_user(
    payload: InviteRequest,
    admin: AuthenticatedPrincipal = Depends(get_admin),
    tenant_id: str | None = Depends(get_tenant_scope),
    invitations: InvitationService = Depends(get_invitation_service),
    origin: RequestOrigin = Depends(get_origin),
) -> InviteResponse:
    """Invite an email to the tenant; a failed email does not undo the invitation."""
    result = invitations.create(admin, _require_tenant(tenant_id), payload.email, payload.role, origin)
    return InviteResponse(
        invitation=InvitationResponse.from_domain(result.invitation, EffectiveStatus.pending),
        invite_link=invitations.invite_link(result.invitation.token),
        email_sent=result.delivery.delivered,
        email_error=result.delivery.error,
    )


@router.get("/users/invitations", response_model=list[InvitationResponse])
def list_invitations(
    _admin: AuthenticatedPrincipal = Depends(get_admin),
    tenant_id: str | None = Depends(get_tenant_scope),
    invitations: InvitationService = Depends(get_invitation_service),
) -> list[InvitationResponse]:
    return [
        InvitationResponse.from_domain(invitation, effective)
        for invitation, effective in invitations.list_for_tenant(_require_tenant(tenant_id))
    ]


@router.delete("/users/invitations/{invitation_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_invitation(
    invitation_id: str,
    admin: AuthenticatedPrincipal = Depends(get_admin),
    invitations: InvitationService = Depends(get_invitation_service),
    origin: RequestOrigin = Depends(get_origin),
) -> None:
    invitations.revoke(admin, invitation_id, origin)


@router.get("/users/{account_id}", response_model=AccountResponse)
def get_user(
    account_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    return AccountResponse.from_domain(service.get_account(principal, account_id))


@router.put("/users/{account_id}", response_model=AccountResponse)
def update_user_profile(
    account_id: str,
    payload: UpdateProfileRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> AccountResponse:
    changes = payload.model_dump(mode="json", exclude_unset=True)
    return AccountResponse.from_domain(service.update_profile(principal, account_id, changes, origin))


@router.put("/users/{account_id}/status", response_model=AccountResponse)
def update_user_status(
    account_id: str,
    payload: UpdateStatusRequest,
    admin: AuthenticatedPrincipal = Depends(get_admin),
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> AccountResponse:
    return AccountResponse.from_domain(service.set_active(admin, account_id, payload.active, origin))


@router.put("/users/{account_id}/role", response_model=AccountResponse)
def update_user_role(
    account_id: str,
    payload: UpdateRoleRequest,
    admin: AuthenticatedPrincipal = Depends(get_admin),
    service: AccountService = Depends(get_account_service),
    origin: RequestOrigin = Depends(get_origin),
) -> AccountResponse:
    return AccountResponse.from_domain(service.set_role(admin, account_id, payload.role, origin))
