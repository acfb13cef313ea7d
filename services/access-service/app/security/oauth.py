"""Authorization-code login against the supported external identity providers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from ..config import Settings
from ..domain.account import IdentityProvider
from ..domain.contracts import ExternalProfile
from ..domain.errors import NotFoundError, UnauthenticatedError

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(10.0)


def _google_profile(data: dict[str, Any]) -> ExternalProfile:
    return ExternalProfile(
        provider=IdentityProvider.google,
        external_id=str(data.get("sub") or ""),
        email=data.get("email"),
        given_name=data.get("given_name"),
        family_name=data.get("family_name"),
        display_name=data.get("name"),
        avatar_url=data.get("picture"),
    )


def _microsoft_profile(data: dict[str, Any]) -> ExternalProfile:
    return ExternalProfile(
        provider=IdentityProvider.microsoft,
        external_id=str(data.get("id") or ""),
        # personal accounts often have no mail attribute
        email=data.get("mail") or data.get("userPrincipalName"),
        given_name=data.get("givenName"),
        family_name=data.get("surname"),
        display_name=data.get("displayName"),
    )


@dataclass(frozen=True, slots=True)
class OAuthProvider:
    """Endpoints and credentials for one provider's authorization-code flow."""

    provider: IdentityProvider
    client_id: str
    client_secret: str
    callback_url: str
    authorize_url: str
    token_url: str
    profile_url: str
    scope: str
    map_profile: Callable[[dict[str, Any]], ExternalProfile]

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.callback_url)

    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.callback_url,
                "response_type": "code",
                "scope": self.scope,
                "state": state,
            }
        )
        return f"{self.authorize_url}?{query}"

    def fetch_profile(self, code: str, client: httpx.Client) -> ExternalProfile:
        """Exchange ``code`` for an access token and load the user's profile.

        Raises ``UnauthenticatedError`` when the provider rejects the exchange
        or is unreachable.
        """
        try:
            token_response = client.post(
                self.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.callback_url,
                },
                headers={"Accept": "application/json"},
            )
            token_response.raise_for_status()
            access_token = token_response.json().get("access_token")
            if not access_token:
                raise UnauthenticatedError("provider returned no access token")

            profile_response = client.get(
                self.profile_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            profile_response.raise_for_status()
            data = profile_response.json()
        except httpx.HTTPError as exc:
            logger.warning("%s oauth exchange failed: %s", self.provider.value, exc)
            raise UnauthenticatedError("external login failed") from exc
        except ValueError as exc:
            logger.warning("%s returned a malformed response: %s", self.provider.value, exc)
            raise UnauthenticatedError("external login failed") from exc

        profile = self.map_profile(data)
        if not profile.external_id:
            raise UnauthenticatedError("provider returned no subject identifier")
        return profile


def build_providers(settings: Settings) -> dict[IdentityProvider, OAuthProvider]:
    """Return the providers keyed by name; unconfigured ones are included but inert."""
    return {
        IdentityProvider.google: OAuthProvider(
            provider=IdentityProvider.google,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            callback_url=settings.google_callback_url,
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            profile_url="https://openidconnect.googleapis.com/v1/userinfo",
            scope="openid email profile",
            map_profile=_google_profile,
        ),
        IdentityProvider.microsoft: OAuthProvider(
            provider=IdentityProvider.microsoft,
            client_id=settings.microsoft_client_id,
            client_secret=settings.microsoft_client_secret,
            callback_url=settings.microsoft_callback_url,
            authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
            token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
            profile_url="https://graph.microsoft.com/v1.0/me",
            scope="openid email profile User.Read",
            map_profile=_microsoft_profile,
        ),
    }


def get_provider(providers: dict[IdentityProvider, OAuthProvider], name: str) -> OAuthProvider:
    """Look up a configured provider by its path name."""
    try:
        provider = providers[IdentityProvider(name)]
    except (KeyError, ValueError) as exc:
        raise NotFoundError(f"unknown identity provider: {name}") from exc
    if not provider.is_configured:
        raise NotFoundError(f"identity provider not configured: {name}")
    return provider


def default_http_client() -> httpx.Client:
    return httpx.Client(timeout=_TIMEOUT)
