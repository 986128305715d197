"""
auth/oauth.py -- OAuth/OIDC providers for federated login.

build_registry() registers every provider whose client credentials are set
with an authlib OAuth registry; `oauth` is the one the app uses, built from
get_settings() at import. get_enabled_providers() reads the same table, so
the login page never shows a button the registry cannot serve.

OAuthIdentityProvider turns the token authlib hands the callback into a
FederatedIdentity for FederatedLoginCoordinator.

Security notes:
  [H1] Only a verified email is accepted. An unverified address on the
       provider side could be one an attacker typed in for somebody else.
       exchange_token() raises ValueError and the coordinator reports
       ProviderExchangeFailed.

  The OAuth state parameter (CSRF) rides in Starlette's SessionMiddleware
  between the redirect and the callback; authlib checks it.

Providers:
  github -- static endpoints; the email comes from GET /user/emails
  google -- OIDC discovery
  oidc   -- any OIDC discovery URL (Okta, Azure AD, Keycloak, Authentik, ...)

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import NamedTuple

from authlib.integrations.starlette_client import OAuth

from auth.models import FederatedIdentity
from core.config import Settings, get_settings

logger = logging.getLogger("gatehouse.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"

_GITHUB_ENDPOINTS = {
    "access_token_url": "https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
    "authorize_url": "https://github.com/login/oauth/authorize",
    "api_base_url": "https://api.github.com/",
    "client_kwargs": {"scope": "read:user user:email"},
}
_OIDC_CLIENT_KWARGS = {"scope": "openid email profile"}


class _ProviderConfig(NamedTuple):
    name: str
    label: str
    client_id: str
    client_secret: str
    endpoints: dict


def _configured_providers(cfg: Settings) -> list[_ProviderConfig]:
    """Providers with complete credentials, in login-page order."""
    found: list[_ProviderConfig] = []
    if cfg.github_client_id and cfg.github_client_secret:
        found.append(
            _ProviderConfig("github", "GitHub", cfg.github_client_id, cfg.github_client_secret, _GITHUB_ENDPOINTS)
        )
    if cfg.google_client_id and cfg.google_client_secret:
        google = {"server_metadata_url": GOOGLE_DISCOVERY_URL, "client_kwargs": _OIDC_CLIENT_KWARGS}
        found.append(_ProviderConfig("google", "Google", cfg.google_client_id, cfg.google_client_secret, google))
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        oidc = {"server_metadata_url": cfg.oidc_discovery_url, "client_kwargs": _OIDC_CLIENT_KWARGS}
        found.append(
            _ProviderConfig("oidc", cfg.oidc_display_name, cfg.oidc_client_id, cfg.oidc_client_secret, oidc)
        )
    return found


def build_registry(cfg: Settings) -> OAuth:
    registry = OAuth()
    for provider in _configured_providers(cfg):
        registry.register(
            name=provider.name,
            client_id=provider.client_id,
            client_secret=provider.client_secret,
            **provider.endpoints,
        )
        logger.info("OAuth provider %r registered (%s)", provider.name, provider.label)
    return registry


oauth = build_registry(get_settings())


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every configured OAuth provider."""
    return [{"name": p.name, "label": p.label} for p in _configured_providers(get_settings())]


# ---------------------------------------------------------------------------
# Identity exchange
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderToken:
    """What the OAuth callback hands to federated login: provider name + authlib token dict."""

    provider: str
    token: dict


class OAuthIdentityProvider:
    """Identity-federation provider over an authlib OAuth registry."""

    def __init__(self, registry: OAuth) -> None:
        self._registry = registry

    async def exchange_token(self, provider_token: ProviderToken) -> FederatedIdentity:
        """Normalize a provider token response into a FederatedIdentity.

        Raises ValueError if a verified email cannot be confirmed [H1] or the
        provider is unknown.
        """
        provider = provider_token.provider
        if provider == "github":
            client = self._registry.create_client("github")
            if client is None:
                raise ValueError("GitHub OAuth is not configured")
            return await _github_identity(client, provider_token.token)
        if provider in ("google", "oidc"):
            return _oidc_identity(provider, provider_token.token)
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _github_identity(client, token: dict) -> FederatedIdentity:
    """GitHub keeps the email out of the token: GET /user, then GET /user/emails.

    [H1] Only the entry with primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    email = next(
        (entry["email"] for entry in emails_resp.json() if entry.get("primary") and entry.get("verified")),
        None,
    )
    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )
    return FederatedIdentity(
        provider="github",
        provider_subject_id=str(profile["id"]),
        email=email,
        display_name=profile.get("name") or profile.get("login"),
        photo_ref=profile.get("avatar_url"),
    )


def _oidc_identity(provider: str, token: dict) -> FederatedIdentity:
    """Google/OIDC: claims come from the id_token authlib already validated.

    [H1] A missing email_verified claim counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")
    if not userinfo.get("email_verified", False):
        raise ValueError(f"{provider} OAuth: email is not verified")
    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")
    return FederatedIdentity(
        provider=provider,
        provider_subject_id=str(subject),
        email=email,
        display_name=userinfo.get("name"),
        photo_ref=userinfo.get("picture"),
    )
