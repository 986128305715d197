"""
api/routes/v1/auth.py -- Login flow, session and self-service REST endpoints.

Routes:
  POST /api/v1/auth/attempts                          -- begin a login attempt; returns challenge token
  GET  /api/v1/auth/attempts/{id}                     -- current phase and challenge token
  POST /api/v1/auth/attempts/{id}/challenge           -- verify the challenge widget response
  POST /api/v1/auth/attempts/{id}/challenge/expire    -- widget expired; swap in a fresh token
  POST /api/v1/auth/attempts/{id}/login               -- password login; sets JWT cookie
  GET  /api/v1/auth/oauth/{provider}?attempt_id=...   -- redirect to the OAuth provider
  GET  /api/v1/auth/callback/{provider}               -- OAuth callback; session (200) or provisioning (202)
  POST /api/v1/auth/attempts/{id}/provisioning        -- choose a local password, or cancel
  GET  /api/v1/auth/boundary                          -- login page activation; reports why the last session ended
  POST /api/v1/auth/logout                            -- ends the session; clears cookie
  GET  /api/v1/auth/me                                -- current account (requires a live session)
  GET  /api/v1/auth/providers                         -- list enabled OAuth providers (public)
  POST /api/v1/auth/register                          -- self-registration
  GET  /api/v1/auth/usernames/{name}                  -- sign-up availability check
  POST /api/v1/auth/password                          -- change own password (requires a live session)

Security:
  [H2] Credential-bearing routes are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Password checks go through AccountStore.verify_credentials(), which
       equalizes timing for unknown usernames.
  [M5] Cache-Control: no-store on every response that carries a session.
  The attempt id survives the OAuth redirect in the signed Starlette session,
  never in the callback URL.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, limiter
from api.models import (
    AccountResponse,
    AttemptResponse,
    BoundaryResponse,
    ChallengeRequest,
    LoginRequest,
    MeResponse,
    OAuthProviderInfo,
    PasswordChangeRequest,
    ProvisioningRequestBody,
    ProvisioningResponse,
    RegisterRequest,
    SessionResponse,
    UsernameAvailability,
)
from auth.dependencies import get_current_account, session_id
from auth.errors import AttemptNotFound, ProviderExchangeFailed, SessionTerminated
from auth.flow import LoginService
from auth.models import Account, LoginPhase, Session
from auth.oauth import ProviderToken, get_enabled_providers
from auth.sessions import SessionIssuer
from auth.signals import SessionSignalChannel
from auth.tokens import SESSION_COOKIE, clear_session_cookie, create_session_token, set_session_cookie

logger = logging.getLogger("gatehouse.api.auth")

# Auth policy:
# - attempts, challenge, login, oauth, callback, provisioning: public -- they ARE the login
# - boundary, logout, providers, register, usernames: public
# - GET /auth/me, POST /auth/password: require a live session (get_current_account)
router = APIRouter()

_ATTEMPT_SESSION_KEY = "login_attempt"


def _service(request: Request) -> LoginService:
    return request.app.state.login_service


def _session_response(session: Session, account: Account) -> JSONResponse:
    token = create_session_token(session, account)
    resp = JSONResponse(
        status_code=200,
        content=SessionResponse(
            access_token=token,
            expires_in=int((session.expires_at - session.issued_at).total_seconds()),
            account_id=account.id,
            username=account.username,
            role=account.role.value,
        ).model_dump(),
    )
    set_session_cookie(resp, token, session)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Login attempts and the challenge gate
# ---------------------------------------------------------------------------


@router.post("/auth/attempts", response_model=AttemptResponse, status_code=201)
def begin_attempt(request: Request) -> AttemptResponse:
    """Start a login attempt. The client renders the challenge widget for the returned token."""
    return AttemptResponse.from_attempt(_service(request).begin())


@router.get("/auth/attempts/{attempt_id}", response_model=AttemptResponse)
def get_attempt(request: Request, attempt_id: str) -> AttemptResponse:
    """Current phase and challenge token. Clients re-read this after a failed challenge."""
    return AttemptResponse.from_attempt(_service(request).attempts.get(attempt_id))


@router.post("/auth/attempts/{attempt_id}/challenge", response_model=AttemptResponse)
def verify_challenge(request: Request, attempt_id: str, body: ChallengeRequest) -> AttemptResponse:
    """Verify the challenge widget response.

    On failure the attempt already holds a fresh token; the client fetches it
    with GET /auth/attempts/{id} and re-renders the widget.
    """
    service = _service(request)
    attempt = service.attempts.get(attempt_id)
    service.verify_challenge(attempt, body.response)
    return AttemptResponse.from_attempt(attempt)


@router.post("/auth/attempts/{attempt_id}/challenge/expire", response_model=AttemptResponse)
def expire_challenge(request: Request, attempt_id: str) -> AttemptResponse:
    """The widget reported expiry. Returns the attempt with its replacement token."""
    service = _service(request)
    attempt = service.attempts.get(attempt_id)
    service.expire_challenge(attempt)
    return AttemptResponse.from_attempt(attempt)


# ---------------------------------------------------------------------------
# Credential login
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/attempts/{attempt_id}/login", response_model=SessionResponse)
def login(request: Request, attempt_id: str, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Any failure ends the attempt: its challenge token is discarded and the
    client must start a new attempt.
    """
    service = _service(request)
    attempt = service.attempts.get(attempt_id)
    session = service.login(attempt, body.username, body.password, body.challenge_response)
    return _session_response(session, attempt.account)


# ---------------------------------------------------------------------------
# Federated login
# ---------------------------------------------------------------------------


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str, attempt_id: str):
    """Redirect the browser to the OAuth provider's authorization page.

    The provider name must be registered with the OAuth client; an unknown
    name is refused before any redirect so it cannot be used to bounce the
    browser to an arbitrary URL.
    """
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise ProviderExchangeFailed(f"Unknown OAuth provider: {provider}")
    attempt = _service(request).attempts.get(attempt_id)
    request.session[_ATTEMPT_SESSION_KEY] = attempt.id
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Handle the OAuth provider callback.

    Flow:
      1. Recover the attempt id stored before the redirect.
      2. Exchange the authorization code (authlib checks the CSRF state).
      3. Run the federated login until it finishes or needs a password.
      4. Finished: 200 + session cookie. Needs a password: 202 + identity.
    """
    service = _service(request)
    attempt_id = request.session.pop(_ATTEMPT_SESSION_KEY, None)
    if attempt_id is None:
        raise AttemptNotFound()
    attempt = service.attempts.get(attempt_id)

    client = request.app.state.oauth.create_client(provider)
    if client is None:
        error = ProviderExchangeFailed(f"Unknown OAuth provider: {provider}")
        service.abort(attempt, error)
        raise error
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc)
        error = ProviderExchangeFailed(str(exc))
        service.abort(attempt, error)
        raise error from exc

    await service.start_federated(attempt, ProviderToken(provider=provider, token=token))
    if attempt.phase is LoginPhase.PROVISIONING:
        resp = JSONResponse(status_code=202, content=ProvisioningResponse.from_attempt(attempt).model_dump())
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _session_response(attempt.session, attempt.account)


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/attempts/{attempt_id}/provisioning", response_model=SessionResponse)
async def provisioning(request: Request, attempt_id: str, body: ProvisioningRequestBody) -> JSONResponse:
    """Resolve a parked federated login with a local password, or cancel it.

    A password/confirm mismatch answers 422 and leaves the request pending.
    Cancelling answers with provisioning_aborted and creates nothing.
    """
    service = _service(request)
    attempt = service.attempts.get(attempt_id)
    session = await service.complete_provisioning(attempt, body.password, body.confirm)
    return _session_response(session, attempt.account)


# ---------------------------------------------------------------------------
# Session boundary
# ---------------------------------------------------------------------------


@router.get("/auth/boundary", response_model=BoundaryResponse)
def boundary(request: Request) -> JSONResponse:
    """Login page activation: report, once, why the client's last session ended.

    The stale cookie names the context. Checking the session first turns a
    lapsed one into an EXPIRED signal; the signal is then read and cleared.
    A dead session's cookie is deleted on the way out.
    """
    issuer: SessionIssuer = request.app.state.issuer
    signals: SessionSignalChannel = request.app.state.signals

    sid = session_id(request)
    authenticated = False
    if sid is not None:
        try:
            issuer.check(sid)
            authenticated = True
        except SessionTerminated:
            pass
    signal = signals.peek_and_clear(sid)

    resp = JSONResponse(
        content=BoundaryResponse(
            authenticated=authenticated,
            signal=signal.value if signal is not None else None,
            message=signal.message if signal is not None else None,
        ).model_dump()
    )
    if not authenticated and request.cookies.get(SESSION_COOKIE):
        clear_session_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """End the session and clear the cookie. Logout leaves no termination signal."""
    sid = session_id(request)
    if sid is not None:
        request.app.state.issuer.end(sid)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(account: Account = Depends(get_current_account)) -> MeResponse:
    """Return identity information for the currently authenticated account."""
    return MeResponse(
        account_id=account.id,
        username=account.username,
        role=account.role.value,
        display_name=account.display_name,
        photo_ref=account.photo_ref,
        oauth_provider=account.oauth_provider,
    )


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the list of configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountResponse:
    """Self-registration. Creates an ACTIVE USER account; the user then logs in normally."""
    account = _service(request).register(body.username, body.password, body.confirm)
    return AccountResponse.from_account(account)


@limiter.limit(LOGIN_LIMIT)
@router.get("/auth/usernames/{username}", response_model=UsernameAvailability)
def username_availability(request: Request, username: str) -> UsernameAvailability:
    """Whether a username is still free. The sign-up form calls this as the user types."""
    return UsernameAvailability(username=username, available=_service(request).username_available(username))


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/password")
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Change the caller's password. The session making the request stays live."""
    _service(request).change_password(
        account,
        body.current,
        body.password,
        body.confirm,
        keep_session=session_id(request),
    )
    resp = JSONResponse(content={"message": "Password updated."})
    resp.headers["Cache-Control"] = "no-store"
    return resp
