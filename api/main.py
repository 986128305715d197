"""
api/main.py -- FastAPI application entry point for Gatehouse.

Exposes the login core over HTTP: challenge-gated login attempts, federated
login with first-use provisioning, single-active-session enforcement and the
login-boundary termination signals.

Run with:      uvicorn api.main:app --reload

Requests pass host check, CORS, the rate limiter and the signed session
cookie (OAuth state and the attempt id) before reaching a route. The
lifespan opens the account store and the Turnstile client, wires the login
components onto app.state and runs the purge sweep until shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.admin import AccountAdmin
from auth.challenge import ChallengeGate, ChallengeVerifier, TurnstileVerifier
from auth.credentials import CredentialVerifier
from auth.dependencies import get_current_account
from auth.errors import AuthError
from auth.federation import FederatedLoginCoordinator, IdentityProvider
from auth.flow import LoginService
from auth.models import Account
from auth.oauth import OAuthIdentityProvider
from auth.oauth import oauth as oauth_client
from auth.sessions import SessionIssuer
from auth.signals import SessionSignalChannel
from auth.store import AccountStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def wire_state(
    app: FastAPI,
    store: AccountStore,
    verifier: ChallengeVerifier,
    identity_provider: IdentityProvider,
    oauth_registry,
) -> None:
    """Build the auth components around `store` and hang them on app.state.

    The lifespan passes the real Turnstile verifier and authlib registry;
    tests pass fakes through the same function.
    """
    settings = get_settings()
    gate = ChallengeGate(verifier, ttl_seconds=settings.challenge_ttl_seconds)
    issuer = SessionIssuer(
        store,
        ttl_seconds=settings.token_expire_seconds,
        signal_retention_seconds=settings.signal_retention_seconds,
    )
    app.state.store = store
    app.state.verifier = verifier
    app.state.oauth = oauth_registry
    app.state.gate = gate
    app.state.issuer = issuer
    app.state.signals = SessionSignalChannel(store)
    app.state.admin = AccountAdmin(store, issuer)
    app.state.login_service = LoginService(
        gate=gate,
        credentials=CredentialVerifier(store),
        federation=FederatedLoginCoordinator(identity_provider, store),
        issuer=issuer,
        store=store,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def purge_once(app: FastAPI) -> None:
    """One sweep: stale challenge tokens, abandoned attempts, lapsed sessions."""
    app.state.gate.purge_expired()
    app.state.login_service.abandon_stale()
    try:
        await asyncio.to_thread(app.state.issuer.purge_expired)
    except SQLAlchemyError:
        logger.exception("Session purge failed; retrying next interval")


async def _purge_loop(app: FastAPI) -> None:
    """Call purge_once() every PURGE_INTERVAL_SECONDS until the task is cancelled at shutdown."""
    while True:
        await asyncio.sleep(get_settings().purge_interval_seconds)
        await purge_once(app)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and the Turnstile client, wire the components, start the sweep.

    Shutdown mirrors startup in reverse. The purge task is started after
    wire_state() because it reads the components from app.state.
    """
    logger.info("Gatehouse API starting up")
    settings = get_settings()
    store = AccountStore()
    verifier = TurnstileVerifier(settings.turnstile_secret_key, settings.turnstile_verify_url)
    wire_state(app, store, verifier, OAuthIdentityProvider(oauth_client), oauth_client)
    if not store.has_accounts():
        logger.warning("No accounts exist yet. Create one with: python main.py create-admin <username>")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    verifier.close()
    store.close()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Challenge-gated login, federated provisioning and single-active-session enforcement.",
    version=VERSION,
    lifespan=lifespan,
    # /docs and /redoc are served below, behind a live session.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware
#
# A request meets these in registration order: host check, CORS, rate
# limiter, then the signed session cookie.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state here between the redirect and the callback;
# the login routes keep the attempt id next to it.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.secure_cookies)

# SlowAPIMiddleware finds the limiter on app.state.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access-log line per request: method, path, status, latency, client."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Accounts"])


@app.get("/docs", include_in_schema=False)
async def docs(account: Account = Depends(get_current_account)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Gatehouse API")


@app.get("/redoc", include_in_schema=False)
async def redoc(account: Account = Depends(get_current_account)):
    return get_redoc_html(openapi_url="/openapi.json", title="Gatehouse API")


# ---------------------------------------------------------------------------
# Error envelope
#
# Every failure answers {"error": {"code", "message", "detail"}}. The login
# page switches on error.code.
# ---------------------------------------------------------------------------


def _error(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Answer an AuthError with its own status and code.

    Below 500 the message is user-facing already. Upstream failures (5xx)
    answer with the generic message and keep the raw detail in the log.
    """
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc)
        return _error(exc.status_code, exc.code, exc.message, headers={"Cache-Control": "no-store"})
    return _error(exc.status_code, exc.code, str(exc), exc.detail, headers={"Cache-Control": "no-store"})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", 60))
    return _error(
        429,
        "rate_limited",
        "Too many requests. Please wait before trying again.",
        str(exc),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Dependencies raise HTTPException with a {"code", "message"} dict; pass it through."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: traceback to the log, generic 500 to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health
#
# Not rate limited; load balancers poll it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and per-component status."""
    components = {"app": "ok"}
    try:
        request.app.state.store.count_accounts()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unavailable")
        components["database"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
