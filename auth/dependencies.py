"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two transports carry the session JWT, checked in priority order:
  1. JWT cookie ("access_token") -- set by the login routes.
  2. Authorization: Bearer <token> header -- API clients.

The JWT only proves who minted it. Whether the session behind it is still
live is SessionIssuer.check()'s call, so a superseded, locked, deleted or
lapsed session is refused even while its JWT signature is good. Those
refusals raise SessionTerminated and reach the client as the usual error
envelope (code "session_terminated") with the reason as the message.

get_current_account() raises 401 if unauthenticated.
require_admin() wraps it and raises 403 below ADMIN rank.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.errors import SessionTerminated
from auth.models import Account, Role
from auth.sessions import SessionIssuer
from auth.store import AccountStore
from auth.tokens import SESSION_COOKIE, decode_session_token


def session_jwt(request: Request) -> str | None:
    """Return the raw session JWT from the cookie or Bearer header, if any."""
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def session_id(request: Request) -> str | None:
    """Return the `sid` claim of a correctly signed session JWT, expired or not."""
    token = session_jwt(request)
    if not token:
        return None
    payload = decode_session_token(token, verify_exp=False)
    return payload["sid"] if payload else None


def get_current_account(request: Request) -> Account:
    """Require a live session. Raises HTTP 401 or SessionTerminated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    sid = session_id(request)
    if sid is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    issuer: SessionIssuer = request.app.state.issuer
    store: AccountStore = request.app.state.store
    session = issuer.check(sid)
    account = store.get_by_id(session.account_id)
    if account is None or not account.is_active:
        raise SessionTerminated()
    return account


def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Require ADMIN rank or above. Raises HTTP 401 if unauthenticated, 403 otherwise."""
    if account.role.rank < Role.ADMIN.rank:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return account
