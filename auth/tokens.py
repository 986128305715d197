"""
auth/tokens.py -- Password hashing, session JWTs and the session cookie.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The DUMMY_HASH constant
       lets AccountStore.verify_credentials() run bcrypt for unknown usernames
       so response time does not reveal whether a username exists [C1].

  JWT: python-jose with HS256. The token is only a signed carrier for the
       session id (`sid`); whether the session is still live is decided by
       SessionIssuer.check() against the session table, so a superseded or
       locked session is refused even while its JWT is unexpired.

  Expired JWTs are still readable with decode_session_token(verify_exp=False).
       The login boundary needs the `sid` of a lapsed session to find the
       termination signal stored under it.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import bcrypt
from jose import JWTError, jwt

from auth.models import Account, Session
from core.config import get_settings

logger = logging.getLogger("gatehouse.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "access_token"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt refuses input past 72 UTF-8 bytes; callers run
    policy.validate_password_bytes() first so that surfaces as PolicyViolation.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if len(plain.encode("utf-8")) > 72:
        # Nothing longer can have been hashed.
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB -- treat as a mismatch, never as a match.
        logger.warning("Stored password hash is malformed; treating as mismatch")
        return False


# Computed once at module load so the first login is not measurably slower.
DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


# ---------------------------------------------------------------------------
# Session JWT
# ---------------------------------------------------------------------------


def create_session_token(session: Session, account: Account) -> str:
    """Encode a signed JWT that carries the session id and the account identity.

    exp matches the session's own expires_at so cookie, JWT and session row
    lapse together.
    """
    payload = {
        "sub": account.username,
        "account_id": session.account_id,
        "role": account.role.value,
        "sid": session.token,
        "iat": session.issued_at,
        "exp": session.expires_at,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str, verify_exp: bool = True) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure.

    verify_exp=False still checks the signature; only the expiry check is
    skipped. Use it solely to recover the `sid` of a lapsed session.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": verify_exp},
        )
    except JWTError as exc:
        logger.debug("Session JWT rejected: %s", exc)
        return None
    if "sid" not in payload or "account_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, session: Session) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the session expiry.
    """
    max_age = int((session.expires_at - session.issued_at).total_seconds())
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
