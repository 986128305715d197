"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from auth.flow import LoginAttempt
from auth.models import Account, FederatedIdentity

_PASSWORD_MAX = 64
_PASSWORD_MAX_BYTES = 72


def _fits_bcrypt(value: str) -> str:
    # 64 characters can still be more than 72 UTF-8 bytes.
    if len(value.encode("utf-8")) > _PASSWORD_MAX_BYTES:
        raise ValueError(f"password must be at most {_PASSWORD_MAX_BYTES} bytes long")
    return value


Password = Annotated[str, Field(min_length=1, max_length=_PASSWORD_MAX), AfterValidator(_fits_bcrypt)]
OptionalPassword = Optional[Annotated[str, Field(max_length=_PASSWORD_MAX), AfterValidator(_fits_bcrypt)]]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    super_admin = "super_admin"
    admin = "admin"
    user = "user"


class StatusEnum(str, Enum):
    active = "active"
    locked = "locked"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Login attempts
# ---------------------------------------------------------------------------


class AttemptResponse(BaseModel):
    """State of one login attempt. challenge_token is what the widget answers for."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str
    phase: str
    challenge_token: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: LoginAttempt) -> "AttemptResponse":
        return cls(
            attempt_id=attempt.id,
            phase=attempt.phase.value,
            challenge_token=attempt.challenge.value if attempt.challenge is not None else None,
        )


class ChallengeRequest(BaseModel):
    """Request body for POST /api/v1/auth/attempts/{id}/challenge."""

    model_config = ConfigDict(str_strip_whitespace=True)

    response: str = Field(min_length=1, max_length=2048)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/attempts/{id}/login.

    challenge_response may carry the widget answer inline instead of a
    separate POST .../challenge.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    challenge_response: Optional[str] = Field(default=None, max_length=2048)


class SessionResponse(BaseModel):
    """Response body for a successful login. The JWT is also set as a cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int
    account_id: int
    username: str
    role: str


class ProvisioningResponse(BaseModel):
    """202 body: a federated login is waiting for the user to choose a local password."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str
    phase: str
    provider: str
    email: str
    display_name: Optional[str] = None
    photo_ref: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: LoginAttempt) -> "ProvisioningResponse":
        identity: FederatedIdentity = attempt.prompt.request_state.identity
        return cls(
            attempt_id=attempt.id,
            phase=attempt.phase.value,
            provider=identity.provider,
            email=identity.email,
            display_name=identity.display_name,
            photo_ref=identity.photo_ref,
        )


class ProvisioningRequestBody(BaseModel):
    """Request body for POST /api/v1/auth/attempts/{id}/provisioning.

    Omit password (or send null) to cancel account creation.
    """

    password: OptionalPassword = None
    confirm: OptionalPassword = None


class BoundaryResponse(BaseModel):
    """Response for GET /api/v1/auth/boundary.

    signal/message explain why the client's previous session ended; both are
    null when there is nothing to report. Each signal is reported once.
    """

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    signal: Optional[str] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: Password
    confirm: OptionalPassword = None


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin only).

    Admins pre-create accounts before users log in. For provider users, set
    username to the user's provider email and leave password empty.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: OptionalPassword = None
    role: RoleEnum = RoleEnum.user


class AccountPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Deletion is DELETE."""

    role: Optional[RoleEnum] = None
    status: Optional[StatusEnum] = None


class AccountResponse(BaseModel):
    """One account as seen by admins."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    status: str
    email: Optional[str] = None
    oauth_provider: Optional[str] = None
    display_name: Optional[str] = None
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            role=account.role.value,
            status=account.status.value,
            email=account.email,
            oauth_provider=account.oauth_provider,
            display_name=account.display_name,
            created_at=account.created_at or "",
            last_login=account.last_login,
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    username: str
    role: str
    display_name: Optional[str] = None
    photo_ref: Optional[str] = None
    oauth_provider: Optional[str] = None


class OAuthProviderInfo(BaseModel):
    """One configured OAuth provider, as listed on the login page."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class UsernameAvailability(BaseModel):
    """Response for GET /api/v1/auth/usernames/{username}."""

    model_config = ConfigDict(frozen=True)

    username: str
    available: bool


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    password: Password
    confirm: OptionalPassword = None
