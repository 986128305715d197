"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
the domain shape; the gate, issuer, stores and routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of authorization tiers. Compare with rank, never with strings."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    USER = "user"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    def can_manage(self, other: Role) -> bool:
        """True if an account with this role may change an account with `other`.

        SUPER_ADMIN manages every tier; everyone else only manages tiers
        strictly below their own.
        """
        if self is Role.SUPER_ADMIN:
            return True
        return self.rank > other.rank


_ROLE_RANKS: dict[Role, int] = {Role.SUPER_ADMIN: 3, Role.ADMIN: 2, Role.USER: 1}


class AccountStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    DELETED = "deleted"  # soft delete; the row stays so logins can say why


class TerminationSignal(str, Enum):
    """Why a client's previous session ended. Delivered once to the login boundary."""

    EXPIRED = "expired"
    LOCKED = "locked"
    CONFLICT = "conflict"
    DELETED = "deleted"

    @property
    def message(self) -> str:
        return _SIGNAL_MESSAGES[self]


_SIGNAL_MESSAGES: dict[TerminationSignal, str] = {
    TerminationSignal.EXPIRED: "Your session has expired. Please login again.",
    TerminationSignal.LOCKED: "Your account has been locked. Please contact administrator.",
    TerminationSignal.CONFLICT: "Your account has been logged in from another browser. Please login again.",
    TerminationSignal.DELETED: "Your account has been deleted. Please contact administrator.",
}


class LoginPhase(str, Enum):
    IDLE = "idle"
    CHALLENGE_ISSUED = "challenge_issued"
    CHALLENGE_VERIFIED = "challenge_verified"
    AUTHENTICATING = "authenticating"
    PROVISIONING = "provisioning"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LoginPhase.SUCCEEDED, LoginPhase.FAILED)


class ProvisioningStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


@dataclass
class Account:
    """A local account. This is the account reference passed between components.

    username doubles as the email address for accounts provisioned from a
    federated identity. hashed_password is None only for accounts an admin
    pre-created for a provider login that has not happened yet.
    """

    username: str
    role: Role = Role.USER
    id: int | None = None
    status: AccountStatus = AccountStatus.ACTIVE
    hashed_password: str | None = None
    email: str | None = None
    oauth_provider: str | None = None  # "github", "google", "oidc"
    oauth_subject: str | None = None  # provider's stable user ID
    display_name: str | None = None
    photo_ref: str | None = None
    created_at: str | None = None
    last_login: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE


@dataclass
class ChallengeToken:
    """One-time proof that an attempt passed bot mitigation.

    consumed flips to True exactly once, on the first successful verify().
    expired is set by the gate on TTL lapse or a provider expiry notification.
    """

    value: str
    issued_at: datetime
    consumed: bool = False
    expired: bool = False


@dataclass(frozen=True)
class FederatedIdentity:
    """Snapshot of what the identity provider asserted for one attempt."""

    provider: str
    provider_subject_id: str
    email: str
    display_name: str | None = None
    photo_ref: str | None = None


@dataclass
class Session:
    """A minted session. Active while superseded_by is None."""

    account_id: int
    token: str
    issued_at: datetime
    expires_at: datetime
    superseded_by: str | None = None

    @property
    def is_active(self) -> bool:
        return self.superseded_by is None
