"""
auth/policy.py -- Password and username rules for new accounts.

Self-registration applies the full rule set. Provisioning a federated
account and admin-created accounts only check that the password fits
bcrypt (72 UTF-8 bytes) and that the confirmation matches; the identity
provider or the admin already vouched for the person.

Every rule raises PolicyViolation with a user-facing detail string, first
failing rule wins.
"""

from __future__ import annotations

import re

from auth.errors import PolicyViolation

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 16
# bcrypt refuses input longer than this many UTF-8 bytes.
PASSWORD_MAX_BYTES = 72
USERNAME_MIN_LENGTH = 6
USERNAME_MAX_LENGTH = 30

_USERNAME_RE = re.compile(r"^[a-zA-Z0-9]+$")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


def validate_username(username: str) -> None:
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise PolicyViolation(
            f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters long"
        )
    if not _USERNAME_RE.match(username):
        raise PolicyViolation("Username can only contain letters (a-z) and numbers (0-9)")


def validate_password_bytes(password: str) -> None:
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise PolicyViolation(f"Password must be at most {PASSWORD_MAX_BYTES} bytes long")


def validate_confirmation(password: str, confirm: str | None) -> None:
    """confirm=None means the caller did not ask for a confirmation field."""
    if confirm is not None and password != confirm:
        raise PolicyViolation("Passwords do not match")


def validate_password(password: str, confirm: str | None = None) -> None:
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        raise PolicyViolation(
            f"Password must be between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH} characters long"
        )
    if not re.search(r"[A-Z]", password):
        raise PolicyViolation("Password must contain at least 1 uppercase letter")
    if not re.search(r"[a-z]", password):
        raise PolicyViolation("Password must contain at least 1 lowercase letter")
    if not re.search(r"\d", password):
        raise PolicyViolation("Password must contain at least 1 number")
    if not _SPECIAL_RE.search(password):
        raise PolicyViolation("Password must contain at least 1 special character")
    validate_password_bytes(password)
    validate_confirmation(password, confirm)
