"""
auth/errors.py -- Authentication error taxonomy.

Every failure the login boundary can observe is an AuthError subclass with a
stable machine-readable `code`, a user-facing `message` and the HTTP status the
API layer answers with. Callers key UI messaging off the class (or code), so
kinds are never collapsed into a generic failure.

All of these are recoverable at the login boundary; none should take down the
process. api/main.py turns them into the {"error": {...}} envelope.
"""

from __future__ import annotations

from auth.models import TerminationSignal


class AuthError(Exception):
    code = "auth_error"
    message = "Authentication failed."
    status_code = 400

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail


class ChallengeInvalid(AuthError):
    code = "challenge_invalid"
    message = "The bot challenge is invalid or has already been used. Please complete a new challenge."
    status_code = 400


class ChallengeRequired(AuthError):
    code = "challenge_required"
    message = "Please complete the bot challenge before signing in."
    status_code = 400


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."
    status_code = 401


class AccountLocked(AuthError):
    code = "account_locked"
    message = "Your account has been locked. Please contact administrator."
    status_code = 403


class AccountDeleted(AuthError):
    code = "account_deleted"
    message = "Your account has been deleted. Please contact administrator."
    status_code = 403


class ProvisioningAborted(AuthError):
    code = "provisioning_aborted"
    message = "Account setup was cancelled. No account was created."
    status_code = 400


class ProviderExchangeFailed(AuthError):
    code = "provider_exchange_failed"
    message = "Sign-in with the identity provider failed. Please try again."
    status_code = 502


class PolicyViolation(AuthError):
    code = "policy_violation"
    message = "The supplied value does not meet the account policy."
    status_code = 422


class UsernameTaken(AuthError):
    code = "username_taken"
    message = "Username already exists. Please choose a different username."
    status_code = 409


class RegistrationDisabled(AuthError):
    code = "registration_disabled"
    message = "Self-registration is disabled. Contact an admin."
    status_code = 403


class AttemptNotFound(AuthError):
    code = "attempt_not_found"
    message = "Login attempt not found or already finished. Start a new attempt."
    status_code = 404


class SessionTerminated(AuthError):
    """The presented session is no longer usable.

    `signal` is the reason when one is known (CONFLICT for a superseded
    session, EXPIRED for a lapsed one). The pending boundary signal is left in
    the channel; only the login boundary clears it.
    """

    code = "session_terminated"
    message = "Your session has ended. Please login again."
    status_code = 401

    def __init__(self, signal: TerminationSignal | None = None) -> None:
        super().__init__(signal.message if signal is not None else None)
        self.signal = signal


class AccountNotFound(AuthError):
    code = "not_found"
    message = "Account not found."
    status_code = 404


class Forbidden(AuthError):
    code = "forbidden"
    message = "You are not allowed to change this account."
    status_code = 403
