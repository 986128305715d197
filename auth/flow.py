"""
auth/flow.py -- The login state machine that ties the auth components together.

    IDLE -> CHALLENGE_ISSUED -> CHALLENGE_VERIFIED -> AUTHENTICATING
         -> (PROVISIONING) -> SUCCEEDED | FAILED

One LoginAttempt is one pass through the login page. It owns its challenge
token and, for federated logins, the ProvisioningPrompt the coordinator
suspends on. SUCCEEDED and FAILED are terminal: the attempt's token is
discarded and every further submit answers ChallengeInvalid, over HTTP
too: AttemptRegistry keeps the ids of finished attempts until the purge loop
drops them.

LoginService is the inbound surface: begin(), verify_challenge(),
expire_challenge(), login(), login_federated(), resolve_provisioning(),
register(), username_available() and change_password(). AttemptRegistry lets
the HTTP layer find attempts by id between requests.

Threading: credential logins run in FastAPI's threadpool, federated logins
run as tasks on the server loop. Phase transitions that guard a submit go
through one lock so a double-submit cannot authenticate twice.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial

from sqlalchemy.exc import IntegrityError

from auth.challenge import ChallengeGate
from auth.credentials import CredentialVerifier
from auth.errors import (
    AttemptNotFound,
    AuthError,
    ChallengeInvalid,
    ChallengeRequired,
    PolicyViolation,
    RegistrationDisabled,
    UsernameTaken,
)
from auth.federation import FederatedLoginCoordinator
from auth.models import Account, AccountStatus, ChallengeToken, LoginPhase, Role, Session
from auth.policy import validate_confirmation, validate_password, validate_password_bytes, validate_username
from auth.provisioning import ProvisioningPrompt
from auth.sessions import SessionIssuer
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import Settings

logger = logging.getLogger("gatehouse.auth.flow")

_FINISHED_LIMIT = 10_000


@dataclass
class LoginAttempt:
    id: str
    challenge: ChallengeToken | None = None
    phase: LoginPhase = LoginPhase.IDLE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    prompt: ProvisioningPrompt = field(default_factory=ProvisioningPrompt, repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)
    account: Account | None = None
    session: Session | None = None
    error: AuthError | None = None


class AttemptRegistry:
    """Live login attempts by id.

    Terminal attempts leave the registry but their ids are remembered for a
    while, so a late submit on a finished attempt answers ChallengeInvalid
    (its token is spent) rather than AttemptNotFound.
    """

    def __init__(self, finished_limit: int = _FINISHED_LIMIT) -> None:
        self._attempts: dict[str, LoginAttempt] = {}
        self._finished: OrderedDict[str, datetime] = OrderedDict()
        self._finished_limit = finished_limit
        self._lock = threading.Lock()

    def add(self, attempt: LoginAttempt) -> None:
        with self._lock:
            self._attempts[attempt.id] = attempt

    def get(self, attempt_id: str) -> LoginAttempt:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            finished = attempt_id in self._finished
        if attempt is None:
            if finished:
                raise ChallengeInvalid()
            raise AttemptNotFound()
        return attempt

    def forget(self, attempt_id: str) -> None:
        with self._lock:
            if self._attempts.pop(attempt_id, None) is None:
                return
            self._finished[attempt_id] = datetime.now(timezone.utc)
            while len(self._finished) > self._finished_limit:
                self._finished.popitem(last=False)

    def purge_finished(self, cutoff: datetime) -> int:
        """Forget finished ids recorded at or before `cutoff`."""
        dropped = 0
        with self._lock:
            while self._finished and next(iter(self._finished.values())) <= cutoff:
                self._finished.popitem(last=False)
                dropped += 1
        return dropped

    def older_than(self, cutoff: datetime) -> list[LoginAttempt]:
        with self._lock:
            return [a for a in self._attempts.values() if a.created_at <= cutoff]

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)


def _retrieve_outcome(task: asyncio.Task) -> None:
    # Abandoned tasks have no awaiter; consume the outcome here.
    if not task.cancelled():
        task.exception()


class LoginService:
    def __init__(
        self,
        gate: ChallengeGate,
        credentials: CredentialVerifier,
        federation: FederatedLoginCoordinator,
        issuer: SessionIssuer,
        store: AccountStore,
        settings: Settings,
    ) -> None:
        self._gate = gate
        self._credentials = credentials
        self._federation = federation
        self._issuer = issuer
        self._store = store
        self._settings = settings
        self._lock = threading.Lock()
        self.attempts = AttemptRegistry()

    # ------------------------------------------------------------------
    # Challenge phase
    # ------------------------------------------------------------------

    def begin(self) -> LoginAttempt:
        attempt = LoginAttempt(id=secrets.token_urlsafe(16))
        attempt.prompt = ProvisioningPrompt(on_request=partial(self._enter_provisioning, attempt))
        attempt.challenge = self._gate.issue()
        attempt.phase = LoginPhase.CHALLENGE_ISSUED
        self.attempts.add(attempt)
        logger.debug("Login attempt %s started", attempt.id)
        return attempt

    def verify_challenge(self, attempt: LoginAttempt, response: str) -> bool:
        """Verify the widget response against the attempt's token.

        On failure the spent token is replaced with a fresh one (the attempt
        goes back to CHALLENGE_ISSUED) and ChallengeInvalid is raised.
        """
        with self._lock:
            if attempt.phase not in (LoginPhase.CHALLENGE_ISSUED, LoginPhase.CHALLENGE_VERIFIED):
                raise ChallengeInvalid()
            token = attempt.challenge
        try:
            self._gate.verify(token.value, response)
        except ChallengeInvalid:
            self._reissue(attempt)
            raise
        with self._lock:
            if attempt.challenge is token and attempt.phase is LoginPhase.CHALLENGE_ISSUED:
                attempt.phase = LoginPhase.CHALLENGE_VERIFIED
        return True

    def expire_challenge(self, attempt: LoginAttempt) -> ChallengeToken:
        """Challenge provider reported the widget expired: swap in a fresh token."""
        with self._lock:
            if attempt.phase not in (LoginPhase.CHALLENGE_ISSUED, LoginPhase.CHALLENGE_VERIFIED):
                raise ChallengeInvalid()
        self._gate.expire(attempt.challenge.value)
        return self._reissue(attempt)

    def _reissue(self, attempt: LoginAttempt) -> ChallengeToken:
        fresh = self._gate.issue()
        with self._lock:
            if attempt.phase not in (LoginPhase.CHALLENGE_ISSUED, LoginPhase.CHALLENGE_VERIFIED):
                self._gate.discard(fresh.value)
                raise ChallengeInvalid()
            old, attempt.challenge = attempt.challenge, fresh
            attempt.phase = LoginPhase.CHALLENGE_ISSUED
        if old is not None:
            self._gate.discard(old.value)
        return fresh

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def login(
        self,
        attempt: LoginAttempt,
        username: str,
        password: str,
        challenge_response: str | None = None,
    ) -> Session:
        """Credential login. Returns the new Session or raises an AuthError."""
        if challenge_response is not None:
            self._verify_inline(attempt, challenge_response)
        self._start_authenticating(attempt)
        try:
            account = self._credentials.verify(username, password)
            return self._succeed(attempt, account)
        except Exception as exc:
            self._fail(attempt, exc)
            raise

    async def login_federated(
        self,
        attempt: LoginAttempt,
        provider_token,
        challenge_response: str | None = None,
    ) -> Session:
        """Federated login. May park in PROVISIONING until resolve_provisioning()."""
        if challenge_response is not None:
            await asyncio.to_thread(self._verify_inline, attempt, challenge_response)
        self._start_authenticating(attempt)
        try:
            account = await self._federation.authenticate(provider_token, attempt.prompt)
            return self._succeed(attempt, account)
        except (Exception, asyncio.CancelledError) as exc:
            self._fail(attempt, exc)
            raise

    def _verify_inline(self, attempt: LoginAttempt, response: str) -> None:
        """Verify a challenge response submitted together with the login form.

        A failure here fails the attempt; only the standalone
        verify_challenge() hands out a fresh token.
        """
        with self._lock:
            if attempt.phase is not LoginPhase.CHALLENGE_ISSUED:
                return
            token = attempt.challenge
        try:
            self._gate.verify(token.value, response)
        except ChallengeInvalid as exc:
            with self._lock:
                current = attempt.phase is LoginPhase.CHALLENGE_ISSUED and attempt.challenge is token
            if current:
                self._fail(attempt, exc)
            raise
        with self._lock:
            if attempt.challenge is token and attempt.phase is LoginPhase.CHALLENGE_ISSUED:
                attempt.phase = LoginPhase.CHALLENGE_VERIFIED

    def _enter_provisioning(self, attempt: LoginAttempt, identity) -> None:
        with self._lock:
            if attempt.phase is LoginPhase.AUTHENTICATING:
                attempt.phase = LoginPhase.PROVISIONING

    def _start_authenticating(self, attempt: LoginAttempt) -> None:
        with self._lock:
            if attempt.phase.is_terminal or attempt.phase in (LoginPhase.AUTHENTICATING, LoginPhase.PROVISIONING):
                raise ChallengeInvalid()
            verified = attempt.phase is LoginPhase.CHALLENGE_VERIFIED
            if verified:
                attempt.phase = LoginPhase.AUTHENTICATING
        if not verified:
            exc = ChallengeRequired()
            self._fail(attempt, exc)
            raise exc

    def _succeed(self, attempt: LoginAttempt, account: Account) -> Session:
        session = self._issuer.issue(account)
        with self._lock:
            attempt.phase = LoginPhase.SUCCEEDED
            attempt.account = account
            attempt.session = session
        self._finish(attempt)
        logger.info("Login attempt %s succeeded for account %s", attempt.id, account.id)
        return session

    def abort(self, attempt: LoginAttempt, error: AuthError) -> None:
        """Fail the attempt from outside a submit (e.g. the OAuth code exchange broke)."""
        self._fail(attempt, error)

    def _fail(self, attempt: LoginAttempt, exc: BaseException) -> None:
        with self._lock:
            # A submit on an already-finished attempt must not rewrite its outcome.
            if attempt.phase.is_terminal:
                return
            attempt.phase = LoginPhase.FAILED
            attempt.error = exc if isinstance(exc, AuthError) else None
        self._finish(attempt)
        if isinstance(exc, AuthError):
            logger.info("Login attempt %s failed: %s", attempt.id, exc.code)
        else:
            logger.warning("Login attempt %s aborted by %s", attempt.id, type(exc).__name__)

    def _finish(self, attempt: LoginAttempt) -> None:
        if attempt.challenge is not None:
            self._gate.discard(attempt.challenge.value)
        self.attempts.forget(attempt.id)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def resolve_provisioning(self, attempt: LoginAttempt, password: str | None, confirm: str | None = None) -> bool:
        """Answer the attempt's pending provisioning request.

        password=None cancels (idempotent). A password must be non-empty and
        match `confirm` when one is given; a mismatch leaves the request
        pending so the user can try again. Returns True if this call settled
        the request.
        """
        if password is None:
            return attempt.prompt.cancel()
        if not password:
            raise PolicyViolation("Password is required")
        validate_password_bytes(password)
        validate_confirmation(password, confirm)
        return attempt.prompt.resolve(password)

    async def start_federated(self, attempt: LoginAttempt, provider_token) -> LoginAttempt:
        """Run login_federated() as a task; return once it finishes or parks in PROVISIONING.

        Raises the task's AuthError if it finished with one.
        """
        attempt.task = asyncio.create_task(self.login_federated(attempt, provider_token))
        attempt.task.add_done_callback(_retrieve_outcome)
        opened = asyncio.create_task(attempt.prompt.wait_opened())
        try:
            await asyncio.wait({attempt.task, opened}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            opened.cancel()
        if attempt.task.done():
            attempt.task.result()
        return attempt

    async def complete_provisioning(
        self,
        attempt: LoginAttempt,
        password: str | None,
        confirm: str | None = None,
    ) -> Session:
        """Resolve the parked request and wait for the federated login to finish."""
        if attempt.task is None or attempt.phase is not LoginPhase.PROVISIONING:
            raise AttemptNotFound()
        self.resolve_provisioning(attempt, password, confirm)
        return await attempt.task

    def abandon_stale(self) -> int:
        """Cancel or fail attempts older than attempt_ttl_seconds. Returns the number abandoned.

        Parked provisioning requests are cancelled so their task fails with
        ProvisioningAborted, and a federated task still talking to the
        provider is cancelled outright. A credential check already running in
        a worker thread finishes on its own and is left alone. Everything
        else is failed directly. Must run on the server loop when federated
        attempts are in flight.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._settings.attempt_ttl_seconds)
        abandoned = 0
        for attempt in self.attempts.older_than(cutoff):
            if attempt.phase is LoginPhase.PROVISIONING:
                attempt.prompt.cancel()
            elif attempt.phase is LoginPhase.AUTHENTICATING:
                if attempt.task is None or attempt.task.done():
                    continue
                attempt.task.cancel()
            else:
                self.abort(attempt, ChallengeInvalid("Login attempt abandoned"))
            abandoned += 1
        self.attempts.purge_finished(cutoff)
        if abandoned:
            logger.info("Abandoned %d stale login attempt(s)", abandoned)
        return abandoned

    # ------------------------------------------------------------------
    # Account self-service
    # ------------------------------------------------------------------

    def username_available(self, username: str) -> bool:
        """Sign-up form check. Raises PolicyViolation for a name that could never be registered."""
        validate_username(username)
        return self._store.get_by_username(username) is None

    def change_password(
        self,
        account: Account,
        current: str,
        new: str,
        confirm: str | None = None,
        keep_session: str | None = None,
    ) -> Account:
        """Replace the account's password after re-checking the current one.

        The new password goes through the full policy and must differ from
        the current one. Any active session other than `keep_session` ends
        without a termination signal.
        """
        self._store.verify_credentials(account.username, current)
        validate_password(new, confirm)
        if new == current:
            raise PolicyViolation("New password must be different from the current password")
        self._store.update_account(account.id, hashed_password=hash_password(new))
        ended = self._issuer.end_others(account.id, keep_session)
        logger.info("Password changed for account %s (%d other session(s) ended)", account.id, ended)
        return self._store.get_by_id(account.id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, username: str, password: str, confirm: str | None = None) -> Account:
        """Self-registration. Creates an ACTIVE USER account; does not log in."""
        if not self._settings.self_registration_enabled:
            raise RegistrationDisabled()
        validate_username(username)
        validate_password(password, confirm)
        if self._store.get_by_username(username) is not None:
            raise UsernameTaken()
        account = Account(
            username=username,
            role=Role.USER,
            status=AccountStatus.ACTIVE,
            hashed_password=hash_password(password),
        )
        try:
            account.id = self._store.create_account(account)
        except IntegrityError as exc:
            raise UsernameTaken() from exc
        logger.info("Registered account %s (%s)", account.id, username)
        return account
