"""
auth/sessions.py -- SessionIssuer: mints, supersedes and invalidates sessions.

Single-active-session invariant: for any account at most one session has
superseded_by == None. issue() enforces it atomically: the read of the active
session, the supersede, the CONFLICT signal and the insert of the new session
are one database transaction, serialized in-process by a lock. Concurrent
logins for one account therefore end with the last writer active; the loser
finds out via CONFLICT on its next action, not preemptively.

invalidate() serves out-of-band callers (admin lock, account deletion, expiry
detection): it removes the session and writes LOCKED / DELETED / EXPIRED.
CONFLICT is reserved for issue().
"""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone

from auth.errors import SessionTerminated
from auth.models import Account, Session, TerminationSignal
from auth.store import AccountStore

logger = logging.getLogger("gatehouse.auth.sessions")

_INVALIDATION_REASONS = frozenset({TerminationSignal.LOCKED, TerminationSignal.DELETED, TerminationSignal.EXPIRED})


class SessionIssuer:
    def __init__(self, store: AccountStore, ttl_seconds: int, signal_retention_seconds: int = 7 * 24 * 3600) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._signal_retention = timedelta(seconds=signal_retention_seconds)
        self._lock = threading.Lock()

    def issue(self, account: Account) -> Session:
        """Mint the account's new active session, superseding any prior one."""
        now = datetime.now(timezone.utc)
        session = Session(
            account_id=account.id,
            token=secrets.token_urlsafe(32),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            superseded = self._store.replace_active_session(session, on_supersede=TerminationSignal.CONFLICT)
            self._store.update_last_login(account.id)
        if superseded:
            logger.info(
                "Session for account %s superseded %d prior session(s); CONFLICT signalled",
                account.id,
                len(superseded),
            )
        else:
            logger.info("Session issued for account %s", account.id)
        return session

    def invalidate(self, token: str, reason: TerminationSignal) -> bool:
        """End an active session out of band and signal `reason` to its context.

        Returns False (and writes nothing) when the token is unknown, already
        superseded or already ended.
        """
        if reason not in _INVALIDATION_REASONS:
            raise ValueError(f"invalidate() does not accept {reason.value!r}; CONFLICT is written by issue()")
        with self._lock:
            removed = self._store.remove_session(token, signal=reason)
        if removed:
            logger.info("Session invalidated (%s)", reason.value)
        return removed

    def invalidate_account(self, account_id: int, reason: TerminationSignal) -> bool:
        """Invalidate the account's active session, if it has one."""
        active = self._store.get_active_session(account_id)
        if active is None:
            return False
        return self.invalidate(active.token, reason)

    def end(self, token: str) -> bool:
        """Plain logout: remove the session without leaving a signal behind."""
        with self._lock:
            return self._store.remove_session(token, signal=None)

    def check(self, token: str) -> Session:
        """Return the live session for `token` or raise SessionTerminated.

        A session found past its expiry is invalidated on the spot, which is
        the expiry-detection path that writes EXPIRED.
        """
        session = self._store.get_session(token)
        if session is None:
            raise SessionTerminated()
        if not session.is_active:
            raise SessionTerminated(TerminationSignal.CONFLICT)
        if session.expires_at <= datetime.now(timezone.utc):
            self.invalidate(token, TerminationSignal.EXPIRED)
            raise SessionTerminated(TerminationSignal.EXPIRED)
        return session

    def end_others(self, account_id: int, keep: str | None) -> int:
        """End the account's active session unless it is `keep`. No signal is written."""
        active = self._store.get_active_session(account_id)
        if active is None or active.token == keep:
            return 0
        return 1 if self.end(active.token) else 0

    def purge_expired(self) -> int:
        """Expire lapsed active sessions and drop lapsed superseded rows.

        Unread signals older than the retention window are dropped too; a
        context whose client never came back would otherwise keep its row
        forever. Returns the number of sessions touched. Called by the
        background purge loop and by the CLI.
        """
        now = datetime.now(timezone.utc)
        stale_signals = self._store.delete_signals_before(now - self._signal_retention)
        expired = 0
        for session in self._store.list_expired_active_sessions(now):
            if self.invalidate(session.token, TerminationSignal.EXPIRED):
                expired += 1
        dropped = self._store.delete_superseded_sessions(now)
        if expired or dropped or stale_signals:
            logger.info(
                "Session purge: %d expired, %d superseded rows dropped, %d unread signals dropped",
                expired,
                dropped,
                stale_signals,
            )
        return expired + dropped
