"""
auth/signals.py -- Exactly-once delivery of session termination reasons.

A client logged out elsewhere (superseded, locked, deleted, expired) learns
why on its next visit to the login boundary. There is no push channel: the
boundary polls once on activation.

Semantics:
  - One slot per context (the session token the client last held).
  - write() overwrites a pending signal: last-write-wins, never a queue.
  - peek_and_clear() reads and clears atomically. A failed read rolls back
    and the signal stays pending. A successful read is never repeated.

The slots live in the account database (termination_signals table), so
writers in other processes such as the management CLI reach the server.
"""

from __future__ import annotations

import logging
import threading

from auth.models import TerminationSignal
from auth.store import AccountStore

logger = logging.getLogger("gatehouse.auth.signals")


class SessionSignalChannel:
    def __init__(self, store: AccountStore) -> None:
        self._store = store
        self._lock = threading.Lock()

    def write(self, context: str, signal: TerminationSignal) -> None:
        with self._lock:
            self._store.put_signal(context, signal)
        logger.info("Termination signal %s pending for context %s", signal.value, _short(context))

    def peek_and_clear(self, context: str | None) -> TerminationSignal | None:
        """Return and clear the pending signal for `context`, or None.

        None context (a first visit with no prior session) reads nothing.
        """
        if not context:
            return None
        with self._lock:
            signal = self._store.take_signal(context)
        if signal is not None:
            logger.info("Delivered termination signal %s to context %s", signal.value, _short(context))
        return signal


def _short(context: str) -> str:
    # Session tokens are credentials; log only a prefix.
    return f"{context[:8]}..."
