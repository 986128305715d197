"""
auth/credentials.py -- CredentialVerifier: username/password checks.

Pure delegation to the credential store; this class keeps no state. The
store raises InvalidCredentials, AccountLocked or AccountDeleted, and those
distinct kinds propagate unchanged so the login boundary can show the right
message for each.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.errors import AuthError
from auth.models import Account

logger = logging.getLogger("gatehouse.auth.credentials")


class CredentialStore(Protocol):
    def verify_credentials(self, username: str, password: str) -> Account: ...


class CredentialVerifier:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def verify(self, username: str, password: str) -> Account:
        try:
            return self._store.verify_credentials(username, password)
        except AuthError as exc:
            # Never log the password; the username is already in access logs.
            logger.info("Credential check failed for %r: %s", username, exc.code)
            raise
