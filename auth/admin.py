"""
auth/admin.py -- Account administration: lock, unlock, delete, role changes.

These are the out-of-band session terminators. Locking or deleting an account
invalidates its active session through SessionIssuer, which leaves LOCKED /
DELETED for the client's next visit to the login boundary.

`actor` is the admin doing the change. actor=None is the management CLI,
which runs with shell access to the database and skips the rank checks.

Rank rules:
  - nobody manages their own account here (no self-lock, self-delete or
    self-promotion)
  - ADMIN manages USER accounts only
  - SUPER_ADMIN manages everyone else
  - a role can only be granted by someone who could manage that role
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import AccountNotFound, Forbidden, UsernameTaken
from auth.models import Account, AccountStatus, Role, TerminationSignal
from auth.policy import validate_password_bytes
from auth.sessions import SessionIssuer
from auth.store import AccountStore
from auth.tokens import hash_password

logger = logging.getLogger("gatehouse.auth.admin")


class AccountAdmin:
    def __init__(self, store: AccountStore, issuer: SessionIssuer) -> None:
        self._store = store
        self._issuer = issuer

    def get(self, account_id: int) -> Account:
        account = self._store.get_by_id(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    def get_by_username(self, username: str) -> Account:
        account = self._store.get_by_username(username)
        if account is None:
            raise AccountNotFound()
        return account

    def create(self, username: str, password: str | None, role: Role, actor: Account | None = None) -> Account:
        """Create an account directly. password=None pre-creates a provider-only account."""
        if actor is not None and not actor.role.can_manage(role):
            raise Forbidden("You cannot create an account with that role.")
        if password:
            validate_password_bytes(password)
        account = Account(
            username=username,
            role=role,
            hashed_password=hash_password(password) if password else None,
            email=username if "@" in username else None,
        )
        try:
            account.id = self._store.create_account(account)
        except IntegrityError as exc:
            raise UsernameTaken() from exc
        logger.info("Account %s (%s) created with role %s", account.id, username, role.value)
        return self._store.get_by_id(account.id)

    def lock(self, account_id: int, actor: Account | None = None) -> Account:
        target = self._authorized_target(account_id, actor)
        self._store.update_account(target.id, status=AccountStatus.LOCKED)
        self._issuer.invalidate_account(target.id, TerminationSignal.LOCKED)
        logger.info("Account %s locked by %s", target.id, _who(actor))
        return self.get(target.id)

    def unlock(self, account_id: int, actor: Account | None = None) -> Account:
        """Reactivate a locked or soft-deleted account."""
        target = self._authorized_target(account_id, actor)
        self._store.update_account(target.id, status=AccountStatus.ACTIVE)
        logger.info("Account %s reactivated by %s", target.id, _who(actor))
        return self.get(target.id)

    def delete(self, account_id: int, actor: Account | None = None) -> Account:
        """Soft delete: the row stays so a later login can say why it failed."""
        target = self._authorized_target(account_id, actor)
        self._store.update_account(target.id, status=AccountStatus.DELETED)
        self._issuer.invalidate_account(target.id, TerminationSignal.DELETED)
        logger.info("Account %s deleted by %s", target.id, _who(actor))
        return self.get(target.id)

    def set_role(self, account_id: int, role: Role, actor: Account | None = None) -> Account:
        target = self._authorized_target(account_id, actor)
        if actor is not None and not actor.role.can_manage(role):
            raise Forbidden("You cannot grant a role at or above your own.")
        self._store.update_account(target.id, role=role)
        logger.info("Account %s role set to %s by %s", target.id, role.value, _who(actor))
        return self.get(target.id)

    def _authorized_target(self, account_id: int, actor: Account | None) -> Account:
        target = self.get(account_id)
        if actor is None:
            return target
        if actor.id == target.id:
            raise Forbidden("You cannot change your own account.")
        if not actor.role.can_manage(target.role):
            raise Forbidden()
        return target


def _who(actor: Account | None) -> str:
    return f"account {actor.id}" if actor is not None else "cli"
