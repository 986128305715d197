"""
auth/federation.py -- FederatedLoginCoordinator.

Turns an identity-provider token into a local account:

  1. exchange the provider token for a FederatedIdentity
  2. look the account up by (provider, subject), then by email
  3. found + active          -> return it
  4. not found               -> suspend on the attempt's ProvisioningPrompt;
                                a password creates the account, a cancel
                                fails with ProvisioningAborted and writes nothing
  5. found + locked/deleted  -> AccountLocked / AccountDeleted, no provisioning
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import IntegrityError

from auth.errors import AccountDeleted, AccountLocked, AuthError, ProviderExchangeFailed, ProvisioningAborted
from auth.models import Account, AccountStatus, FederatedIdentity, Role
from auth.provisioning import ProvisioningPrompt
from auth.store import AccountStore
from auth.tokens import hash_password

logger = logging.getLogger("gatehouse.auth.federation")


class IdentityProvider(Protocol):
    async def exchange_token(self, provider_token) -> FederatedIdentity: ...


class FederatedLoginCoordinator:
    def __init__(self, provider: IdentityProvider, store: AccountStore) -> None:
        self._provider = provider
        self._store = store

    async def authenticate(self, provider_token, prompt: ProvisioningPrompt) -> Account:
        identity = await self._exchange(provider_token)

        account = self._find(identity)
        if account is not None:
            return self._admit(account)

        password = await prompt.request(identity)
        if password is None:
            logger.info("Provisioning cancelled for %s identity %s", identity.provider, identity.email)
            raise ProvisioningAborted()
        return self._provision(identity, password)

    async def _exchange(self, provider_token) -> FederatedIdentity:
        try:
            return await self._provider.exchange_token(provider_token)
        except AuthError:
            raise
        except Exception as exc:
            # Provider adapters raise a mix of ValueError, authlib and httpx
            # errors; the login boundary only needs to know the exchange failed.
            logger.warning("Identity provider exchange failed: %s", exc)
            raise ProviderExchangeFailed(str(exc)) from exc

    def _find(self, identity: FederatedIdentity) -> Account | None:
        account = self._store.get_by_oauth(identity.provider, identity.provider_subject_id)
        if account is not None:
            return account
        account = self._store.get_by_email(identity.email)
        if account is None:
            return None
        if account.oauth_subject is None and account.status is AccountStatus.ACTIVE:
            # First federated login for an existing (e.g. admin pre-created) account.
            self._store.link_oauth(account.id, identity.provider, identity.provider_subject_id)
            account.oauth_provider = identity.provider
            account.oauth_subject = identity.provider_subject_id
            logger.info("Linked %s identity to account %s", identity.provider, account.id)
        return account

    def _admit(self, account: Account) -> Account:
        if account.status is AccountStatus.LOCKED:
            raise AccountLocked()
        if account.status is AccountStatus.DELETED:
            raise AccountDeleted()
        return account

    def _provision(self, identity: FederatedIdentity, password: str) -> Account:
        account = Account(
            username=identity.email,
            role=Role.USER,
            hashed_password=hash_password(password),
            email=identity.email,
            oauth_provider=identity.provider,
            oauth_subject=identity.provider_subject_id,
            display_name=identity.display_name,
            photo_ref=identity.photo_ref,
        )
        try:
            account.id = self._store.create_account(account)
        except IntegrityError:
            # A concurrent provisioning for the same email won the insert.
            existing = self._store.get_by_email(identity.email)
            if existing is None:
                raise
            logger.info("Provisioning raced for %s; using the existing account", identity.email)
            return self._admit(existing)
        logger.info("Provisioned account %s for %s identity", account.id, identity.provider)
        return account
