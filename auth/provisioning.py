"""
auth/provisioning.py -- ProvisioningPrompt: out-of-band password collection.

A first-time federated user has no local password. The coordinator asks for
one through the prompt and suspends until exactly one answer arrives:
a password (Resolved) or None on explicit cancel (Cancelled).

Shape:
  prompt.request(identity) -> asyncio.Future[str | None]
  prompt.resolve(password) / prompt.cancel() -> bool

Every request gets its own ProvisioningResolver. The resolver is single-use:
the first call settles the future, later calls are ignored and return False.
Only one request may be outstanding per prompt; asking again before the
first settles is a programming error and raises RuntimeError.

All calls must happen on the event loop that owns the future.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from auth.models import FederatedIdentity, ProvisioningStatus

logger = logging.getLogger("gatehouse.auth.provisioning")


@dataclass
class ProvisioningRequest:
    identity: FederatedIdentity
    status: ProvisioningStatus = ProvisioningStatus.PENDING
    result: str | None = None
    future: asyncio.Future = field(default=None, repr=False)


class ProvisioningResolver:
    """Settles one ProvisioningRequest. Consumed on first use."""

    def __init__(self, request: ProvisioningRequest) -> None:
        self._request: ProvisioningRequest | None = request

    @property
    def used(self) -> bool:
        return self._request is None

    def __call__(self, password: str | None) -> bool:
        request, self._request = self._request, None
        if request is None or request.future.done():
            return False
        if password is None:
            request.status = ProvisioningStatus.CANCELLED
        else:
            request.status = ProvisioningStatus.RESOLVED
            request.result = password
        request.future.set_result(password)
        return True


class ProvisioningPrompt:
    def __init__(self, on_request: Callable[[FederatedIdentity], None] | None = None) -> None:
        self._on_request = on_request
        self._request: ProvisioningRequest | None = None
        self._resolver: ProvisioningResolver | None = None
        self._opened = asyncio.Event()

    @property
    def request_state(self) -> ProvisioningRequest | None:
        return self._request

    @property
    def pending(self) -> bool:
        return self._request is not None and self._request.status is ProvisioningStatus.PENDING

    def request(self, identity: FederatedIdentity) -> asyncio.Future:
        if self.pending:
            raise RuntimeError("A provisioning request is already outstanding for this login attempt")
        future = asyncio.get_running_loop().create_future()
        self._request = ProvisioningRequest(identity=identity, future=future)
        self._resolver = ProvisioningResolver(self._request)
        if self._on_request is not None:
            self._on_request(identity)
        self._opened.set()
        logger.info("Provisioning requested for %s identity %s", identity.provider, identity.email)
        return future

    async def wait_opened(self) -> None:
        """Return once a request has been opened on this prompt."""
        await self._opened.wait()

    def resolve(self, password: str) -> bool:
        if password is None:
            raise ValueError("resolve() needs a password; use cancel() to abort")
        return self._settle(password)

    def cancel(self) -> bool:
        """Cancel the outstanding request. Idempotent: later calls return False."""
        return self._settle(None)

    def _settle(self, password: str | None) -> bool:
        if self._resolver is None:
            return False
        settled = self._resolver(password)
        if not settled:
            logger.debug("Ignored a second provisioning resolution")
        return settled
