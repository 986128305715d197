"""Unit tests for auth/provisioning.py -- ProvisioningPrompt.

Async paths run under asyncio.run() inside plain pytest tests.

Covers:
- resolve(password) settles the future with the password
- cancel() settles with None, and is idempotent
- The resolver is single-use: later resolutions are ignored
- A second request while one is pending is a RuntimeError
- resolve(None) is refused; cancel() is the only way to abort
- wait_opened() returns once a request exists
"""

import asyncio

import pytest
from conftest import github_identity

from auth.models import ProvisioningStatus
from auth.provisioning import ProvisioningPrompt

IDENTITY = github_identity("new@example.com", "gh-1")


def test_resolve_delivers_password():
    async def scenario():
        prompt = ProvisioningPrompt()
        future = prompt.request(IDENTITY)
        assert prompt.pending
        assert prompt.resolve("p@ss1") is True
        return await future, prompt

    password, prompt = asyncio.run(scenario())
    assert password == "p@ss1"
    assert prompt.request_state.status is ProvisioningStatus.RESOLVED
    assert not prompt.pending


def test_cancel_delivers_none():
    async def scenario():
        prompt = ProvisioningPrompt()
        future = prompt.request(IDENTITY)
        assert prompt.cancel() is True
        return await future, prompt

    result, prompt = asyncio.run(scenario())
    assert result is None
    assert prompt.request_state.status is ProvisioningStatus.CANCELLED


def test_cancel_is_idempotent():
    async def scenario():
        prompt = ProvisioningPrompt()
        prompt.request(IDENTITY)
        return prompt.cancel(), prompt.cancel(), prompt.cancel()

    assert asyncio.run(scenario()) == (True, False, False)


def test_only_first_resolution_counts():
    async def scenario():
        prompt = ProvisioningPrompt()
        future = prompt.request(IDENTITY)
        first = prompt.resolve("first")
        second = prompt.resolve("second")
        late_cancel = prompt.cancel()
        return first, second, late_cancel, await future

    assert asyncio.run(scenario()) == (True, False, False, "first")


def test_cancel_without_request_is_noop():
    assert ProvisioningPrompt().cancel() is False


def test_second_pending_request_is_refused():
    async def scenario():
        prompt = ProvisioningPrompt()
        prompt.request(IDENTITY)
        with pytest.raises(RuntimeError):
            prompt.request(IDENTITY)

    asyncio.run(scenario())


def test_resolve_requires_a_password():
    async def scenario():
        prompt = ProvisioningPrompt()
        prompt.request(IDENTITY)
        with pytest.raises(ValueError):
            prompt.resolve(None)
        assert prompt.pending

    asyncio.run(scenario())


def test_wait_opened_and_on_request_hook():
    seen = []

    async def scenario():
        prompt = ProvisioningPrompt(on_request=seen.append)
        waiter = asyncio.create_task(prompt.wait_opened())
        await asyncio.sleep(0)
        assert not waiter.done()
        prompt.request(IDENTITY)
        await asyncio.wait_for(waiter, timeout=1)
        prompt.cancel()

    asyncio.run(scenario())
    assert seen == [IDENTITY]
