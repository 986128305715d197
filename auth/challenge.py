"""
auth/challenge.py -- ChallengeGate: single-use anti-bot challenge tokens.

Token lifecycle:
  issue()  -> fresh token, registered in the gate.
  verify() -> asks the challenge-verification service about the widget's
              response; on success the token is consumed (check-then-consume
              under a lock, so two concurrent verifications of one token
              cannot both succeed). On failure the token is discarded.
  expire() -> provider expiry notification; the token can no longer verify.

A token that is unknown, consumed or expired fails with ChallengeInvalid.
The caller must then request a fresh token; there is no retry on the same one.

TurnstileVerifier talks to Cloudflare Turnstile's siteverify endpoint. Network
failures verify as False (fail closed) and are logged at WARNING.
"""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol

import requests

from auth.errors import ChallengeInvalid
from auth.models import ChallengeToken

logger = logging.getLogger("gatehouse.auth.challenge")


class ChallengeVerifier(Protocol):
    def verify_challenge_response(self, token: str, response: str) -> bool: ...


class TurnstileVerifier:
    """Challenge-verification service backed by Cloudflare Turnstile."""

    def __init__(self, secret_key: str, verify_url: str, timeout: float = 10) -> None:
        self._secret_key = secret_key
        self._verify_url = verify_url
        self._timeout = timeout
        # max_redirects=3: siteverify never redirects; a long chain is suspicious.
        self._session = requests.Session()
        self._session.max_redirects = 3

    def verify_challenge_response(self, token: str, response: str) -> bool:
        """POST the widget response to siteverify.

        The gate's token value is sent as idempotency_key, so a retried
        network call for the same token is not counted as a replay by
        Cloudflare.
        """
        try:
            resp = self._session.post(
                self._verify_url,
                data={"secret": self._secret_key, "response": response, "idempotency_key": token},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            outcome = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Turnstile verification unavailable: %s", e)
            return False
        if not outcome.get("success", False):
            logger.info("Turnstile rejected challenge response: %s", outcome.get("error-codes", []))
            return False
        return True

    def close(self) -> None:
        self._session.close()


class ChallengeGate:
    def __init__(self, verifier: ChallengeVerifier, ttl_seconds: int) -> None:
        self._verifier = verifier
        self._ttl = timedelta(seconds=ttl_seconds)
        self._tokens: dict[str, ChallengeToken] = {}
        self._lock = threading.Lock()

    def issue(self) -> ChallengeToken:
        token = ChallengeToken(value=secrets.token_urlsafe(24), issued_at=datetime.now(timezone.utc))
        with self._lock:
            self._tokens[token.value] = token
        return token

    def verify(self, token_value: str, response: str) -> bool:
        """Verify `response` for the token and consume it. Returns True or raises ChallengeInvalid.

        The external call runs outside the lock; the token is claimed before
        the call so a concurrent verify() of the same token sees it as taken.
        """
        with self._lock:
            token = self._tokens.get(token_value)
            if token is None or token.consumed or token.expired:
                raise ChallengeInvalid()
            if self._is_stale(token):
                token.expired = True
                self._tokens.pop(token_value, None)
                raise ChallengeInvalid()
            # Claim: from here on a second verify() of this token fails.
            token.consumed = True

        if not self._verifier.verify_challenge_response(token_value, response):
            with self._lock:
                token.expired = True
                self._tokens.pop(token_value, None)
            logger.info("Challenge verification failed; token discarded")
            raise ChallengeInvalid()
        return True

    def expire(self, token_value: str) -> None:
        """Provider expiry notification. Idempotent; unknown tokens are ignored."""
        with self._lock:
            token = self._tokens.pop(token_value, None)
            if token is not None:
                token.expired = True

    def discard(self, token_value: str) -> None:
        """Forget a token (consumed or not). Used when an attempt ends."""
        with self._lock:
            token = self._tokens.pop(token_value, None)
            if token is not None and not token.consumed:
                token.expired = True

    def purge_expired(self) -> int:
        """Drop tokens past their TTL. Returns the number dropped."""
        with self._lock:
            stale = [value for value, token in self._tokens.items() if self._is_stale(token)]
            for value in stale:
                self._tokens.pop(value).expired = True
        return len(stale)

    def _is_stale(self, token: ChallengeToken) -> bool:
        return datetime.now(timezone.utc) - token.issued_at >= self._ttl
