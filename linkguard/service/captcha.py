from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Union

import httpx

from linkguard.logging import get_logger
from linkguard.service.errors import ValidationError
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import CaptchaChallenge, utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


class CaptchaVerifier(Protocol):
    async def verify(self, response: str, *, remote_ip: Optional[str] = None) -> bool:
        ...


class HttpCaptchaVerifier:
    """Checks widget responses against a siteverify-style endpoint."""

    def __init__(
        self,
        verify_url: str,
        secret: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.verify_url = verify_url
        self.secret = secret
        self.timeout = timeout
        self._transport = transport

    async def verify(self, response: str, *, remote_ip: Optional[str] = None) -> bool:
        form = {"secret": self.secret, "response": response}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.verify_url, data=form)
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("captcha_verify_unavailable", error=str(exc))
            return False
        return bool(payload.get("success"))


class CaptchaGate:
    """Issues and redeems single-use CAPTCHA challenges for a subject.

    A challenge is bound to the subject it was issued for (the email or IP
    the rate limiter asked about) and can unlock exactly one attempt.
    """

    def __init__(
        self,
        store: Union[PostgresStore, MemoryStore],
        verifier: Optional[CaptchaVerifier],
        *,
        ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.ttl = ttl
        self.clock = clock

    def issue(self, subject: str) -> CaptchaChallenge:
        now = self.clock()
        challenge = CaptchaChallenge(
            id=secrets.token_urlsafe(16),
            subject=subject,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        return self.store.insert_captcha(challenge)

    async def redeem(
        self,
        challenge_id: Optional[str],
        response: Optional[str],
        subject: str,
        *,
        remote_ip: Optional[str] = None,
    ) -> bool:
        """Verify ``response`` and consume the challenge; True means one attempt is unlocked."""

        if not challenge_id or not response:
            return False
        if len(challenge_id) > 128 or len(response) > 4096:
            raise ValidationError("captcha payload too large", detail={"field": "captcha"})
        if self.verifier is None:
            logger.warning("captcha_verifier_missing")
            return False
        challenge = self.store.get_captcha(challenge_id)
        if not challenge or challenge.subject != subject:
            return False
        # Third-party call happens before any store write
        if not await self.verifier.verify(response, remote_ip=remote_ip):
            return False
        now = self.clock()
        if not self.store.mark_captcha_solved(challenge_id, now):
            return False
        return self.store.consume_captcha(challenge_id, subject, now)
