from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

from linkguard.config import FingerprintEnforcement, Settings
from linkguard.logging import get_logger, hash_for_log, set_correlation_id
from linkguard.service.audit import AuditEventType, AuditLog
from linkguard.service.captcha import CaptchaGate
from linkguard.service.csrf import CsrfGuard
from linkguard.service.email import Mailer, MailerSendError, redact_email, render_magic_link_email
from linkguard.service.errors import (
    AccountLockedError,
    RateLimitExceededError,
    ServiceError,
    TokenError,
)
from linkguard.service.fingerprint import FingerprintBinder, canonical_ip
from linkguard.service.geo import GeoInfo, GeoLookupError, GeoResolver
from linkguard.service.rate_limit import (
    SCOPE_EMAIL,
    SCOPE_EMAIL_IP,
    SCOPE_IP,
    AttemptOutcome,
    Decision,
    RateLimiter,
    most_restrictive,
    normalize_email,
)
from linkguard.service.sessions import SessionManager
from linkguard.service.tokens import IssuedToken, TokenService, VerifyStatus
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import Session, utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)

ScopeKeys = List[Tuple[str, str]]


@dataclass(frozen=True)
class RequestContext:
    """Per-request origin data, passed explicitly into every flow."""

    ip: str
    user_agent: Optional[str] = None
    captcha_challenge_id: Optional[str] = None
    captcha_response: Optional[str] = None
    correlation_id: Optional[str] = None


class RequestLinkStatus(str, Enum):
    LINK_SENT = "link_sent"
    CAPTCHA_REQUIRED = "captcha_required"


class VerifyLinkStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    INVALID_LINK = "invalid_link"
    CAPTCHA_REQUIRED = "captcha_required"


@dataclass(frozen=True)
class RequestLinkOutcome:
    status: RequestLinkStatus
    captcha_challenge_id: Optional[str] = None
    # Populated only when links are delivered inline (non-production)
    link: Optional[str] = None


@dataclass(frozen=True)
class VerifyLinkOutcome:
    status: VerifyLinkStatus
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    csrf_token: Optional[str] = None
    captcha_challenge_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.status == VerifyLinkStatus.AUTHENTICATED


@dataclass(frozen=True)
class StateChangeOutcome:
    session: Session
    csrf_token: str


def _decision_error(decision: Decision) -> ServiceError:
    detail = {
        "scope": decision.scope,
        "reason": decision.reason,
        "locked_until": decision.locked_until.isoformat() if decision.locked_until else None,
    }
    if decision.reason == "lockout":
        return AccountLockedError("subject locked", detail=detail)
    return RateLimitExceededError("rate limit exceeded", detail=detail)


class AuthOrchestrator:
    """Composes the engine into the RequestLink and VerifyLink flows.

    Callers only ever see the closed outcome enums. Every internal reason
    (throttling, lockout, token state, fingerprint) is written to the audit
    trail first and then collapsed. ``ValidationError`` fails fast without a
    delay and ``StorageError`` propagates as a server error.

    Store calls happen outside any open transaction whenever a network call
    (mailer, GeoIP, CAPTCHA verification) is involved.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: Union[PostgresStore, MemoryStore],
        audit: AuditLog,
        fingerprints: FingerprintBinder,
        limiter: RateLimiter,
        tokens: TokenService,
        sessions: SessionManager,
        csrf: CsrfGuard,
        captcha: CaptchaGate,
        mailer: Mailer,
        geo: Optional[GeoResolver] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.audit = audit
        self.fingerprints = fingerprints
        self.limiter = limiter
        self.tokens = tokens
        self.sessions = sessions
        self.csrf = csrf
        self.captcha = captcha
        self.mailer = mailer
        self.geo = geo
        self._sleep = sleep
        self._rng = rng or random.SystemRandom()
        self.clock = clock

    # RequestLink
    async def request_link(self, email: str, ctx: RequestContext) -> RequestLinkOutcome:
        if ctx.correlation_id:
            set_correlation_id(ctx.correlation_id)
        email = normalize_email(email)
        ip = canonical_ip(ctx.ip)
        binding = self.fingerprints.derive(ctx.ip, ctx.user_agent)
        scopes: ScopeKeys = [
            (SCOPE_EMAIL, email),
            (SCOPE_IP, ip),
            (SCOPE_EMAIL_IP, f"{email}|{ip}"),
        ]

        decision = most_restrictive(
            self.limiter.check(SCOPE_EMAIL, email), self.limiter.check(SCOPE_IP, ip)
        )
        if decision.denied:
            # Success-shaped: never reveal throttling or account existence
            exc = _decision_error(decision)
            self.audit.record(
                AuditEventType.LINK_REQUEST_THROTTLED,
                email,
                {"ip": ip, "error_code": exc.error_code, **exc.detail},
            )
            logger.info("link_request_throttled", scope=decision.scope, reason=decision.reason)
            return RequestLinkOutcome(RequestLinkStatus.LINK_SENT)
        if decision.requires_captcha:
            subject = f"request:{email}|{ip}"
            if not await self._captcha_passes(ctx, subject, ip):
                return self._captcha_challenge_request(subject, email, ip, decision)

        now = self.clock()
        user = self.store.get_or_create_user(email, now)
        with self.store.transaction():
            superseded = self.tokens.supersede_live(user.id)
            issued = self.tokens.issue(user.id, binding.composite_hash)

        for scope, key in scopes:
            self.limiter.record_attempt(scope, key, AttemptOutcome.SUCCESS)

        link = self.build_link(issued)
        outcome = RequestLinkOutcome(RequestLinkStatus.LINK_SENT)
        if self.settings.deliver_links_inline:
            outcome = RequestLinkOutcome(RequestLinkStatus.LINK_SENT, link=link)
        else:
            await self._deliver(email, link, issued, ip)

        self.audit.record(
            AuditEventType.LINK_REQUESTED,
            email,
            {"ip": ip, "token_id": issued.token_id, "superseded": superseded},
        )
        return outcome

    def build_link(self, issued: IssuedToken) -> str:
        query = urlencode({"tid": issued.token_id, "s": issued.secret})
        return f"{self.settings.app_base_url.rstrip('/')}{self.settings.verify_path}?{query}"

    async def _deliver(self, email: str, link: str, issued: IssuedToken, ip: str) -> None:
        subject, body = render_magic_link_email(link, self.settings.token_ttl_minutes)
        try:
            await asyncio.to_thread(self.mailer.send, email, subject, body)
        except MailerSendError as exc:
            logger.error(
                "link_delivery_failed",
                to=redact_email(email),
                transient=exc.transient,
                error=exc.message,
            )
            self.audit.record(
                AuditEventType.LINK_DELIVERY_FAILED,
                email,
                {"ip": ip, "token_id": issued.token_id, "error": exc.message},
            )

    def _captcha_challenge_request(
        self, subject: str, email: str, ip: str, decision: Decision
    ) -> RequestLinkOutcome:
        challenge = self.captcha.issue(subject)
        self.audit.record(
            AuditEventType.CAPTCHA_REQUIRED,
            email,
            {"ip": ip, "flow": "request_link", "scope": decision.scope, "reason": decision.reason},
        )
        return RequestLinkOutcome(
            RequestLinkStatus.CAPTCHA_REQUIRED, captcha_challenge_id=challenge.id
        )

    async def _captcha_passes(self, ctx: RequestContext, subject: str, ip: str) -> bool:
        if not ctx.captcha_challenge_id:
            return False
        passed = await self.captcha.redeem(
            ctx.captcha_challenge_id, ctx.captcha_response, subject, remote_ip=ip
        )
        if not passed:
            self.audit.record(
                AuditEventType.CAPTCHA_FAILED,
                subject,
                {"ip": ip, "challenge_id": ctx.captcha_challenge_id},
            )
        return passed

    # VerifyLink
    async def verify_link(
        self, token_id: str, secret: str, ctx: RequestContext
    ) -> VerifyLinkOutcome:
        started = time.monotonic()
        if ctx.correlation_id:
            set_correlation_id(ctx.correlation_id)
        self.tokens.check_format(token_id, secret)
        ip = canonical_ip(ctx.ip)
        binding = self.fingerprints.derive(ctx.ip, ctx.user_agent)

        user_id = self.tokens.peek_user_id(token_id)
        user = self.store.get_user(user_id) if user_id else None
        scopes: ScopeKeys = [(SCOPE_IP, ip)]
        if user:
            scopes += [(SCOPE_EMAIL, user.email), (SCOPE_EMAIL_IP, f"{user.email}|{ip}")]
        subject = user.id if user else ip

        try:
            decision = most_restrictive(
                *[self.limiter.check(scope, key) for scope, key in scopes if scope != SCOPE_EMAIL]
            )
            if decision.denied:
                raise _decision_error(decision)
            if decision.requires_captcha:
                captcha_subject = f"verify:{ip}"
                if not await self._captcha_passes(ctx, captcha_subject, ip):
                    challenge = self.captcha.issue(captcha_subject)
                    self.audit.record(
                        AuditEventType.CAPTCHA_REQUIRED,
                        subject,
                        {"ip": ip, "flow": "verify_link", "scope": decision.scope},
                    )
                    return VerifyLinkOutcome(
                        VerifyLinkStatus.CAPTCHA_REQUIRED, captcha_challenge_id=challenge.id
                    )

            result = self.tokens.verify(token_id, secret, binding.composite_hash)
            fingerprint_warning = (
                result.status == VerifyStatus.FINGERPRINT_MISMATCH
                and self.settings.fingerprint_enforcement == FingerprintEnforcement.WARN
            )
            if not result.valid and not fingerprint_warning:
                raise result.as_error()
        except (RateLimitExceededError, AccountLockedError) as exc:
            self.audit.record(
                AuditEventType.LOGIN_THROTTLED,
                subject,
                {"ip": ip, "token_id": token_id, "error_code": exc.error_code, **exc.detail},
            )
            await self._flatten_timing(started)
            return VerifyLinkOutcome(VerifyLinkStatus.INVALID_LINK)
        except TokenError as exc:
            for scope, key in scopes:
                self.limiter.record_attempt(scope, key, AttemptOutcome.FAILURE)
            self.audit.record(
                AuditEventType.LOGIN_FAILED,
                subject,
                {"ip": ip, "token_id": token_id, "reason": exc.error_code},
            )
            await self._flatten_timing(started)
            return VerifyLinkOutcome(VerifyLinkStatus.INVALID_LINK)

        return await self._complete_login(
            str(result.user_id),
            token_id,
            ip,
            ctx,
            binding.composite_hash,
            scopes,
            fingerprint_warning,
        )

    async def _complete_login(
        self,
        user_id: str,
        token_id: str,
        ip: str,
        ctx: RequestContext,
        fingerprint_hash: str,
        scopes: ScopeKeys,
        fingerprint_warning: bool,
    ) -> VerifyLinkOutcome:
        for scope, key in scopes:
            self.limiter.record_attempt(scope, key, AttemptOutcome.SUCCESS)
        if self.settings.lockout_auto_clear_on_success:
            for scope, key in scopes:
                if scope != SCOPE_IP:
                    self.limiter.clear_lockout(scope, key, actor="login_success")

        geo = await self._resolve_geo(ip)
        previous = self.store.latest_session_for_user(user_id)
        snapshot: Dict[str, Any] = {
            "ip": ip,
            "user_agent": (ctx.user_agent or "")[:256],
        }
        if geo and geo.country:
            snapshot["country"] = geo.country

        with self.store.transaction():
            session = self.sessions.create(user_id, snapshot, fingerprint_hash=fingerprint_hash)
            csrf_token = self.csrf.issue(session.id)

        if fingerprint_warning:
            self.audit.record(
                AuditEventType.FINGERPRINT_MISMATCH,
                user_id,
                {"ip": ip, "token_id": token_id, "session_id": session.id, "enforcement": "warn"},
            )
        self.audit.record(
            AuditEventType.LOGIN_SUCCESS,
            user_id,
            {"ip": ip, "token_id": token_id, "session_id": session.id},
        )
        previous_country = (previous.device_snapshot or {}).get("country") if previous else None
        if geo and geo.country and previous_country and previous_country != geo.country:
            self.audit.record(
                AuditEventType.GEOIP_CHANGED,
                user_id,
                {
                    "previous_country": previous_country,
                    "country": geo.country,
                    "session_id": session.id,
                },
            )
        logger.info("login_success", user_id=user_id, session_hash=hash_for_log(session.id))
        return VerifyLinkOutcome(
            VerifyLinkStatus.AUTHENTICATED,
            user_id=user_id,
            session_id=session.id,
            csrf_token=csrf_token,
        )

    async def _resolve_geo(self, ip: str) -> Optional[GeoInfo]:
        if self.geo is None:
            return None
        try:
            return await self.geo.lookup(ip)
        except GeoLookupError as exc:
            logger.warning("geoip_lookup_failed", error=str(exc))
            return None

    async def _flatten_timing(self, started: float) -> None:
        """Pad a failed verification to a random total duration within the configured bounds."""
        low = self.settings.verify_delay_min_ms / 1000
        high = self.settings.verify_delay_max_ms / 1000
        target = self._rng.uniform(low, high)
        remaining = target - (time.monotonic() - started)
        await self._sleep(max(0.0, remaining))

    # Session-guarded operations
    async def perform_state_change(
        self, session_id: str, csrf_token: Optional[str]
    ) -> StateChangeOutcome:
        """Rotate the session's CSRF value, then renew the session.

        Raises a ``SessionError`` subclass or ``NotFoundError`` for a dead
        session and ``CsrfMismatchError`` for a bad token. A rejected token
        leaves the session's expiry untouched.
        """
        self.sessions.require_active(session_id)
        new_token = self.csrf.rotate(session_id, csrf_token)
        session = self.sessions.touch(session_id)
        return StateChangeOutcome(session=session, csrf_token=new_token)

    async def logout(self, session_id: str, csrf_token: Optional[str]) -> bool:
        self.csrf.rotate(session_id, csrf_token)
        return self.sessions.revoke(session_id, reason="logout")

    async def logout_everywhere(
        self, session_id: str, csrf_token: Optional[str]
    ) -> Tuple[int, str]:
        """Revoke every other session of the caller's user, keeping the current one.

        Returns the number of revoked sessions and the rotated CSRF value.
        """
        outcome = await self.perform_state_change(session_id, csrf_token)
        revoked = self.sessions.revoke_all(
            outcome.session.user_id, except_session_id=session_id, reason="logout_everywhere"
        )
        return revoked, outcome.csrf_token

    async def list_devices(self, session_id: str) -> List[Session]:
        session = self.sessions.touch(session_id)
        return self.sessions.list_devices(session.user_id)
