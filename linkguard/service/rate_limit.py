from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Union

from linkguard.config import LockoutGrowth, Settings
from linkguard.logging import get_logger, hash_for_log
from linkguard.service.audit import AuditEventType, AuditLog
from linkguard.service.errors import ValidationError
from linkguard.service.fingerprint import canonical_ip
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import LockoutState, RateLimitCounter, utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)

SCOPE_EMAIL = "email"
SCOPE_IP = "ip"
SCOPE_EMAIL_IP = "email+ip"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class DecisionAction(str, Enum):
    ALLOW = "allow"
    REQUIRE_CAPTCHA = "require_captcha"
    DENY = "deny"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


_SEVERITY = {
    DecisionAction.ALLOW: 0,
    DecisionAction.REQUIRE_CAPTCHA: 1,
    DecisionAction.DENY: 2,
}


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    scope: str
    count: int = 0
    locked_until: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.action == DecisionAction.ALLOW

    @property
    def requires_captcha(self) -> bool:
        return self.action == DecisionAction.REQUIRE_CAPTCHA

    @property
    def denied(self) -> bool:
        return self.action == DecisionAction.DENY


def most_restrictive(*decisions: Decision) -> Decision:
    """Pick the strongest decision; among denials the latest ``locked_until`` wins."""

    def rank(decision: Decision):
        until = decision.locked_until or _EPOCH
        return (_SEVERITY[decision.action], until)

    return max(decisions, key=rank)


def normalize_email(email: str) -> str:
    value = (email or "").strip().casefold()
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain or " " in value or len(value) > 320:
        raise ValidationError("invalid email address", detail={"field": "email"})
    return value


def scope_key(scope: str, *, email: Optional[str] = None, ip: Optional[str] = None) -> str:
    """Build the counter key for ``scope`` from request identifiers."""

    if scope == SCOPE_EMAIL:
        return normalize_email(email or "")
    if scope == SCOPE_IP:
        return canonical_ip(ip or "")
    if scope == SCOPE_EMAIL_IP:
        return f"{normalize_email(email or '')}|{canonical_ip(ip or '')}"
    raise ValidationError(f"unknown rate limit scope: {scope}", detail={"field": "scope"})


class RateLimiter:
    """Fixed-window counters per (scope, key) with escalating countermeasures.

    ``check`` evaluates the attempt about to be made: the count it compares
    against the thresholds includes that attempt, so with a soft threshold of
    3 the third attempt in a window is the first one to need a CAPTCHA.
    Crossing the consecutive-failure threshold for a scope creates or extends
    a lockout whose ``locked_until`` never moves backwards.
    """

    def __init__(
        self,
        store: Union[PostgresStore, MemoryStore],
        settings: Settings,
        *,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.clock = clock
        self.window = timedelta(seconds=settings.rate_limit_window_seconds)

    def window_start(self, now: datetime) -> datetime:
        elapsed = (now - _EPOCH) // self.window
        return _EPOCH + elapsed * self.window

    @staticmethod
    def lockout_subject(scope: str, key: str) -> str:
        return f"{scope}:{key}"

    def check(self, scope: str, key: str) -> Decision:
        soft, hard, _ = self.settings.thresholds(scope)
        now = self.clock()
        lockout = self.store.get_lockout(self.lockout_subject(scope, key))
        if lockout and lockout.is_active(now):
            return Decision(
                DecisionAction.DENY,
                scope,
                locked_until=lockout.locked_until,
                reason="lockout",
            )

        window_start = self.window_start(now)
        counter = self.store.get_counter(scope, key, window_start)
        attempt = (counter.count if counter else 0) + 1
        failures = counter.consecutive_failures if counter else 0
        if attempt >= hard:
            return Decision(
                DecisionAction.DENY,
                scope,
                count=attempt,
                locked_until=window_start + self.window,
                reason="hard_threshold",
            )
        if attempt >= soft:
            return Decision(
                DecisionAction.REQUIRE_CAPTCHA, scope, count=attempt, reason="soft_threshold"
            )
        if failures >= self.settings.captcha_failure_threshold:
            return Decision(
                DecisionAction.REQUIRE_CAPTCHA,
                scope,
                count=attempt,
                reason="consecutive_failures",
            )
        return Decision(DecisionAction.ALLOW, scope, count=attempt)

    def record_attempt(
        self, scope: str, key: str, outcome: Union[AttemptOutcome, str]
    ) -> RateLimitCounter:
        outcome = AttemptOutcome(outcome)
        _, _, lockout_failures = self.settings.thresholds(scope)
        now = self.clock()
        failed = outcome == AttemptOutcome.FAILURE
        counter = self.store.increment_counter(
            scope, key, self.window_start(now), failed, now
        )
        if failed and counter.consecutive_failures >= lockout_failures:
            self._escalate(scope, key, counter, now)
        return counter

    def _escalate(
        self, scope: str, key: str, counter: RateLimitCounter, now: datetime
    ) -> LockoutState:
        growth = 2.0 if self.settings.lockout_growth == LockoutGrowth.EXPONENTIAL else 1.0
        state = self.store.extend_lockout(
            self.lockout_subject(scope, key),
            f"{scope.replace('+', '_')}_consecutive_failures",
            now,
            base_seconds=self.settings.lockout_base_seconds,
            growth_factor=growth,
            max_seconds=self.settings.lockout_max_seconds,
        )
        if scope == SCOPE_EMAIL:
            user = self.store.get_user_by_email(key)
            if user:
                self.store.set_user_locked_until(user.id, state.locked_until)
        logger.warning(
            "lockout_created",
            scope=scope,
            key_hash=hash_for_log(key),
            locked_until=state.locked_until.isoformat(),
            strikes=state.strikes,
        )
        if self.audit:
            self.audit.record(
                AuditEventType.LOCKOUT_CREATED,
                key,
                {
                    "scope": scope,
                    "locked_until": state.locked_until.isoformat(),
                    "strikes": state.strikes,
                    "consecutive_failures": counter.consecutive_failures,
                    "reason": state.reason,
                },
            )
        return state

    def lockout(self, scope: str, key: str) -> Optional[LockoutState]:
        state = self.store.get_lockout(self.lockout_subject(scope, key))
        if state and state.is_active(self.clock()):
            return state
        return None

    def clear_lockout(self, scope: str, key: str, *, actor: Optional[str] = None) -> bool:
        """Explicit unlock; also lifts the account lock for the email scope."""

        cleared = self.store.clear_lockout(self.lockout_subject(scope, key))
        if scope == SCOPE_EMAIL:
            user = self.store.get_user_by_email(key)
            if user and self.store.clear_user_lock(user.id):
                cleared = True
        if cleared:
            logger.info("lockout_cleared", scope=scope, key_hash=hash_for_log(key))
            if self.audit:
                self.audit.record(
                    AuditEventType.LOCKOUT_CLEARED, key, {"scope": scope, "actor": actor}
                )
        return cleared
