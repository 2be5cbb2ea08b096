from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        """Informational mirror of the email-scope lockout for operator tooling.

        Enforcement reads the lockouts table through ``RateLimiter.check``;
        nothing in the auth flows consults this field.
        """
        return self.locked_until is not None and self.locked_until > now


@dataclass
class MagicLinkToken:
    id: str
    user_id: str
    secret_hash: str
    fingerprint_hash: str
    created_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.consumed_at is None and self.expires_at > now


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_seen_at: datetime
    absolute_expires_at: datetime
    device_snapshot: Dict[str, Any] = field(default_factory=dict)
    fingerprint_hash: Optional[str] = None
    revoked_at: Optional[datetime] = None
    csrf_hash: Optional[str] = None
    csrf_issued_at: Optional[datetime] = None

    def effective_expires_at(self, slide: timedelta) -> datetime:
        return min(self.last_seen_at + slide, self.absolute_expires_at)

    def is_expired(self, now: datetime, slide: timedelta) -> bool:
        return now > self.last_seen_at + slide or now > self.absolute_expires_at


@dataclass
class RateLimitCounter:
    scope: str
    key: str
    window_start: datetime
    count: int = 0
    consecutive_failures: int = 0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class LockoutState:
    subject: str
    locked_until: datetime
    reason: str
    strikes: int = 1
    updated_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        return self.locked_until > now


@dataclass
class CaptchaChallenge:
    id: str
    subject: str
    issued_at: datetime
    expires_at: datetime
    solved: bool = False
    solved_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuditEvent:
    id: int
    timestamp: datetime
    type: str
    subject: str
    metadata: Dict[str, Any] = field(default_factory=dict)
