from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

from linkguard.logging import get_logger, hash_for_log
from linkguard.service.audit import AuditEventType, AuditLog
from linkguard.service.errors import (
    FingerprintMismatchError,
    TokenAlreadyConsumedError,
    TokenError,
    TokenExpiredError,
    TokenSecretMismatchError,
    ValidationError,
)
from linkguard.service.fingerprint import FingerprintBinder
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import MagicLinkToken, utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)

_MAX_TOKEN_ID_LENGTH = 64
_MAX_SECRET_LENGTH = 256


class VerifyStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    ALREADY_CONSUMED = "already_consumed"
    SECRET_MISMATCH = "secret_mismatch"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"


_STATUS_ERRORS = {
    VerifyStatus.EXPIRED: TokenExpiredError,
    VerifyStatus.ALREADY_CONSUMED: TokenAlreadyConsumedError,
    VerifyStatus.SECRET_MISMATCH: TokenSecretMismatchError,
    VerifyStatus.FINGERPRINT_MISMATCH: FingerprintMismatchError,
}


@dataclass(frozen=True)
class IssuedToken:
    token_id: str
    secret: str
    user_id: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"IssuedToken(token_id={self.token_id!r}, user_id={self.user_id!r}, secret=<redacted>)"


@dataclass(frozen=True)
class VerifyResult:
    status: VerifyStatus
    token_id: str
    user_id: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status == VerifyStatus.VALID

    def as_error(self) -> TokenError:
        error_cls = _STATUS_ERRORS.get(self.status)
        if error_cls is None:
            raise ValueError("a valid result has no error")
        return error_cls(
            f"magic link rejected: {self.status.value}",
            detail={"token_id": self.token_id, "reason": self.status.value},
        )


def hash_secret(secret: str) -> str:
    # Secrets are 256-bit random values, a fast digest is sufficient
    return hashlib.sha256(secret.encode()).hexdigest()


class TokenService:
    """Issues single-use magic-link credentials and consumes them atomically.

    Verification consumes first and compares afterwards: whatever the
    presented secret or fingerprint, a token that reached the comparison is
    spent, so a guessed link cannot be probed twice.
    """

    SECRET_BYTES = 32

    def __init__(
        self,
        store: Union[PostgresStore, MemoryStore],
        *,
        ttl: timedelta = timedelta(minutes=15),
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.audit = audit
        self.clock = clock

    def issue(self, user_id: str, fingerprint_hash: str) -> IssuedToken:
        now = self.clock()
        secret = secrets.token_urlsafe(self.SECRET_BYTES)
        token = MagicLinkToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            secret_hash=hash_secret(secret),
            fingerprint_hash=fingerprint_hash,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.insert_token(token)
        logger.info("magic_link_issued", token_id=token.id, expires_at=token.expires_at.isoformat())
        return IssuedToken(
            token_id=token.id, secret=secret, user_id=user_id, expires_at=token.expires_at
        )

    def supersede_live(self, user_id: str) -> int:
        """Expire every outstanding link for ``user_id``."""
        return self.store.expire_live_tokens(user_id, self.clock())

    def peek_user_id(self, token_id: str) -> Optional[str]:
        """Read-only owner lookup; never changes token state."""
        self.check_format(token_id)
        token = self.store.get_token(token_id)
        return token.user_id if token else None

    @staticmethod
    def check_format(token_id: str, secret: Optional[str] = None) -> None:
        """Reject malformed link parameters before any state is read."""
        if not token_id or len(token_id) > _MAX_TOKEN_ID_LENGTH:
            raise ValidationError("malformed link", detail={"field": "token_id"})
        if secret is not None and (not secret or len(secret) > _MAX_SECRET_LENGTH):
            raise ValidationError("malformed link", detail={"field": "secret"})

    def verify(self, token_id: str, secret: str, fingerprint_hash: str) -> VerifyResult:
        self.check_format(token_id, secret or "")

        now = self.clock()
        consumed = self.store.consume_token(token_id, now)
        if consumed is None:
            existing = self.store.get_token(token_id)
            if existing is None:
                return self._reject(VerifyStatus.SECRET_MISMATCH, token_id, None)
            if existing.consumed_at is not None:
                return self._reject(VerifyStatus.ALREADY_CONSUMED, token_id, existing.user_id)
            return self._reject(VerifyStatus.EXPIRED, token_id, existing.user_id)

        if not hmac.compare_digest(consumed.secret_hash, hash_secret(secret)):
            return self._reject(VerifyStatus.SECRET_MISMATCH, token_id, consumed.user_id)
        if not FingerprintBinder.matches(consumed.fingerprint_hash, fingerprint_hash):
            return self._reject(
                VerifyStatus.FINGERPRINT_MISMATCH, token_id, consumed.user_id
            )
        return VerifyResult(VerifyStatus.VALID, token_id, consumed.user_id)

    def _reject(
        self, status: VerifyStatus, token_id: str, user_id: Optional[str]
    ) -> VerifyResult:
        logger.info(
            "magic_link_rejected",
            reason=status.value,
            token_hash=hash_for_log(token_id),
        )
        if self.audit:
            self.audit.record(
                AuditEventType.TOKEN_VERIFY_FAILED,
                user_id or token_id,
                {"token_id": token_id, "reason": status.value},
            )
        return VerifyResult(status, token_id, user_id)
