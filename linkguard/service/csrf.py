from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Callable, Optional, Union

from linkguard.logging import get_logger, hash_for_log
from linkguard.service.audit import AuditEventType, AuditLog
from linkguard.service.errors import CsrfMismatchError, NotFoundError, SessionRevokedError
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _hash_value(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class CsrfGuard:
    """Per-session anti-forgery values that rotate on every state change.

    Only a hash is stored on the session row. Rotation is a compare-and-swap
    on that hash, so of two concurrent requests presenting the same value
    exactly one succeeds and the old value is dead as soon as it does.
    """

    def __init__(
        self,
        store: Union[PostgresStore, MemoryStore],
        *,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock

    def issue(self, session_id: str) -> str:
        value = secrets.token_urlsafe(32)
        if not self.store.set_session_csrf(session_id, _hash_value(value), self.clock()):
            if self.store.get_session(session_id) is None:
                raise NotFoundError("session not found")
            raise SessionRevokedError("session revoked")
        return value

    def validate(self, session_id: str, presented: Optional[str]) -> bool:
        if not presented:
            return False
        session = self.store.get_session(session_id)
        if not session or session.revoked_at is not None or not session.csrf_hash:
            return False
        return hmac.compare_digest(session.csrf_hash, _hash_value(presented))

    def rotate(self, session_id: str, presented: Optional[str]) -> str:
        """Swap ``presented`` for a fresh value or raise :class:`CsrfMismatchError`."""

        new_value = secrets.token_urlsafe(32)
        rotated = bool(presented) and self.store.rotate_session_csrf(
            session_id, _hash_value(presented or ""), _hash_value(new_value), self.clock()
        )
        if not rotated:
            logger.warning("csrf_mismatch", session_hash=hash_for_log(session_id))
            if self.audit:
                self.audit.record(
                    AuditEventType.CSRF_MISMATCH,
                    session_id,
                    {"presented": bool(presented)},
                )
            raise CsrfMismatchError("csrf token mismatch")
        return new_value
