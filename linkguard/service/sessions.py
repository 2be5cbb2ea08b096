from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from linkguard.logging import get_logger, hash_for_log
from linkguard.service.audit import AuditEventType, AuditLog
from linkguard.service.errors import NotFoundError, SessionExpiredError, SessionRevokedError
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import Session, utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SessionLookup:
    state: SessionState
    session: Optional[Session] = None

    @property
    def active(self) -> bool:
        return self.state == SessionState.ACTIVE


class SessionManager:
    """Database-backed sessions with sliding and absolute expiry.

    Expiry is evaluated lazily on lookup. Revocation is terminal: ``touch``
    never revives a revoked row, and ids always come from
    ``secrets.token_urlsafe`` so an id freed by the purge job is not issued
    again.
    """

    def __init__(
        self,
        store: Union[PostgresStore, MemoryStore],
        *,
        sliding: timedelta = timedelta(minutes=120),
        absolute: timedelta = timedelta(days=7),
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if absolute < sliding:
            raise ValueError("absolute session lifetime must cover the sliding window")
        self.store = store
        self.sliding = sliding
        self.absolute = absolute
        self.audit = audit
        self.clock = clock

    def create(
        self,
        user_id: str,
        device_snapshot: Optional[Dict[str, Any]] = None,
        *,
        fingerprint_hash: Optional[str] = None,
    ) -> Session:
        now = self.clock()
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            last_seen_at=now,
            absolute_expires_at=now + self.absolute,
            device_snapshot=dict(device_snapshot or {}),
            fingerprint_hash=fingerprint_hash,
        )
        self.store.insert_session(session)
        logger.info("session_created", session_hash=hash_for_log(session.id), user_id=user_id)
        return session

    def _classify(self, session: Optional[Session], now: datetime) -> SessionLookup:
        if session is None:
            return SessionLookup(SessionState.NOT_FOUND)
        if session.revoked_at is not None:
            return SessionLookup(SessionState.REVOKED, session)
        if session.is_expired(now, self.sliding):
            return SessionLookup(SessionState.EXPIRED, session)
        return SessionLookup(SessionState.ACTIVE, session)

    def lookup(self, session_id: str) -> SessionLookup:
        return self._classify(self.store.get_session(session_id), self.clock())

    @staticmethod
    def _raise_for(result: SessionLookup) -> None:
        if result.state == SessionState.REVOKED:
            raise SessionRevokedError("session revoked")
        if result.state == SessionState.NOT_FOUND:
            raise NotFoundError("session not found")
        raise SessionExpiredError("session expired")

    def require_active(self, session_id: str) -> Session:
        """Return the live session without extending it."""
        result = self.lookup(session_id)
        if not result.active:
            self._raise_for(result)
        return result.session

    def touch(self, session_id: str) -> Session:
        now = self.clock()
        session = self.store.touch_session(session_id, now, self.sliding)
        if session:
            return session
        self._raise_for(self._classify(self.store.get_session(session_id), now))

    def revoke(self, session_id: str, *, reason: str = "logout") -> bool:
        session = self.store.get_session(session_id)
        revoked = self.store.revoke_session(session_id, self.clock())
        if revoked and session and self.audit:
            self.audit.record(
                AuditEventType.SESSION_REVOKED,
                session.user_id,
                {"session_id": session_id, "reason": reason},
            )
        return revoked

    def revoke_all(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str = "revoke_all",
    ) -> int:
        count = self.store.revoke_user_sessions(
            user_id, self.clock(), except_session_id=except_session_id
        )
        if self.audit:
            self.audit.record(
                AuditEventType.SESSIONS_REVOKED_ALL,
                user_id,
                {"revoked": count, "kept_session": bool(except_session_id), "reason": reason},
            )
        return count

    def list_devices(self, user_id: str) -> List[Session]:
        """Active sessions for the self-service device list."""
        now = self.clock()
        return [
            s
            for s in self.store.list_user_sessions(user_id)
            if self._classify(s, now).active
        ]
