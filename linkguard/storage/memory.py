from __future__ import annotations

import contextlib
import copy
import hmac
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from linkguard.logging import get_logger
from linkguard.storage.errors import ConstraintViolation
from linkguard.storage.models import (
    AuditEvent,
    CaptchaChallenge,
    LockoutState,
    MagicLinkToken,
    RateLimitCounter,
    Session,
    User,
)

CounterKey = Tuple[str, str, datetime]


class MemoryStore:
    """In-process identity store for tests and single-process development.

    Every public method runs under one re-entrant lock, so each call is
    atomic with respect to other threads, mirroring the single-statement
    guarantees of :class:`PostgresStore`. Rows are copied on the way in and
    out so callers never hold references into the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[str, MagicLinkToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.counters: Dict[CounterKey, RateLimitCounter] = {}
        self.lockouts: Dict[str, LockoutState] = {}
        self.captchas: Dict[str, CaptchaChallenge] = {}
        self.audit_events: List[AuditEvent] = []
        self._audit_seq: int = 0
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    _STATE_ATTRS = (
        "users",
        "tokens",
        "sessions",
        "counters",
        "lockouts",
        "captchas",
        "audit_events",
        "_audit_seq",
    )

    @contextlib.contextmanager
    def transaction(self, *, timeout_ms: Optional[int] = None) -> Iterator["MemoryStore"]:
        """Serialize a multi-step mutation; state is restored if the block raises.

        ``timeout_ms`` is accepted for interface parity and ignored.
        """
        with self._data_lock:
            outermost = self._tx_depth == 0
            snapshot = (
                {name: copy.deepcopy(getattr(self, name)) for name in self._STATE_ATTRS}
                if outermost
                else None
            )
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    for name, value in snapshot.items():
                        setattr(self, name, value)
                raise
            finally:
                self._tx_depth -= 1

    @staticmethod
    def _copy(obj: Any) -> Any:
        return copy.deepcopy(obj) if obj is not None else None

    # users
    def get_or_create_user(self, email: str, now: datetime) -> User:
        with self._data_lock:
            existing = self._find_user_by_email(email)
            if existing:
                return self._copy(existing)
            user = User(id=str(uuid.uuid4()), email=email, created_at=now)
            self.users[user.id] = user
            return self._copy(user)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self._find_user_by_email(email))

    def set_user_locked_until(self, user_id: str, locked_until: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.locked_until is None or user.locked_until < locked_until:
                user.locked_until = locked_until
            return self._copy(user)

    def clear_user_lock(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.locked_until is None:
                return False
            user.locked_until = None
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for token_id, token in list(self.tokens.items()):
                if token.user_id == user_id:
                    self.tokens.pop(token_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            return True

    # magic-link tokens
    def insert_token(self, token: MagicLinkToken) -> MagicLinkToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("token user missing", {"user_id": token.user_id})
            if token.id in self.tokens:
                raise ConstraintViolation("token id already exists", {"token_id": token.id})
            self.tokens[token.id] = self._copy(token)
            return self._copy(token)

    def get_token(self, token_id: str) -> Optional[MagicLinkToken]:
        with self._data_lock:
            return self._copy(self.tokens.get(token_id))

    def consume_token(self, token_id: str, now: datetime) -> Optional[MagicLinkToken]:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or token.consumed_at is not None or token.expires_at <= now:
                return None
            token.consumed_at = now
            return self._copy(token)

    def expire_live_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            expired = 0
            for token in self.tokens.values():
                if token.user_id == user_id and token.is_live(now):
                    token.expires_at = now
                    expired += 1
            return expired

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"session_id": session.id})
            self.sessions[session.id] = self._copy(session)
            return self._copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self._copy(self.sessions.get(session_id))

    def touch_session(
        self, session_id: str, now: datetime, slide: timedelta
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None or sess.is_expired(now, slide):
                return None
            capped = min(now, sess.absolute_expires_at - slide)
            if capped > sess.last_seen_at:
                sess.last_seen_at = capped
            return self._copy(sess)

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            sess.revoked_at = now
            return True

    def revoke_user_sessions(
        self, user_id: str, now: datetime, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked_at is not None:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.revoked_at = now
                revoked += 1
            return revoked

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            results = [s for s in self.sessions.values() if s.user_id == user_id]
            return [
                self._copy(s)
                for s in sorted(results, key=lambda s: s.created_at, reverse=True)
            ]

    def latest_session_for_user(
        self, user_id: str, *, exclude_session_id: Optional[str] = None
    ) -> Optional[Session]:
        for sess in self.list_user_sessions(user_id):
            if sess.id != exclude_session_id:
                return sess
        return None

    def set_session_csrf(self, session_id: str, csrf_hash: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            sess.csrf_hash = csrf_hash
            sess.csrf_issued_at = now
            return True

    def rotate_session_csrf(
        self, session_id: str, expected_hash: str, new_hash: str, now: datetime
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None or not sess.csrf_hash:
                return False
            if not hmac.compare_digest(sess.csrf_hash, expected_hash):
                return False
            sess.csrf_hash = new_hash
            sess.csrf_issued_at = now
            return True

    # rate limits
    def increment_counter(
        self,
        scope: str,
        key: str,
        window_start: datetime,
        failed: bool,
        now: datetime,
    ) -> RateLimitCounter:
        """Increment-or-create; a success resets the failure streak."""
        with self._data_lock:
            counter_key = (scope, key, window_start)
            counter = self.counters.get(counter_key)
            if counter is None:
                counter = RateLimitCounter(
                    scope=scope,
                    key=key,
                    window_start=window_start,
                    count=1,
                    consecutive_failures=1 if failed else 0,
                    updated_at=now,
                )
                self.counters[counter_key] = counter
            else:
                counter.count += 1
                counter.consecutive_failures = (
                    counter.consecutive_failures + 1 if failed else 0
                )
                counter.updated_at = now
            return self._copy(counter)

    def get_counter(
        self, scope: str, key: str, window_start: datetime
    ) -> Optional[RateLimitCounter]:
        with self._data_lock:
            return self._copy(self.counters.get((scope, key, window_start)))

    # lockouts
    def extend_lockout(
        self,
        subject: str,
        reason: str,
        now: datetime,
        *,
        base_seconds: int,
        growth_factor: float,
        max_seconds: int,
    ) -> LockoutState:
        with self._data_lock:
            existing = self.lockouts.get(subject)
            if existing is None:
                state = LockoutState(
                    subject=subject,
                    locked_until=now + timedelta(seconds=min(base_seconds, max_seconds)),
                    reason=reason,
                    strikes=1,
                    updated_at=now,
                )
                self.lockouts[subject] = state
                return self._copy(state)
            duration = min(float(max_seconds), base_seconds * growth_factor ** existing.strikes)
            candidate = now + timedelta(seconds=duration)
            if candidate > existing.locked_until:
                existing.locked_until = candidate
            existing.reason = reason
            existing.strikes += 1
            existing.updated_at = now
            return self._copy(existing)

    def get_lockout(self, subject: str) -> Optional[LockoutState]:
        with self._data_lock:
            return self._copy(self.lockouts.get(subject))

    def clear_lockout(self, subject: str) -> bool:
        with self._data_lock:
            return self.lockouts.pop(subject, None) is not None

    # captcha
    def insert_captcha(self, challenge: CaptchaChallenge) -> CaptchaChallenge:
        with self._data_lock:
            if challenge.id in self.captchas:
                raise ConstraintViolation(
                    "captcha id already exists", {"challenge_id": challenge.id}
                )
            self.captchas[challenge.id] = self._copy(challenge)
            return self._copy(challenge)

    def get_captcha(self, challenge_id: str) -> Optional[CaptchaChallenge]:
        with self._data_lock:
            return self._copy(self.captchas.get(challenge_id))

    def mark_captcha_solved(self, challenge_id: str, now: datetime) -> bool:
        with self._data_lock:
            challenge = self.captchas.get(challenge_id)
            if (
                not challenge
                or challenge.consumed_at is not None
                or challenge.expires_at <= now
            ):
                return False
            challenge.solved = True
            challenge.solved_at = now
            return True

    def consume_captcha(self, challenge_id: str, subject: str, now: datetime) -> bool:
        with self._data_lock:
            challenge = self.captchas.get(challenge_id)
            if (
                not challenge
                or challenge.subject != subject
                or not challenge.solved
                or challenge.consumed_at is not None
                or challenge.expires_at <= now
            ):
                return False
            challenge.consumed_at = now
            return True

    # audit log (append-only)
    def append_audit_event(
        self, type: str, subject: str, metadata: Dict[str, Any], now: datetime
    ) -> AuditEvent:
        with self._data_lock:
            self._audit_seq += 1
            event = AuditEvent(
                id=self._audit_seq,
                timestamp=now,
                type=type,
                subject=subject,
                metadata=copy.deepcopy(metadata or {}),
            )
            self.audit_events.append(event)
            return event

    def list_audit_events(
        self,
        *,
        subject: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Newest-first view for the admin console; flow components never read it."""
        with self._data_lock:
            matches = [
                e
                for e in reversed(self.audit_events)
                if (subject is None or e.subject == subject)
                and (type is None or e.type == type)
            ]
            return [self._copy(e) for e in matches[:limit]]

    # maintenance
    def delete_expired_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, tok in self.tokens.items()
                if tok.expires_at < before
                or (tok.consumed_at is not None and tok.consumed_at < before)
            ]
            for tid in stale:
                self.tokens.pop(tid, None)
            return len(stale)

    def delete_expired_sessions(
        self, now: datetime, slide: timedelta, revoked_before: datetime
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.is_expired(now, slide)
                or (sess.revoked_at is not None and sess.revoked_at < revoked_before)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_stale_counters(self, before: datetime) -> int:
        with self._data_lock:
            stale = [k for k, c in self.counters.items() if c.window_start < before]
            for k in stale:
                self.counters.pop(k, None)
            return len(stale)

    def delete_expired_lockouts(self, before: datetime) -> int:
        with self._data_lock:
            stale = [s for s, state in self.lockouts.items() if state.locked_until < before]
            for s in stale:
                self.lockouts.pop(s, None)
            return len(stale)

    def delete_expired_captchas(self, now: datetime) -> int:
        with self._data_lock:
            stale = [cid for cid, c in self.captchas.items() if c.expires_at < now]
            for cid in stale:
                self.captchas.pop(cid, None)
            return len(stale)
