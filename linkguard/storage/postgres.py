from __future__ import annotations

import contextlib
import json
import uuid
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from linkguard.logging import get_logger, sanitize_error_message
from linkguard.storage.errors import ConstraintViolation, StorageError
from linkguard.storage.models import (
    AuditEvent,
    CaptchaChallenge,
    LockoutState,
    MagicLinkToken,
    RateLimitCounter,
    Session,
    User,
)
from linkguard.storage.schema import REQUIRED_TABLES, SCHEMA_STATEMENTS

# Connection bound by an open transaction() block in the current thread/task
_active_conn: ContextVar[Optional[psycopg.Connection]] = ContextVar(
    "linkguard_active_conn", default=None
)


def _load_json(value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}


class PostgresStore:
    """Postgres-backed identity store; the single synchronization point.

    Every counter, token, session and lockout mutation is one statement with
    a conflict clause or a ``WHERE`` guard, so concurrent request handlers
    never perform read-then-write races against each other.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: Optional[int] = None,
        min_size: int = 2,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.statement_timeout_ms = statement_timeout_ms
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            configure=self._configure_connection,
        )
        if ensure_schema:
            self.ensure_schema()

    def _configure_connection(self, conn: psycopg.Connection) -> None:
        if self.statement_timeout_ms:
            conn.execute(
                "SELECT set_config('statement_timeout', %s, false)",
                (str(int(self.statement_timeout_ms)),),
            )
            conn.commit()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        active = _active_conn.get()
        if active is not None:
            yield active
            return
        pool_timeout = (self.statement_timeout_ms or 30000) / 1000
        try:
            with self.pool.connection(timeout=pool_timeout) as conn:
                yield conn
        except StorageError:
            raise
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated", {"constraint": exc.diag.constraint_name}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced row missing", {"constraint": exc.diag.constraint_name}
            ) from exc
        except errors.QueryCanceled as exc:
            raise StorageError(
                "store operation timed out", {"error": sanitize_error_message(exc)}
            ) from exc
        except PoolTimeout as exc:
            raise StorageError(
                "no store connection available", {"error": sanitize_error_message(exc)}
            ) from exc
        except psycopg.Error as exc:
            error = sanitize_error_message(exc)
            self.logger.error("store_operation_failed", error=error)
            raise StorageError("store operation failed", {"error": error}) from exc

    @contextlib.contextmanager
    def transaction(self, *, timeout_ms: Optional[int] = None) -> Iterator["PostgresStore"]:
        """Run the block on one connection inside one transaction.

        Store methods called within the block join it. The deadline applies
        to every statement in the block; a timed-out block is rolled back and
        surfaces as :class:`StorageError`.
        """
        if _active_conn.get() is not None:
            yield self
            return
        with self._connect() as conn:
            with conn.transaction():
                deadline = timeout_ms or self.statement_timeout_ms
                if deadline:
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(int(deadline)),),
                    )
                token = _active_conn.set(conn)
                try:
                    yield self
                finally:
                    _active_conn.reset(token)

    def ensure_schema(self) -> None:
        """Create missing tables and fail fast if any are still absent."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise StorageError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables))),
                {"missing": missing_tables},
            )

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row["created_at"],
            locked_until=row.get("locked_until"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> MagicLinkToken:
        return MagicLinkToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            secret_hash=row["secret_hash"],
            fingerprint_hash=row["fingerprint_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            last_seen_at=row["last_seen_at"],
            absolute_expires_at=row["absolute_expires_at"],
            device_snapshot=_load_json(row.get("device_snapshot")),
            fingerprint_hash=row.get("fingerprint_hash"),
            revoked_at=row.get("revoked_at"),
            csrf_hash=row.get("csrf_hash"),
            csrf_issued_at=row.get("csrf_issued_at"),
        )

    @staticmethod
    def _counter_from_row(row: Dict[str, Any]) -> RateLimitCounter:
        return RateLimitCounter(
            scope=row["scope"],
            key=row["key"],
            window_start=row["window_start"],
            count=int(row["count"]),
            consecutive_failures=int(row["consecutive_failures"]),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _lockout_from_row(row: Dict[str, Any]) -> LockoutState:
        return LockoutState(
            subject=row["subject"],
            locked_until=row["locked_until"],
            reason=row["reason"],
            strikes=int(row.get("strikes") or 1),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _captcha_from_row(row: Dict[str, Any]) -> CaptchaChallenge:
        return CaptchaChallenge(
            id=str(row["id"]),
            subject=row["subject"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            solved=bool(row.get("solved")),
            solved_at=row.get("solved_at"),
            consumed_at=row.get("consumed_at"),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEvent:
        return AuditEvent(
            id=int(row["id"]),
            timestamp=row["timestamp"],
            type=row["type"],
            subject=row["subject"],
            metadata=_load_json(row.get("metadata")),
        )

    # users
    def get_or_create_user(self, email: str, now: datetime) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users (id, email, created_at) VALUES (%s, %s, %s)
                ON CONFLICT (email) DO NOTHING
                RETURNING *
                """,
                (str(uuid.uuid4()), email, now),
            ).fetchone()
            if not row:
                row = conn.execute(
                    "SELECT * FROM users WHERE email = %s", (email,)
                ).fetchone()
        if not row:
            raise StorageError("user vanished during provisioning", {"operation": "get_or_create_user"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_locked_until(self, user_id: str, locked_until: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET locked_until = GREATEST(COALESCE(locked_until, %(until)s), %(until)s)
                WHERE id = %(id)s
                RETURNING *
                """,
                {"until": locked_until, "id": user_id},
            ).fetchone()
        return self._user_from_row(row) if row else None

    def clear_user_lock(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET locked_until = NULL WHERE id = %s AND locked_until IS NOT NULL",
                (user_id,),
            )
            return cur.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # magic-link tokens
    def insert_token(self, token: MagicLinkToken) -> MagicLinkToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO magic_link_tokens
                    (id, user_id, secret_hash, fingerprint_hash, created_at, expires_at, consumed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.secret_hash,
                    token.fingerprint_hash,
                    token.created_at,
                    token.expires_at,
                    token.consumed_at,
                ),
            )
        return token

    def get_token(self, token_id: str) -> Optional[MagicLinkToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM magic_link_tokens WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def consume_token(self, token_id: str, now: datetime) -> Optional[MagicLinkToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE magic_link_tokens
                SET consumed_at = %(now)s
                WHERE id = %(id)s AND consumed_at IS NULL AND expires_at > %(now)s
                RETURNING *
                """,
                {"now": now, "id": token_id},
            ).fetchone()
        return self._token_from_row(row) if row else None

    def expire_live_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE magic_link_tokens
                SET expires_at = %(now)s
                WHERE user_id = %(user_id)s AND consumed_at IS NULL AND expires_at > %(now)s
                """,
                {"now": now, "user_id": user_id},
            )
            return cur.rowcount

    # sessions
    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions
                        (id, user_id, created_at, last_seen_at, absolute_expires_at,
                         device_snapshot, fingerprint_hash, revoked_at, csrf_hash, csrf_issued_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.last_seen_at,
                        session.absolute_expires_at,
                        json.dumps(session.device_snapshot or {}),
                        session.fingerprint_hash,
                        session.revoked_at,
                        session.csrf_hash,
                        session.csrf_issued_at,
                    ),
                )
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "session id already exists or user missing",
                {"session_id": session.id, **exc.detail},
            ) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(
        self, session_id: str, now: datetime, slide: timedelta
    ) -> Optional[Session]:
        # last_seen_at is capped at absolute_expires_at - slide, never moved backwards
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions
                SET last_seen_at = GREATEST(
                    last_seen_at, LEAST(%(now)s, absolute_expires_at - %(slide)s)
                )
                WHERE id = %(id)s
                  AND revoked_at IS NULL
                  AND last_seen_at + %(slide)s >= %(now)s
                  AND absolute_expires_at >= %(now)s
                RETURNING *
                """,
                {"now": now, "slide": slide, "id": session_id},
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sessions SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (now, session_id),
            )
            return cur.rowcount > 0

    def revoke_user_sessions(
        self, user_id: str, now: datetime, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET revoked_at = %(now)s
                WHERE user_id = %(user_id)s
                  AND revoked_at IS NULL
                  AND (%(keep)s::text IS NULL OR id <> %(keep)s::text)
                """,
                {"now": now, "user_id": user_id, "keep": except_session_id},
            )
            return cur.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def latest_session_for_user(
        self, user_id: str, *, exclude_session_id: Optional[str] = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sessions
                WHERE user_id = %(user_id)s
                  AND (%(exclude)s::text IS NULL OR id <> %(exclude)s::text)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                {"user_id": user_id, "exclude": exclude_session_id},
            ).fetchone()
        return self._session_from_row(row) if row else None

    def set_session_csrf(self, session_id: str, csrf_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET csrf_hash = %s, csrf_issued_at = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (csrf_hash, now, session_id),
            )
            return cur.rowcount > 0

    def rotate_session_csrf(
        self, session_id: str, expected_hash: str, new_hash: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET csrf_hash = %(new)s, csrf_issued_at = %(now)s
                WHERE id = %(id)s AND revoked_at IS NULL AND csrf_hash = %(expected)s
                """,
                {"new": new_hash, "now": now, "id": session_id, "expected": expected_hash},
            )
            return cur.rowcount > 0

    # rate limits
    def increment_counter(
        self,
        scope: str,
        key: str,
        window_start: datetime,
        failed: bool,
        now: datetime,
    ) -> RateLimitCounter:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO rate_limits
                    (scope, key, window_start, count, consecutive_failures, updated_at)
                VALUES (%(scope)s, %(key)s, %(window_start)s, 1, %(initial)s, %(now)s)
                ON CONFLICT (scope, key, window_start) DO UPDATE
                SET count = rate_limits.count + 1,
                    consecutive_failures = CASE WHEN %(failed)s
                        THEN rate_limits.consecutive_failures + 1
                        ELSE 0
                    END,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "scope": scope,
                    "key": key,
                    "window_start": window_start,
                    "initial": 1 if failed else 0,
                    "now": now,
                    "failed": bool(failed),
                },
            ).fetchone()
        if not row:
            raise StorageError("counter upsert returned no row", {"scope": scope})
        return self._counter_from_row(row)

    def get_counter(
        self, scope: str, key: str, window_start: datetime
    ) -> Optional[RateLimitCounter]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rate_limits WHERE scope = %s AND key = %s AND window_start = %s",
                (scope, key, window_start),
            ).fetchone()
        return self._counter_from_row(row) if row else None

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
        first_until = now + timedelta(seconds=min(base_seconds, max_seconds))
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO lockouts (subject, locked_until, reason, strikes, updated_at)
                VALUES (%(subject)s, %(first_until)s, %(reason)s, 1, %(now)s)
                ON CONFLICT (subject) DO UPDATE
                SET locked_until = GREATEST(
                        lockouts.locked_until,
                        %(now)s + make_interval(secs => LEAST(
                            %(max_seconds)s::double precision,
                            %(base_seconds)s::double precision
                                * power(%(growth)s::double precision, lockouts.strikes)
                        ))
                    ),
                    reason = EXCLUDED.reason,
                    strikes = lockouts.strikes + 1,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "subject": subject,
                    "first_until": first_until,
                    "reason": reason,
                    "now": now,
                    "max_seconds": max_seconds,
                    "base_seconds": base_seconds,
                    "growth": growth_factor,
                },
            ).fetchone()
        if not row:
            raise StorageError("lockout upsert returned no row", {"subject": subject})
        return self._lockout_from_row(row)

    def get_lockout(self, subject: str) -> Optional[LockoutState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM lockouts WHERE subject = %s", (subject,)
            ).fetchone()
        return self._lockout_from_row(row) if row else None

    def clear_lockout(self, subject: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM lockouts WHERE subject = %s", (subject,))
            return cur.rowcount > 0

    # captcha
    def insert_captcha(self, challenge: CaptchaChallenge) -> CaptchaChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO captcha_challenges
                    (id, subject, issued_at, expires_at, solved, solved_at, consumed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.subject,
                    challenge.issued_at,
                    challenge.expires_at,
                    challenge.solved,
                    challenge.solved_at,
                    challenge.consumed_at,
                ),
            )
        return challenge

    def get_captcha(self, challenge_id: str) -> Optional[CaptchaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM captcha_challenges WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._captcha_from_row(row) if row else None

    def mark_captcha_solved(self, challenge_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE captcha_challenges SET solved = TRUE, solved_at = %(now)s
                WHERE id = %(id)s AND consumed_at IS NULL AND expires_at > %(now)s
                """,
                {"now": now, "id": challenge_id},
            )
            return cur.rowcount > 0

    def consume_captcha(self, challenge_id: str, subject: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE captcha_challenges SET consumed_at = %(now)s
                WHERE id = %(id)s
                  AND subject = %(subject)s
                  AND solved
                  AND consumed_at IS NULL
                  AND expires_at > %(now)s
                """,
                {"now": now, "id": challenge_id, "subject": subject},
            )
            return cur.rowcount > 0

    # audit log (append-only)
    def append_audit_event(
        self, type: str, subject: str, metadata: Dict[str, Any], now: datetime
    ) -> AuditEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (timestamp, type, subject, metadata)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (now, type, subject, json.dumps(metadata or {}, default=str)),
            ).fetchone()
        if not row:
            raise StorageError("audit insert returned no row", {"type": type})
        return self._audit_from_row(row)

    def list_audit_events(
        self,
        *,
        subject: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Newest-first view for the admin console; flow components never read it."""
        clauses = []
        params: List[Any] = []
        if subject is not None:
            clauses.append("subject = %s")
            params.append(subject)
        if type is not None:
            clauses.append("type = %s")
            params.append(type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY id DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    # maintenance: each delete re-checks expiry in its own WHERE clause
    def delete_expired_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM magic_link_tokens
                WHERE expires_at < %(before)s
                   OR (consumed_at IS NOT NULL AND consumed_at < %(before)s)
                """,
                {"before": before},
            )
            return cur.rowcount

    def delete_expired_sessions(
        self, now: datetime, slide: timedelta, revoked_before: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM sessions
                WHERE absolute_expires_at < %(now)s
                   OR last_seen_at + %(slide)s < %(now)s
                   OR (revoked_at IS NOT NULL AND revoked_at < %(revoked_before)s)
                """,
                {"now": now, "slide": slide, "revoked_before": revoked_before},
            )
            return cur.rowcount

    def delete_stale_counters(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM rate_limits WHERE window_start < %s", (before,)
            )
            return cur.rowcount

    def delete_expired_lockouts(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM lockouts WHERE locked_until < %s", (before,))
            return cur.rowcount

    def delete_expired_captchas(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM captcha_challenges WHERE expires_at < %s", (now,)
            )
            return cur.rowcount
