"""DDL for the identity store tables.

``PostgresStore.ensure_schema`` applies these statements idempotently. The
audit log has no foreign key to ``users`` so that recorded events never block
deleting the subject they describe.
"""

from __future__ import annotations

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        locked_until TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS magic_link_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        secret_hash TEXT NOT NULL,
        fingerprint_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS magic_link_tokens_user_idx ON magic_link_tokens (user_id)",
    "CREATE INDEX IF NOT EXISTS magic_link_tokens_expires_idx ON magic_link_tokens (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        absolute_expires_at TIMESTAMPTZ NOT NULL,
        device_snapshot JSONB NOT NULL DEFAULT '{}'::jsonb,
        fingerprint_hash TEXT,
        revoked_at TIMESTAMPTZ,
        csrf_hash TEXT,
        csrf_issued_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_idx ON sessions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        scope TEXT NOT NULL,
        key TEXT NOT NULL,
        window_start TIMESTAMPTZ NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (scope, key, window_start)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lockouts (
        subject TEXT PRIMARY KEY,
        locked_until TIMESTAMPTZ NOT NULL,
        reason TEXT NOT NULL,
        strikes INTEGER NOT NULL DEFAULT 1,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS captcha_challenges (
        id TEXT PRIMARY KEY,
        subject TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        solved BOOLEAN NOT NULL DEFAULT FALSE,
        solved_at TIMESTAMPTZ,
        consumed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ NOT NULL,
        type TEXT NOT NULL,
        subject TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_subject_idx ON audit_log (subject, id)",
)

REQUIRED_TABLES: tuple[str, ...] = (
    "users",
    "magic_link_tokens",
    "sessions",
    "rate_limits",
    "lockouts",
    "captcha_challenges",
    "audit_log",
)
