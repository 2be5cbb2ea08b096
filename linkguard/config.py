from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from linkguard.logging import get_logger

logger = get_logger(__name__)


class FingerprintMode(str, Enum):
    """How much of the client IP participates in the fingerprint binding."""

    EXACT = "exact"
    SUBNET = "subnet"


class FingerprintEnforcement(str, Enum):
    """What the login flow does when a correct link arrives from a new origin.

    - REJECT: the link is spent and the login fails
    - WARN: the login proceeds and a ``fingerprint_mismatch`` event is recorded
    """

    REJECT = "reject"
    WARN = "warn"


class LockoutGrowth(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


RATE_LIMIT_SCOPES = ("email", "ip", "email_ip")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Every recognized engine option, validated once at load time."""

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/linkguard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    store_timeout_ms: int | None = env_field(
        5000,
        "STORE_TIMEOUT_MS",
        description="Deadline for a single store transaction; a timed-out transaction is rolled back",
    )
    redis_url: str | None = env_field(
        None, "REDIS_URL", description="Optional Redis for the GeoIP lookup cache"
    )
    shared_fs_root: str = env_field("/srv/linkguard", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Magic-link credentials
    token_ttl_minutes: int = env_field(15, "TOKEN_TTL_MINUTES")

    # Sessions
    session_sliding_minutes: int = env_field(
        120, "SESSION_SLIDING_MINUTES", description="Idle time after which a session expires"
    )
    session_absolute_minutes: int = env_field(
        60 * 24 * 7,
        "SESSION_ABSOLUTE_MINUTES",
        description="Hard cap on session lifetime regardless of activity",
    )

    # Rate limiting: fixed windows, per-scope soft (CAPTCHA) and hard (deny) thresholds
    rate_limit_window_seconds: int = env_field(3600, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_email_soft: int = env_field(5, "RATE_LIMIT_EMAIL_SOFT")
    rate_limit_email_hard: int = env_field(20, "RATE_LIMIT_EMAIL_HARD")
    rate_limit_ip_soft: int = env_field(20, "RATE_LIMIT_IP_SOFT")
    rate_limit_ip_hard: int = env_field(100, "RATE_LIMIT_IP_HARD")
    rate_limit_email_ip_soft: int = env_field(5, "RATE_LIMIT_EMAIL_IP_SOFT")
    rate_limit_email_ip_hard: int = env_field(20, "RATE_LIMIT_EMAIL_IP_HARD")

    # Lockouts: consecutive failures per scope before a cool-down
    lockout_email_failures: int = env_field(10, "LOCKOUT_EMAIL_FAILURES")
    lockout_ip_failures: int = env_field(25, "LOCKOUT_IP_FAILURES")
    lockout_email_ip_failures: int = env_field(5, "LOCKOUT_EMAIL_IP_FAILURES")
    lockout_base_seconds: int = env_field(300, "LOCKOUT_BASE_SECONDS")
    lockout_growth: LockoutGrowth = env_field(
        LockoutGrowth.EXPONENTIAL, "LOCKOUT_GROWTH"
    )
    lockout_max_seconds: int = env_field(60 * 60 * 24, "LOCKOUT_MAX_SECONDS")
    lockout_auto_clear_on_success: bool = env_field(
        False,
        "LOCKOUT_AUTO_CLEAR_ON_SUCCESS",
        description="Clear account lockouts after a successful login instead of waiting for an explicit unlock",
    )

    # Progressive CAPTCHA
    captcha_failure_threshold: int = env_field(3, "CAPTCHA_FAILURE_THRESHOLD")
    captcha_ttl_minutes: int = env_field(10, "CAPTCHA_TTL_MINUTES")
    captcha_verify_url: str = env_field(
        "https://challenges.cloudflare.com/turnstile/v0/siteverify", "CAPTCHA_VERIFY_URL"
    )
    captcha_secret: str | None = env_field(None, "CAPTCHA_SECRET")

    # Fingerprint binding
    fingerprint_mode: FingerprintMode = env_field(FingerprintMode.SUBNET, "FINGERPRINT_MODE")
    fingerprint_ipv4_prefix: int = env_field(24, "FINGERPRINT_IPV4_PREFIX")
    fingerprint_ipv6_prefix: int = env_field(64, "FINGERPRINT_IPV6_PREFIX")
    fingerprint_enforcement: FingerprintEnforcement = env_field(
        FingerprintEnforcement.REJECT, "FINGERPRINT_ENFORCEMENT"
    )
    fingerprint_secret: str = env_field(None, "FINGERPRINT_SECRET", validate_default=True)

    # Timing side-channel flattening for failed verifications
    verify_delay_min_ms: int = env_field(250, "VERIFY_DELAY_MIN_MS")
    verify_delay_max_ms: int = env_field(750, "VERIFY_DELAY_MAX_MS")

    # Link delivery
    deliver_links_inline: bool = env_field(
        False,
        "DELIVER_LINKS_INLINE",
        description="Non-production mode: return the magic link to the caller instead of mailing it",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    verify_path: str = env_field("/auth/verify", "VERIFY_PATH")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("LinkGuard", "EMAIL_FROM_NAME")

    # GeoIP enrichment
    geoip_url: str | None = env_field(
        None,
        "GEOIP_URL",
        description="Lookup endpoint with an {ip} placeholder; enrichment is off when unset",
    )
    geoip_cache_days: int = env_field(7, "GEOIP_CACHE_DAYS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "token_ttl_minutes",
        "session_sliding_minutes",
        "session_absolute_minutes",
        "rate_limit_window_seconds",
        "lockout_base_seconds",
        "lockout_max_seconds",
        "captcha_ttl_minutes",
        "geoip_cache_days",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("fingerprint_ipv4_prefix")
    @classmethod
    def _ipv4_prefix(cls, value: int) -> int:
        if not 0 <= value <= 32:
            raise ValueError("IPv4 prefix must be between 0 and 32")
        return value

    @field_validator("fingerprint_ipv6_prefix")
    @classmethod
    def _ipv6_prefix(cls, value: int) -> int:
        if not 0 <= value <= 128:
            raise ValueError("IPv6 prefix must be between 0 and 128")
        return value

    @field_validator("fingerprint_secret", mode="before")
    @classmethod
    def _ensure_fingerprint_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so stored fingerprint hashes survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/linkguard"))
        secret_path = fs_root / ".fingerprint_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "fingerprint_secret_dir_setup", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "fingerprint_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        import tempfile

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".fingerprint_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "fingerprint_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist fingerprint secret; set FINGERPRINT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        for scope in RATE_LIMIT_SCOPES:
            soft = getattr(self, f"rate_limit_{scope}_soft")
            hard = getattr(self, f"rate_limit_{scope}_hard")
            failures = getattr(self, f"lockout_{scope}_failures")
            if soft <= 0 or hard <= 0 or failures <= 0:
                raise ValueError(f"{scope} thresholds must be positive")
            if soft > hard:
                raise ValueError(f"rate_limit_{scope}_soft must not exceed rate_limit_{scope}_hard")
        if self.session_absolute_minutes < self.session_sliding_minutes:
            raise ValueError("session_absolute_minutes must be >= session_sliding_minutes")
        if self.verify_delay_min_ms < 0 or self.verify_delay_min_ms > self.verify_delay_max_ms:
            raise ValueError("verify delay bounds must satisfy 0 <= min <= max")
        if self.lockout_max_seconds < self.lockout_base_seconds:
            raise ValueError("lockout_max_seconds must be >= lockout_base_seconds")
        if self.store_timeout_ms is not None and self.store_timeout_ms <= 0:
            raise ValueError("store_timeout_ms must be positive when set")
        return self

    def thresholds(self, scope: str) -> tuple[int, int, int]:
        """Return ``(soft, hard, lockout_failures)`` for a rate-limit scope."""
        field_scope = scope.replace("+", "_")
        if field_scope not in RATE_LIMIT_SCOPES:
            raise KeyError(f"unknown rate limit scope: {scope}")
        return (
            getattr(self, f"rate_limit_{field_scope}_soft"),
            getattr(self, f"rate_limit_{field_scope}_hard"),
            getattr(self, f"lockout_{field_scope}_failures"),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
