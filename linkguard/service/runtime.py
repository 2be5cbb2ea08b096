from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from linkguard.config import Settings, get_settings
from linkguard.logging import get_logger, sanitize_error_message
from linkguard.service.audit import AuditLog
from linkguard.service.captcha import CaptchaGate, CaptchaVerifier, HttpCaptchaVerifier
from linkguard.service.csrf import CsrfGuard
from linkguard.service.email import Mailer, SmtpMailer
from linkguard.service.fingerprint import FingerprintBinder
from linkguard.service.geo import GeoResolver, HttpGeoResolver
from linkguard.service.maintenance import MaintenanceService
from linkguard.service.orchestrator import AuthOrchestrator
from linkguard.service.rate_limit import RateLimiter
from linkguard.service.sessions import SessionManager
from linkguard.service.tokens import TokenService
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import utcnow
from linkguard.storage.postgres import PostgresStore
from linkguard.storage.redis_cache import MemoryGeoCache, RedisGeoCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:secret@db/linkguard -> postgresql://app:***@db/linkguard
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


@dataclass
class Engine:
    """The wired component graph; build one per process or per test."""

    settings: Settings
    store: Union[PostgresStore, MemoryStore]
    audit: AuditLog
    fingerprints: FingerprintBinder
    limiter: RateLimiter
    tokens: TokenService
    sessions: SessionManager
    csrf: CsrfGuard
    captcha: CaptchaGate
    orchestrator: AuthOrchestrator
    maintenance: MaintenanceService
    geo_cache: Union[RedisGeoCache, MemoryGeoCache, None] = None

    async def close(self) -> None:
        if self.geo_cache is not None:
            await self.geo_cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


def _build_store(settings: Settings) -> Union[PostgresStore, MemoryStore]:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            return MemoryStore()
        return PostgresStore(
            settings.database_url, statement_timeout_ms=settings.store_timeout_ms
        )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=sanitize_error_message(exc),
        )
        raise


def _build_geo_cache(settings: Settings) -> Union[RedisGeoCache, MemoryGeoCache]:
    if settings.redis_url:
        cache = RedisGeoCache(settings.redis_url)
        try:
            cache.verify_connection()
            return cache
        except Exception as exc:
            logger.warning(
                "geoip_cache_redis_unavailable",
                redis_url=_mask_url_password(settings.redis_url),
                error=sanitize_error_message(exc),
            )
    return MemoryGeoCache()


def build_engine(
    settings: Optional[Settings] = None,
    *,
    store: Union[PostgresStore, MemoryStore, None] = None,
    mailer: Optional[Mailer] = None,
    geo: Optional[GeoResolver] = None,
    captcha_verifier: Optional[CaptchaVerifier] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    rng: Optional[random.Random] = None,
) -> Engine:
    """Wire every component from ``settings``.

    Collaborators passed explicitly win over the ones derived from settings,
    which is how tests plug in a fixture store, a recording mailer and a
    controllable clock.
    """
    settings = settings or get_settings()
    store = store if store is not None else _build_store(settings)
    logger.info(
        "engine_init",
        store_type=type(store).__name__,
        fingerprint_mode=settings.fingerprint_mode.value,
        deliver_links_inline=settings.deliver_links_inline,
    )

    geo_cache = None
    if geo is None and settings.geoip_url:
        geo_cache = _build_geo_cache(settings)
        geo = HttpGeoResolver(
            settings.geoip_url,
            cache=geo_cache,
            cache_ttl=timedelta(days=settings.geoip_cache_days),
        )
    if captcha_verifier is None and settings.captcha_secret:
        captcha_verifier = HttpCaptchaVerifier(settings.captcha_verify_url, settings.captcha_secret)

    audit = AuditLog(store, clock=clock)
    fingerprints = FingerprintBinder.from_settings(settings)
    limiter = RateLimiter(store, settings, audit=audit, clock=clock)
    tokens = TokenService(
        store, ttl=timedelta(minutes=settings.token_ttl_minutes), audit=audit, clock=clock
    )
    sessions = SessionManager(
        store,
        sliding=timedelta(minutes=settings.session_sliding_minutes),
        absolute=timedelta(minutes=settings.session_absolute_minutes),
        audit=audit,
        clock=clock,
    )
    csrf = CsrfGuard(store, audit=audit, clock=clock)
    captcha = CaptchaGate(
        store,
        captcha_verifier,
        ttl=timedelta(minutes=settings.captcha_ttl_minutes),
        clock=clock,
    )
    orchestrator_kwargs: dict[str, Any] = {}
    if sleep is not None:
        orchestrator_kwargs["sleep"] = sleep
    orchestrator = AuthOrchestrator(
        settings=settings,
        store=store,
        audit=audit,
        fingerprints=fingerprints,
        limiter=limiter,
        tokens=tokens,
        sessions=sessions,
        csrf=csrf,
        captcha=captcha,
        mailer=mailer or SmtpMailer.from_settings(settings),
        geo=geo,
        rng=rng,
        clock=clock,
        **orchestrator_kwargs,
    )
    return Engine(
        settings=settings,
        store=store,
        audit=audit,
        fingerprints=fingerprints,
        limiter=limiter,
        tokens=tokens,
        sessions=sessions,
        csrf=csrf,
        captcha=captcha,
        orchestrator=orchestrator,
        maintenance=MaintenanceService(store, settings, clock=clock),
        geo_cache=geo_cache,
    )
