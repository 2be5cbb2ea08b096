from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Union

from linkguard.config import Settings
from linkguard.logging import get_logger
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


class MaintenanceService:
    """Purges rows whose expiry has passed.

    Each call is a single conditional delete, so a row renewed between the
    job's start and the statement (a touched session, a re-extended lockout)
    no longer matches and survives. Safe to run alongside live traffic.
    """

    def __init__(
        self,
        store: Union[PostgresStore, MemoryStore],
        settings: Settings,
        *,
        retention: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.retention = retention
        self.clock = clock

    def purge_expired(self) -> Dict[str, int]:
        now = self.clock()
        cutoff = now - self.retention
        window = timedelta(seconds=self.settings.rate_limit_window_seconds)
        # Expired lockouts keep their strike count for one max cool-down so growth still applies
        lockout_cutoff = now - timedelta(seconds=self.settings.lockout_max_seconds)
        counts = {
            "tokens": self.store.delete_expired_tokens(cutoff),
            "sessions": self.store.delete_expired_sessions(
                now,
                timedelta(minutes=self.settings.session_sliding_minutes),
                cutoff,
            ),
            "rate_limits": self.store.delete_stale_counters(now - window),
            "lockouts": self.store.delete_expired_lockouts(lockout_cutoff),
            "captcha_challenges": self.store.delete_expired_captchas(now),
        }
        logger.info("maintenance_purge_complete", **counts)
        return counts
