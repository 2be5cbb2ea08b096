from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from linkguard.logging import get_logger, hash_for_log, sanitize_error_message
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import AuditEvent, utcnow
from linkguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    LINK_REQUESTED = "link_requested"
    LINK_REQUEST_THROTTLED = "link_request_throttled"
    LINK_DELIVERY_FAILED = "link_delivery_failed"
    CAPTCHA_REQUIRED = "captcha_required"
    CAPTCHA_FAILED = "captcha_failed"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_THROTTLED = "login_throttled"
    TOKEN_VERIFY_FAILED = "token_verify_failed"
    LOCKOUT_CREATED = "lockout_created"
    LOCKOUT_CLEARED = "lockout_cleared"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    GEOIP_CHANGED = "geoip_changed"
    SESSION_REVOKED = "session_revoked"
    SESSIONS_REVOKED_ALL = "sessions_revoked_all"
    CSRF_MISMATCH = "csrf_mismatch"
    AUDIT_DEGRADED = "audit_degraded"


class AuditLog:
    """Append-only recorder of security events.

    ``record`` never raises. When the store rejects a write the failure goes
    to the structured log and one ``audit_degraded`` event is attempted so
    the gap is visible in the trail once storage recovers.
    """

    def __init__(
        self,
        store: Union[PostgresStore, MemoryStore],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.clock = clock

    def record(
        self,
        type: Union[AuditEventType, str],
        subject: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        event_type = type.value if isinstance(type, AuditEventType) else str(type)
        try:
            return self.store.append_audit_event(
                event_type, subject, dict(metadata or {}), self.clock()
            )
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                type=event_type,
                subject_hash=hash_for_log(subject),
                error_type=_type_name(exc),
                error=sanitize_error_message(exc),
            )
            if event_type != AuditEventType.AUDIT_DEGRADED.value:
                self._record_degraded(event_type, subject, exc)
            return None

    def _record_degraded(self, lost_type: str, subject: str, exc: Exception) -> None:
        try:
            self.store.append_audit_event(
                AuditEventType.AUDIT_DEGRADED.value,
                subject,
                {"lost_type": lost_type, "error_type": _type_name(exc)},
                self.clock(),
            )
        except Exception as degraded_exc:
            logger.error(
                "audit_degraded_write_failed",
                lost_type=lost_type,
                error=sanitize_error_message(degraded_exc),
            )


def _type_name(exc: BaseException) -> str:
    return exc.__class__.__name__
