from __future__ import annotations

from typing import Optional

from linkguard.storage.errors import ConstraintViolation, StorageError


class ServiceError(Exception):
    """Base class for engine exceptions.

    Each class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer controller can map it without inspecting the
    message. Flow-internal reasons (token, rate-limit, fingerprint) never
    reach that controller: the orchestrator records them in the audit trail
    and collapses them to a generic outcome.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input, rejected before touching shared state (400)."""
    status_code = 400
    error_code = "validation_error"


class RateLimitExceededError(ServiceError):
    """A rate-limit scope denied the attempt (429)."""
    status_code = 429
    error_code = "rate_limited"


class CaptchaRequiredError(ServiceError):
    """A solved CAPTCHA challenge is required to continue (429)."""
    status_code = 429
    error_code = "captcha_required"


class AccountLockedError(ServiceError):
    """An active lockout covers the subject (423)."""
    status_code = 423
    error_code = "account_locked"


class TokenError(ServiceError):
    """Base for magic-link verification failures (401)."""
    status_code = 401
    error_code = "invalid_link"


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class TokenAlreadyConsumedError(TokenError):
    error_code = "token_already_consumed"


class TokenSecretMismatchError(TokenError):
    error_code = "token_secret_mismatch"


class FingerprintMismatchError(TokenError):
    error_code = "fingerprint_mismatch"


class SessionError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(SessionError):
    """Session idle or absolute expiry has passed (401)."""
    error_code = "session_expired"


class SessionRevokedError(SessionError):
    """Session was explicitly revoked; terminal (401)."""
    error_code = "session_revoked"


class CsrfMismatchError(ServiceError):
    """Presented CSRF value is missing, stale or wrong (403)."""
    status_code = 403
    error_code = "csrf_mismatch"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "RateLimitExceededError",
    "CaptchaRequiredError",
    "AccountLockedError",
    "TokenError",
    "TokenExpiredError",
    "TokenAlreadyConsumedError",
    "TokenSecretMismatchError",
    "FingerprintMismatchError",
    "SessionError",
    "SessionExpiredError",
    "SessionRevokedError",
    "CsrfMismatchError",
    "NotFoundError",
    "StorageError",
    "ConstraintViolation",
]
