from __future__ import annotations

import contextlib
import smtplib
import ssl
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Iterator, List, Optional, Protocol

from linkguard.config import Settings
from linkguard.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)


class MailerSendError(Exception):
    """The mail transport refused or failed to accept a message."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.transient = transient


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        ...


def redact_email(email: str) -> str:
    """Keep the domain and two leading characters of an address for log correlation."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


def render_magic_link_email(link: str, ttl_minutes: int) -> tuple[str, str]:
    subject = "Your sign-in link"
    body = (
        "Use the link below to sign in. It works once and expires in "
        f"{ttl_minutes} minutes.\n\n{link}\n\n"
        "If you did not ask to sign in, you can ignore this message."
    )
    return subject, body


@dataclass(frozen=True)
class SmtpConfig:
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    # STARTTLS on a plain connection; implicit TLS when False
    starttls: bool = True
    from_address: Optional[str] = None
    from_name: str = "LinkGuard"
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpConfig":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            starttls=settings.smtp_use_tls,
            from_address=settings.email_from_address or settings.smtp_user,
            from_name=settings.email_from_name,
        )


class SmtpMailer:
    """SMTP transport; logs instead of sending when no relay is configured.

    Delivery failures raise :class:`MailerSendError`. Retrying is left to the
    relay, never done inline here.
    """

    def __init__(self, config: Optional[SmtpConfig] = None) -> None:
        self.config = config or SmtpConfig()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpMailer":
        return cls(SmtpConfig.from_settings(settings))

    @property
    def is_configured(self) -> bool:
        return bool(self.config.host and self.config.from_address)

    def _compose(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.config.from_name, self.config.from_address or ""))
        msg["To"] = to
        msg.set_content(body)
        return msg

    @contextlib.contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        cfg = self.config
        context = ssl.create_default_context()
        if cfg.starttls:
            server = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout)
        else:
            server = smtplib.SMTP_SSL(cfg.host, cfg.port, context=context, timeout=cfg.timeout)
        with server:
            if cfg.starttls:
                server.starttls(context=context)
            if cfg.username and cfg.password:
                server.login(cfg.username, cfg.password)
            yield server

    def send(self, to: str, subject: str, body: str) -> None:
        if not self.is_configured:
            # The body carries a live credential, so only metadata is logged
            logger.info("email_dev_mode", to=redact_email(to), subject=subject)
            return

        msg = self._compose(to, subject, body)
        try:
            with self._connection() as server:
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.config.host)
            raise MailerSendError("smtp authentication failed") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=redact_email(to))
            raise MailerSendError("recipient refused") from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to),
                host=self.config.host,
                error_type=type(exc).__name__,
                error=sanitize_error_message(exc),
            )
            raise MailerSendError("smtp delivery failed", transient=True) from exc

        logger.info("email_sent", to=redact_email(to), subject=subject)


@dataclass(frozen=True)
class SentMessage:
    to: str
    subject: str
    body: str


class MemoryMailer:
    """Keeps messages in a list; used by tests and local tooling."""

    def __init__(self) -> None:
        self.outbox: List[SentMessage] = []
        self._lock = threading.Lock()

    def send(self, to: str, subject: str, body: str) -> None:
        with self._lock:
            self.outbox.append(SentMessage(to=to, subject=subject, body=body))
