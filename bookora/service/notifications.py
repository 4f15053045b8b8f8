from __future__ import annotations

import smtplib
import ssl
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol

from bookora.config import Settings
from bookora.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MailEvent:
    to: str
    subject: str
    template: str
    variables: Dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    def publish(self, event: MailEvent) -> None: ...


_TEMPLATES: Dict[str, str] = {
    "password_reset": (
        "Hello {first_name},\n\n"
        "Use the link below to choose a new password. It expires in {ttl_hours} hour(s).\n\n"
        "{reset_url}\n\n"
        "If you did not ask for this you can ignore this message."
    ),
    "password_changed": (
        "Hello {first_name},\n\n"
        "Your password was changed and every signed-in device has been logged out.\n"
        "If this was not you, reset your password immediately."
    ),
    "email_verification": (
        "Hello {first_name},\n\n"
        "Confirm your address with the link below. It expires in {ttl_days} day(s).\n\n"
        "{verify_url}"
    ),
    "guest_booking_access": (
        "Hello,\n\n"
        "Your booking for {start_time} is waiting for confirmation:\n\n"
        "{confirm_url}"
    ),
    "booking_confirmed": (
        "Hello,\n\n"
        "Your booking for {start_time} is confirmed. Booking reference: {booking_id}."
    ),
}


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(event: MailEvent) -> str:
    template = _TEMPLATES.get(event.template)
    if template is None:
        raise KeyError(f"unknown mail template {event.template!r}")
    return template.format_map(_SafeDict(event.variables))


def _redact_address(address: str) -> str:
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LoggingNotificationSink:
    """Development sink: records that a message would have been sent."""

    def publish(self, event: MailEvent) -> None:
        body = render(event)
        logger.info(
            "mail_dev_mode",
            recipient=_redact_address(event.to),
            subject=event.subject,
            template=event.template,
            body_length=len(body),
        )


class SmtpNotificationSink:
    """Fire-and-forget SMTP delivery on a small background pool.

    Delivery failures are logged and never reach the caller; the workflow that
    published the event has already committed.
    """

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Bookora",
        max_workers: int = 2,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="bookora-mail"
        )

    def publish(self, event: MailEvent) -> None:
        self._executor.submit(self._deliver, event)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _build_message(self, event: MailEvent) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = event.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = event.to
        msg.attach(MIMEText(render(event), "plain"))
        return msg

    def _deliver(self, event: MailEvent) -> bool:
        recipient = _redact_address(event.to)
        try:
            msg = self._build_message(event)
            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, event.to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, event.to, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("mail_auth_failed", recipient=recipient, host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("mail_recipient_refused", recipient=recipient, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "mail_send_failed",
                recipient=recipient,
                template=event.template,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except KeyError as exc:
            logger.error("mail_template_missing", template=event.template, error=str(exc))
            return False
        logger.info("mail_sent", recipient=recipient, template=event.template)
        return True


def build_notification_sink(settings: Settings) -> NotificationSink:
    if settings.email_enabled and settings.smtp_host and (
        settings.email_from_address or settings.smtp_user
    ):
        return SmtpNotificationSink(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    return LoggingNotificationSink()


__all__ = [
    "MailEvent",
    "NotificationSink",
    "LoggingNotificationSink",
    "SmtpNotificationSink",
    "build_notification_sink",
    "render",
]
