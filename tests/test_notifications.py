import smtplib

import pytest

from bookora.config import Settings
from bookora.service.notifications import (
    LoggingNotificationSink,
    MailEvent,
    SmtpNotificationSink,
    build_notification_sink,
    render,
)

SECRET = "n" * 40


def test_render_fills_variables():
    body = render(
        MailEvent(
            to="a@example.com",
            subject="s",
            template="password_reset",
            variables={"first_name": "Ann", "ttl_hours": 1, "reset_url": "https://x/#token=t"},
        )
    )
    assert "Hello Ann" in body
    assert "https://x/#token=t" in body


def test_render_missing_variable_is_blank():
    body = render(MailEvent(to="a@example.com", subject="s", template="booking_confirmed"))
    assert "Booking reference: ." in body


def test_render_unknown_template():
    with pytest.raises(KeyError):
        render(MailEvent(to="a@example.com", subject="s", template="nope"))


def test_sink_selection():
    assert isinstance(
        build_notification_sink(Settings(jwt_secret=SECRET, email_enabled=False)),
        LoggingNotificationSink,
    )
    assert isinstance(
        build_notification_sink(Settings(jwt_secret=SECRET, smtp_host=None)),
        LoggingNotificationSink,
    )
    sink = build_notification_sink(
        Settings(
            jwt_secret=SECRET,
            smtp_host="smtp.example.com",
            email_from_address="noreply@example.com",
        )
    )
    try:
        assert isinstance(sink, SmtpNotificationSink)
        assert sink.from_email == "noreply@example.com"
    finally:
        sink.shutdown()


def test_smtp_failure_is_logged_not_raised(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    sink = SmtpNotificationSink(smtp_host="smtp.example.com", from_email="noreply@example.com")
    try:
        event = MailEvent(
            to="a@example.com",
            subject="s",
            template="email_verification",
            variables={"first_name": "Ann", "ttl_days": 7, "verify_url": "u"},
        )
        assert sink._deliver(event) is False
    finally:
        sink.shutdown()
