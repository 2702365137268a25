"""Tests for the password-reset mailer."""

import smtplib

from tradedesk.service.email import EmailService


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def sendmail(self, sender, recipient, message):
        FakeSMTP.sent.append((sender, recipient, message, list(self.calls)))


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", None)
        service = EmailService(base_url="https://desk.example/")
        assert not service.is_configured
        assert service.send_password_reset("jane@example.com", "tok123")

    def test_reset_link(self):
        service = EmailService(base_url="https://desk.example/")
        assert service.reset_url("a+b") == "https://desk.example/auth/reset-password?token=a%2Bb"

    def test_sends_over_starttls(self, monkeypatch):
        FakeSMTP.sent = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        service = EmailService(
            smtp_host="smtp.example",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@desk.example",
            base_url="https://desk.example",
        )

        assert service.send_password_reset("jane@example.com", "tok123", ttl_minutes=15)

        sender, recipient, message, calls = FakeSMTP.sent[0]
        assert sender == "noreply@desk.example"
        assert recipient == "jane@example.com"
        assert "token=tok123" in message
        assert calls == ["starttls", ("login", "mailer")]

    def test_smtp_failure_returns_false(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "busy")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        service = EmailService(smtp_host="smtp.example", from_email="noreply@desk.example")
        assert service.send_password_reset("jane@example.com", "tok123") is False

    def test_redacted_recipient(self):
        assert EmailService._redact_email("jane@example.com") == "ja***@example.com"
        assert EmailService._redact_email("nobody") == "redacted"
