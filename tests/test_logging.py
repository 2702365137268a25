"""Tests for the structlog processors."""

from tradedesk.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    set_correlation_id,
)


class TestProcessors:
    def test_credentials_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "login", "password": "Passw0rd!", "user_email": "jane@example.com", "user_id": "abc123"},
        )
        assert event["password"] == "Pa***d!"
        assert event["user_email"] == "ja***om"
        assert event["user_id"] == "abc123"

    def test_credentials_inside_strings_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "email_dev_mode",
                "body_preview": "Visit https://desk.example/auth/reset-password?token=abcdef123456 now",
                "error": "upstream said: Bearer eyJhbGciOi.payload.sig rejected",
                "header": "theme=dark; auth-token=eyJxyz.abc.def",
            },
        )
        assert "abcdef123456" not in event["body_preview"]
        assert "?token=ab***56 now" in event["body_preview"]
        assert event["error"] == "upstream said: Bearer ey***ig rejected"
        assert event["header"] == "theme=dark; auth-token=ey***ef"
        assert event["event"] == "email_dev_mode"

    def test_short_values_are_left_alone(self):
        assert _redact_pii(None, "info", {"token": "abc"})["token"] == "abc"

    def test_correlation_id_is_attached(self):
        reset = correlation_id_var.set(None)
        try:
            assert "correlation_id" not in _add_correlation_id(None, "info", {})
            cid = set_correlation_id()
            assert _add_correlation_id(None, "info", {})["correlation_id"] == cid
            assert set_correlation_id("req-1") == "req-1"
        finally:
            correlation_id_var.reset(reset)
