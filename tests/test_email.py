"""Tests for transactional email rendering and delivery failures."""

import smtplib
from unittest.mock import patch

import pytest

from korella.service.email import EmailService


@pytest.fixture
def dev_email():
    return EmailService(base_url="https://app.example.com/")


@pytest.fixture
def smtp_email():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
        base_url="https://app.example.com",
    )


class TestDevMode:
    def test_unconfigured_service_reports_success(self, dev_email):
        assert not dev_email.is_configured
        assert dev_email.send_password_changed("ada@example.com", "Ada") is True

    def test_from_settings(self, settings):
        service = EmailService.from_settings(settings)
        assert service.base_url == "http://localhost:3000"
        assert service.from_name == "Korella"


class TestContent:
    def test_reset_link_and_expiry(self, dev_email):
        with patch.object(dev_email, "_send_email", return_value=True) as send:
            assert dev_email.send_password_reset("ada@example.com", "Ada", "tok123", 24)

        to_email, subject, html_body, text_body = send.call_args.args
        assert to_email == "ada@example.com"
        assert "Reset" in subject
        assert "https://app.example.com/reset-password?token=tok123" in html_body
        assert "https://app.example.com/reset-password?token=tok123" in text_body
        assert "24 hours" in text_body

    def test_verification_link(self, dev_email):
        with patch.object(dev_email, "_send_email", return_value=True) as send:
            dev_email.send_email_verification("ada@example.com", "Ada", "vtok", 24)
        assert "https://app.example.com/verify-email?token=vtok" in send.call_args.args[3]

    def test_names_are_html_escaped(self, dev_email):
        with patch.object(dev_email, "_send_email", return_value=True) as send:
            dev_email.send_password_changed("x@example.com", "<script>")
        assert "<script>" not in send.call_args.args[2]
        assert "&lt;script&gt;" in send.call_args.args[2]


class TestSmtpFailures:
    def test_auth_failure_returns_false(self, smtp_email):
        with patch("korella.service.email.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad creds")
            assert smtp_email.send_password_changed("ada@example.com", "Ada") is False

    def test_connection_error_returns_false(self, smtp_email):
        with patch("korella.service.email.smtplib.SMTP", side_effect=OSError("unreachable")):
            assert smtp_email.send_password_changed("ada@example.com", "Ada") is False

    def test_successful_send(self, smtp_email):
        with patch("korella.service.email.smtplib.SMTP") as smtp_cls:
            assert smtp_email.send_password_changed("ada@example.com", "Ada") is True
            server = smtp_cls.return_value.__enter__.return_value
            server.starttls.assert_called_once()
            server.login.assert_called_once_with("mailer", "pw")
            server.sendmail.assert_called_once()
