from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

from korella.logging import get_logger, redact_email

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1c2430; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1f5fbf; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{brand}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for the account-security flows.

    Without ``SMTP_HOST`` and a sender address the service runs in dev mode:
    messages are logged (recipient redacted) and reported as sent.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Korella",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        title: str,
        paragraphs: Sequence[str],
        *,
        action: Optional[tuple[str, str]] = None,
    ) -> tuple[str, str]:
        """Build the HTML and plain-text bodies of one message."""

        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_parts = [title, "", *paragraphs]
        footer = ""
        if action:
            label, url = action
            safe_url = html.escape(url, quote=True)
            html_parts.insert(
                1,
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(label)}</a></p>',
            )
            footer = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            text_parts[3:3] = ["", url, ""]
        html_body = _LAYOUT.format(
            title=html.escape(title),
            body="\n        ".join(html_parts),
            brand=html.escape(self.from_name),
            footer=footer,
        )
        text_body = "\n".join(text_parts) + f"\n\n---\n{self.from_name}\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; ``False`` when SMTP rejected or failed."""

        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=exc.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(exc.recipients),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_password_reset(
        self, to_email: str, full_name: str, token: str, expires_hours: int
    ) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hi {full_name}, we received a request to reset the password on your Korella account.",
                f"This link expires in {expires_hours} hours and can be used once.",
                "If you didn't request a reset, you can ignore this email; your password stays the same.",
            ],
            action=("Reset Password", reset_url),
        )
        return self._send_email(
            to_email, "Reset your Korella password", html_body, text_body
        )

    def send_password_changed(self, to_email: str, full_name: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                f"Hi {full_name}, the password on your Korella account was just changed.",
                "All other sessions have been signed out.",
                "If you didn't make this change, reset your password immediately and contact support.",
            ],
        )
        return self._send_email(
            to_email, "Your Korella password was changed", html_body, text_body
        )

    def send_email_verification(
        self, to_email: str, full_name: str, token: str, expires_hours: int
    ) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"Welcome to Korella, {full_name}! Confirm your email address to activate your account.",
                f"This link expires in {expires_hours} hours.",
            ],
            action=("Verify Email", verify_url),
        )
        return self._send_email(
            to_email, "Verify your Korella email", html_body, text_body
        )


__all__ = ["EmailService"]
