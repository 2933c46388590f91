from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from modgate.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #3b6ef5; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        {action}
        <p>{outro}</p>
        <div class="footer">
            <p>{brand}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Delivers account notifications over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which is the normal mode for local development and tests.
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
        from_name: str = "Modgate",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        # Last message per recipient while unconfigured; lets dev tooling read links
        self.outbox: dict[str, dict[str, str]] = {}

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        heading: str,
        intro: str,
        outro: str,
        *,
        link: Optional[str] = None,
        label: str = "",
    ) -> tuple[str, str]:
        action = ""
        fallback = ""
        if link:
            action = f'<p style="margin: 30px 0;"><a href="{link}" class="button">{label}</a></p>'
            fallback = f"<p>If the button doesn't work, copy and paste this URL: {link}</p>"
        html_body = _HTML_TEMPLATE.format(
            heading=heading,
            intro=intro,
            action=action,
            outro=outro,
            brand=self.from_name,
            fallback=fallback,
        )
        text_parts = [heading, "", intro]
        if link:
            text_parts += ["", link]
        text_parts += ["", outro, "", "---", self.from_name]
        return html_body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent (or logged in dev mode), False otherwise.
        """
        if not self.is_configured:
            self.outbox[to_email] = {"subject": subject, "text": text_body or html_body}
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(
        self, to_email: str, username: str, token: str, *, ttl_hours: int = 24
    ) -> bool:
        verify_url = f"{self.base_url}/verify?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            f"Hi {username}, please confirm this address belongs to you.",
            f"This link will expire in {ttl_hours} hours.",
            link=verify_url,
            label="Verify Email",
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_reset(
        self, to_email: str, username: str, token: str, *, ttl_minutes: int = 60
    ) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            f"Hi {username}, we received a request to reset your password.",
            f"This link will expire in {ttl_minutes} minutes. "
            "If you didn't request this, you can safely ignore this email.",
            link=reset_url,
            label="Reset Password",
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_mfa_enabled(self, to_email: str, username: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            f"Hi {username}, two-factor authentication is now active on your account.",
            "If you didn't make this change, please contact support immediately.",
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)
