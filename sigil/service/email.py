from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from sigil.logging import get_logger
from sigil.service.one_time import EMAIL_VERIFICATION, PASSWORD_RESET

logger = get_logger(__name__)


class Notifier(Protocol):
    """Delivers a one-time token to its owner out of band."""

    def send_token(self, destination: str, purpose: str, token: str) -> bool: ...


_TEMPLATES = {
    PASSWORD_RESET: {
        "subject": "Reset your {app} password",
        "param": "reset_token",
        "heading": "Reset your password",
        "intro": "We received a request to reset your password. Use the link below to choose a new one:",
        "footer": "If you didn't request this, you can safely ignore this email.",
    },
    EMAIL_VERIFICATION: {
        "subject": "Verify your {app} email",
        "param": "verify_token",
        "heading": "Verify your email",
        "intro": "Please confirm your email address by visiting the link below:",
        "footer": "If you didn't create an account, you can ignore this email.",
    },
}


class EmailService:
    """Email delivery for one-time tokens.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password reset and email verification links
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Sigil",
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

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def link_for(self, purpose: str, token: str) -> str:
        template = _TEMPLATES[purpose]
        return f"{self.base_url}/?{urlencode({template['param']: token})}"

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send an email via SMTP; True if sent, False on any delivery failure."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            # The body holds a live token, so only the subject is logged
            logger.info("email_dev_mode", recipient=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            with self._connect(context) as server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except OSError as e:
            # Connection refusals, timeouts and TLS failures
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def send_token(self, destination: str, purpose: str, token: str) -> bool:
        """Mail ``token`` to ``destination`` as a link for ``purpose``."""
        if purpose not in _TEMPLATES:
            raise ValueError(f"no email template for purpose: {purpose}")
        template = _TEMPLATES[purpose]
        url = self.link_for(purpose, token)
        subject = template["subject"].format(app=self.from_name)

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <h1>{template["heading"]}</h1>
    <p>{template["intro"]}</p>
    <p><a href="{url}">{url}</a></p>
    <p>{template["footer"]}</p>
    <p style="font-size: 12px; color: #5b6470;">{self.from_name}</p>
</body>
</html>
"""

        text_body = f"""{template["heading"]}

{template["intro"]}

{url}

{template["footer"]}

---
{self.from_name}
"""

        return self._send_email(destination, subject, html_body, text_body)
