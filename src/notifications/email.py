"""
Transactional email for account flows.

Sends verification and password-reset links over SMTP.

Configuration:
    SMTP_HOST: SMTP server hostname (email is disabled when unset)
    SMTP_PORT: SMTP server port (default: 587, 465 implies SSL)
    SMTP_USERNAME / SMTP_PASSWORD: optional authentication
    SMTP_USE_TLS: STARTTLS on plain connections (default: true)
    EMAIL_FROM: sender address
    FRONTEND_URL: base URL used to build links
"""
import logging
import os
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional

from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)

FROM_NAME = "Generation Catalyst"


class EmailService:
    """
    SMTP sender for portal account emails.

    send_* methods return True on success and False on any delivery failure;
    they never raise, so callers decide whether a failed send matters.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        from_email: Optional[str] = None,
        frontend_url: Optional[str] = None,
    ):
        self.host = host or os.environ.get("SMTP_HOST")
        self.port = port or int(os.environ.get("SMTP_PORT", "587"))
        self.username = username or os.environ.get("SMTP_USERNAME")
        self.password = password or get_secret("SMTP_PASSWORD", "")
        if use_tls is None:
            use_tls = os.environ.get("SMTP_USE_TLS", "true").lower() == "true"
        self.use_tls = use_tls
        self.from_email = from_email or os.environ.get("EMAIL_FROM", "noreply@generationcatalyst.com")
        self.frontend_url = (frontend_url or os.environ.get("FRONTEND_URL", "http://localhost:5000")).rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.host)

    def send(self, to: str, subject: str, body_text: str, body_html: Optional[str] = None) -> bool:
        """
        Send one email.

        Returns:
            True if the SMTP server accepted the message.
        """
        if not self.is_configured():
            logger.warning("Email service not configured (missing SMTP_HOST), skipping send")
            return False

        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((FROM_NAME, self.from_email))
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(body_text, "plain", "utf-8"))
        if body_html:
            msg.attach(MIMEText(body_html, "html", "utf-8"))

        try:
            if self.port == 465:
                context = ssl.create_default_context()
                with smtplib.SMTP_SSL(self.host, self.port, context=context) as server:
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.sendmail(self.from_email, [to], msg.as_string())
            else:
                with smtplib.SMTP(self.host, self.port) as server:
                    if self.use_tls:
                        server.starttls(context=ssl.create_default_context())
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.sendmail(self.from_email, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send '{subject}' email to {to}: {e}")
            return False

        logger.info(f"Sent '{subject}' email to {to}")
        return True

    def send_verification_email(self, to: str, name: str, token: str) -> bool:
        url = f"{self.frontend_url}/verify-email?token={token}"
        text = (
            f"Welcome to Generation Catalyst, {name}!\n\n"
            f"Please verify your email address to access your client portal:\n{url}\n\n"
            "This link will expire in 24 hours.\n"
            "If you didn't create an account, you can ignore this email.\n"
        )
        html = (
            f"<p>Welcome, {name}!</p>"
            f"<p>Please verify your email address to access your client portal.</p>"
            f'<p><a href="{url}">Verify Email Address</a></p>'
            f"<p>This link will expire in 24 hours.</p>"
        )
        return self.send(to, "Verify your email address", text, html)

    def send_password_reset_email(self, to: str, name: str, token: str) -> bool:
        url = f"{self.frontend_url}/reset-password?token={token}"
        text = (
            f"Hello {name},\n\n"
            f"We received a request to reset your password. Use this link to choose a new one:\n{url}\n\n"
            "This link will expire in 1 hour.\n"
            "If you didn't request a reset, you can ignore this email.\n"
        )
        html = (
            f"<p>Hello {name},</p>"
            f"<p>We received a request to reset your password.</p>"
            f'<p><a href="{url}">Reset Password</a></p>'
            f"<p>This link will expire in 1 hour.</p>"
        )
        return self.send(to, "Reset your password", text, html)


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get singleton EmailService."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
