from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Delivers one-time token links (email verification, password reset).

    When no SMTP host is configured the message is logged instead of sent,
    which keeps development and test setups free of mail infrastructure.
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
        from_name: str = "authcore",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain-text message; returns False instead of raising on SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(body)

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=self._redact_email(to_email))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, secret: str, *, ttl_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={secret}"
        body = (
            "Please confirm your email address by visiting the link below:\n\n"
            f"{verify_url}\n\n"
            f"This link expires in {ttl_hours} hours.\n"
        )
        return self._send_email(to_email, "Verify your email address", body)

    def send_password_reset(self, to_email: str, secret: str, *, ttl_minutes: int = 60) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={secret}"
        body = (
            "We received a request to reset your password. "
            "Visit the link below to choose a new one:\n\n"
            f"{reset_url}\n\n"
            f"This link expires in {ttl_minutes} minutes. "
            "If you did not ask for this, you can ignore this message.\n"
        )
        return self._send_email(to_email, "Reset your password", body)
