from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from rebelauth.logging import get_logger, mask_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #222;">
  <div style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <h2>{greeting}</h2>
    <p>{intro}</p>
    <p style="margin: 28px 0;">
      <a href="{url}" style="background: #e50914; color: #fff; padding: 12px 22px;
         border-radius: 6px; text-decoration: none; font-weight: bold;">{action}</a>
    </p>
    <p>{expiry}</p>
    <p style="font-size: 12px; color: #666;">{brand}. If the button does not work, open {url}</p>
  </div>
</body>
</html>
"""


class EmailService:
    """Outbound transactional mail over SMTP.

    Sends are fire-and-forget from the caller's perspective: every method
    returns a bool and never raises. Without SMTP settings (dev/test) the
    message is logged instead of sent.
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
        from_name: str = "watchRebel",
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
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            context = ssl.create_default_context()
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
            logger.error("email_auth_failed", host=self.smtp_host, error_code=e.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=mask_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def _render(
        self, *, greeting: str, intro: str, action: str, url: str, expiry: str
    ) -> tuple[str, str]:
        html_body = _HTML_TEMPLATE.format(
            greeting=html.escape(greeting),
            intro=html.escape(intro),
            action=html.escape(action),
            url=html.escape(url, quote=True),
            expiry=html.escape(expiry),
            brand=html.escape(self.from_name),
        )
        text_body = f"{greeting}\n\n{intro}\n\n{url}\n\n{expiry}\n\n---\n{self.from_name}\n"
        return html_body, text_body

    def send_email_verification(self, to_email: str, display_name: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email/{token}"
        html_body, text_body = self._render(
            greeting=f"Hi {display_name}!",
            intro=f"Confirm your email address to finish setting up your {self.from_name} account.",
            action="Confirm email",
            url=verify_url,
            expiry="The link is valid for 24 hours.",
        )
        return self._send_email(
            to_email, f"Confirm your {self.from_name} email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, display_name: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password/{token}"
        html_body, text_body = self._render(
            greeting=f"Hi {display_name}!",
            intro="Someone asked to reset the password on your account. "
            "If it was you, choose a new password using the link below.",
            action="Choose a new password",
            url=reset_url,
            expiry="The link is valid for 1 hour. If you did not ask for this, ignore this email.",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )
