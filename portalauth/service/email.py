from __future__ import annotations

import html
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

from portalauth.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><a href="{url}" class="button">{action}</a></p>
        <p>{expiry}</p>
        <div class="footer">
            <p>{sender}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Invitation delivery over SMTP.

    When SMTP is not configured the message is logged instead of sent, so
    local development and tests never need a mail server.
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
        from_name: str = "Business Portal",
        base_url: Optional[str] = None,
        portal_base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.portal_base_url = (portal_base_url or f"{self.base_url}/portal").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = to_email
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver one message. Returns False on any SMTP or transport failure."""
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=to_email, subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=to_email)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                recipient=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
            )
            return False
        logger.info("email_sent", recipient=to_email, subject=subject)
        return True

    def _render(self, *, title: str, intro: str, url: str, action: str, expiry: str) -> tuple[str, str]:
        html_body = _HTML_LAYOUT.format(
            title=html.escape(title),
            intro=html.escape(intro),
            url=html.escape(url, quote=True),
            action=html.escape(action),
            expiry=html.escape(expiry),
            sender=html.escape(self.from_name),
        )
        text_body = f"{title}\n\n{intro}\n\n{url}\n\n{expiry}\n\n---\n{self.from_name}\n"
        return html_body, text_body

    def send_invitation(
        self,
        to_email: str,
        token: str,
        *,
        tenant_name: str,
        role: str,
        expires_in_hours: int,
    ) -> bool:
        accept_url = f"{self.base_url}/invitations/{token}/accept"
        html_body, text_body = self._render(
            title=f"You have been invited to {tenant_name}",
            intro=f"You were invited to join {tenant_name} as {role}. Accept the invitation to create your account.",
            url=accept_url,
            action="Accept invitation",
            expiry=f"This link expires in {expires_in_hours} hours.",
        )
        return self._send_email(to_email, f"Invitation to {tenant_name}", html_body, text_body)

    def send_client_invitation(
        self,
        to_email: str,
        token: str,
        *,
        tenant_name: str,
        client_name: str,
        expires_in_hours: int,
    ) -> bool:
        activate_url = f"{self.portal_base_url}/activate/{token}"
        html_body, text_body = self._render(
            title=f"Your {tenant_name} client portal",
            intro=f"Hello {client_name}, {tenant_name} has opened a client portal account for you. Choose a password to activate it.",
            url=activate_url,
            action="Activate account",
            expiry=f"This link expires in {expires_in_hours} hours.",
        )
        return self._send_email(to_email, f"Activate your {tenant_name} portal access", html_body, text_body)
