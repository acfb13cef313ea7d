"""Outbound delivery of invitation notices."""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InvitationNotice:
    to_email: str
    inviter_name: str
    tenant_name: str
    role: str
    invite_link: str
    expires_in_days: int = 7


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    delivered: bool
    error: str | None = None


class InvitationNotifier(Protocol):
    def deliver_invitation(self, notice: InvitationNotice) -> DeliveryResult: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpInvitationNotifier:
    """Sends invitation emails over SMTP.

    Without an SMTP host the notice is only logged and reported as not
    delivered, which keeps local development usable.
    """

    def __init__(
        self,
        *,
        smtp_host: str | None,
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        smtp_use_tls: bool = True,
        from_email: str = "noreply@personaplatform.com",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpInvitationNotifier":
        return cls(
            smtp_host=settings.smtp_host or None,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user or None,
            smtp_password=settings.smtp_password or None,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def deliver_invitation(self, notice: InvitationNotice) -> DeliveryResult:
        if not self.is_configured:
            logger.info(
                "email service not configured, invitation for %s not sent",
                redact_email(notice.to_email),
            )
            return DeliveryResult(delivered=False, error="email service not configured")

        message = self._render(notice)
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=ssl.create_default_context())
                    self._login(server)
                    server.sendmail(self.from_email, notice.to_email, message.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=ssl.create_default_context(),
                    timeout=self.timeout,
                ) as server:
                    self._login(server)
                    server.sendmail(self.from_email, notice.to_email, message.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.warning(
                "invitation email to %s failed: %s: %s",
                redact_email(notice.to_email),
                type(exc).__name__,
                exc,
            )
            return DeliveryResult(delivered=False, error=f"delivery failed: {type(exc).__name__}")

        logger.info("invitation email sent to %s", redact_email(notice.to_email))
        return DeliveryResult(delivered=True)

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)

    def _render(self, notice: InvitationNotice) -> MIMEMultipart:
        role_label = notice.role.replace("_", " ")
        subject = f"You've been invited to join {notice.tenant_name}"
        text_body = (
            f"{notice.inviter_name} has invited you to join {notice.tenant_name} as a {role_label}.\n\n"
            f"Accept the invitation here:\n{notice.invite_link}\n\n"
            f"This invitation will expire in {notice.expires_in_days} days. If you didn't expect this email, "
            "you can safely ignore it.\n"
        )
        link = html.escape(notice.invite_link, quote=True)
        html_body = (
            "<!DOCTYPE html><html><body>"
            "<h2>You're invited!</h2>"
            f"<p><strong>{html.escape(notice.inviter_name)}</strong> has invited you to join "
            f"<strong>{html.escape(notice.tenant_name)}</strong> as a "
            f"<strong>{html.escape(role_label)}</strong>.</p>"
            f'<p><a href="{link}">Accept invitation</a></p>'
            f"<p>This invitation will expire in {notice.expires_in_days} days.</p>"
            f'<p>If the button does not work, paste this link into your browser:<br>{link}</p>'
            "</body></html>"
        )

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.from_email
        message["To"] = notice.to_email
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message
