# labbo/services/email.py
"""
Outgoing email.

Providers: SMTP (aiosmtplib, e.g. Gmail), SendGrid and Resend (HTTP APIs via
httpx) and a mock provider that only records messages in memory. Sending
never raises: failures are logged and reported as False so a business
operation is not rolled back because a mail could not be delivered.
"""
import html
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

import aiosmtplib
import httpx
from loguru import logger

from labbo.core import config
from labbo.core.utils import utc_now

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
RESEND_URL = "https://api.resend.com/emails"


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html: str
    text: Optional[str] = None
    sent_at: datetime = field(default_factory=utc_now)


class EmailService:
    """Async email service with a pluggable provider."""

    def __init__(self, provider: str = config.EMAIL_PROVIDER):
        self.provider = provider
        self.from_email = config.EMAIL_FROM
        self.from_name = config.EMAIL_FROM_NAME
        self.app_url = config.APP_URL
        # messages recorded by the mock provider
        self.outbox: List[OutgoingEmail] = []
        logger.info(f"[Email] Using '{self.provider}' provider for email delivery")

    @property
    def is_configured(self) -> bool:
        if self.provider == "smtp":
            return bool(config.SMTP_USERNAME and config.SMTP_PASSWORD)
        if self.provider == "sendgrid":
            return bool(config.SENDGRID_API_KEY)
        if self.provider == "resend":
            return bool(config.RESEND_API_KEY)
        return self.provider == "mock"

    async def send_email(self, to_email: str, subject: str, html_content: str,
                         text_content: Optional[str] = None) -> bool:
        if not self.is_configured:
            logger.warning(f"[Email] Provider '{self.provider}' not configured, skipping email to {to_email}")
            return False
        try:
            if self.provider == "smtp":
                await self._send_via_smtp(to_email, subject, html_content, text_content)
            elif self.provider == "sendgrid":
                await self._send_via_sendgrid(to_email, subject, html_content, text_content)
            elif self.provider == "resend":
                await self._send_via_resend(to_email, subject, html_content, text_content)
            else:
                self.outbox.append(OutgoingEmail(to_email, subject, html_content, text_content))
                logger.info(f"[Email/Mock] To: {to_email} | Subject: {subject}")
                return True
        except (aiosmtplib.SMTPException, httpx.HTTPError, OSError) as e:
            logger.error(f"[Email/{self.provider}] Failed to send email to {to_email}: {e}")
            return False
        logger.info(f"[Email/{self.provider}] Sent email to {to_email}: {subject}")
        return True

    async def _send_via_smtp(self, to_email: str, subject: str, html_content: str,
                             text_content: Optional[str]) -> None:
        message = MIMEMultipart("alternative")
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message["Subject"] = subject
        if text_content:
            message.attach(MIMEText(text_content, "plain"))
        message.attach(MIMEText(html_content, "html"))
        await aiosmtplib.send(
            message,
            hostname=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            use_tls=config.SMTP_USE_TLS,
            start_tls=not config.SMTP_USE_TLS,
        )

    async def _send_via_sendgrid(self, to_email: str, subject: str, html_content: str,
                                 text_content: Optional[str]) -> None:
        content = [{"type": "text/html", "value": html_content}]
        if text_content:
            content.insert(0, {"type": "text/plain", "value": text_content})
        body = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": content,
        }
        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.post(
                SENDGRID_URL, json=body, headers={"Authorization": f"Bearer {config.SENDGRID_API_KEY}"}
            )
            response.raise_for_status()

    async def _send_via_resend(self, to_email: str, subject: str, html_content: str,
                               text_content: Optional[str]) -> None:
        body = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        if text_content:
            body["text"] = text_content
        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.post(
                RESEND_URL, json=body, headers={"Authorization": f"Bearer {config.RESEND_API_KEY}"}
            )
            response.raise_for_status()

    # --- Templates ---
    def _wrap(self, title: str, body_html: str) -> str:
        return f"""<!DOCTYPE html>
<html><body style="font-family: Arial, sans-serif; color: #1f2937; max-width: 600px; margin: 0 auto;">
  <div style="background: #1e40af; color: white; padding: 20px; border-radius: 8px 8px 0 0;">
    <h2 style="margin: 0;">{html.escape(title)}</h2>
  </div>
  <div style="padding: 20px; border: 1px solid #e5e7eb; border-top: none; border-radius: 0 0 8px 8px;">
    {body_html}
    <p style="color: #6b7280; font-size: 12px; margin-top: 30px;">{html.escape(self.from_name)}</p>
  </div>
</body></html>"""

    def _button(self, url: str, label: str) -> str:
        return (f'<p><a href="{html.escape(url)}" style="background: #1e40af; color: white; padding: 10px 20px; '
                f'text-decoration: none; border-radius: 6px;">{html.escape(label)}</a></p>'
                f'<p style="font-size: 12px;">Or open this link: {html.escape(url)}</p>')

    async def send_verification_email(self, to_email: str, name: str, token: str) -> bool:
        url = f"{self.app_url}/verify-email?token={token}"
        body = (f"<p>Hi {html.escape(name)},</p><p>Please confirm your email address to activate your account.</p>"
                f"{self._button(url, 'Verify Email')}"
                f"<p>This link expires in {config.EMAIL_VERIFICATION_TOKEN_HOURS} hours.</p>")
        text = f"Hi {name},\n\nVerify your email: {url}\n"
        return await self.send_email(to_email, "Verify your email address", self._wrap("Email Verification", body), text)

    async def send_password_reset_email(self, to_email: str, name: str, token: str) -> bool:
        url = f"{self.app_url}/reset-password?token={token}"
        body = (f"<p>Hi {html.escape(name)},</p><p>We received a request to reset your password.</p>"
                f"{self._button(url, 'Reset Password')}"
                f"<p>This link expires in {config.PASSWORD_RESET_TOKEN_HOURS} hour(s). "
                f"If you did not request this, you can ignore this email.</p>")
        text = f"Hi {name},\n\nReset your password: {url}\n"
        return await self.send_email(to_email, "Reset your password", self._wrap("Password Reset", body), text)

    async def send_lockout_email(self, to_email: str, name: str, locked_until: datetime) -> bool:
        body = (f"<p>Hi {html.escape(name)},</p><p>Your account was locked after "
                f"{config.MAX_FAILED_LOGIN_ATTEMPTS} failed sign-in attempts.</p>"
                f"<p>You can try again after <strong>{locked_until:%Y-%m-%d %H:%M} UTC</strong>, "
                f"or reset your password to unlock it immediately.</p>")
        return await self.send_email(to_email, "Your account has been locked", self._wrap("Account Locked", body))

    async def send_welcome_email(self, to_email: str, name: str) -> bool:
        body = (f"<p>Hi {html.escape(name)},</p><p>Your account is ready. You can now sign in and borrow "
                f"laboratory equipment.</p>{self._button(self.app_url + '/login', 'Sign In')}")
        return await self.send_email(to_email, "Welcome to the Lab Inventory System", self._wrap("Welcome", body))

    async def send_registration_rejected_email(self, to_email: str, name: str, reason: Optional[str]) -> bool:
        reason_html = f"<p>Reason: {html.escape(reason)}</p>" if reason else ""
        body = f"<p>Hi {html.escape(name)},</p><p>Your registration was not approved.</p>{reason_html}"
        return await self.send_email(to_email, "Registration not approved", self._wrap("Registration", body))

    async def send_borrow_request_email(self, to_email: str, borrower_name: str, equipment_name: str,
                                        quantity: int, expected_return: datetime, purpose: str) -> bool:
        body = (f"<p>A new borrowing request needs review.</p><ul>"
                f"<li>Borrower: {html.escape(borrower_name)}</li>"
                f"<li>Equipment: {html.escape(equipment_name)} (x{quantity})</li>"
                f"<li>Return by: {expected_return:%Y-%m-%d}</li>"
                f"<li>Purpose: {html.escape(purpose)}</li></ul>"
                f"{self._button(self.app_url + '/admin/borrowings', 'Review Requests')}")
        return await self.send_email(to_email, f"New borrowing request: {equipment_name}",
                                     self._wrap("Borrowing Request", body))

    async def send_borrow_decision_email(self, to_email: str, name: str, equipment_name: str,
                                         approved: bool, note: Optional[str] = None,
                                         expected_return: Optional[datetime] = None) -> bool:
        if approved:
            subject = f"Borrowing approved: {equipment_name}"
            body = (f"<p>Hi {html.escape(name)},</p><p>Your request for <strong>{html.escape(equipment_name)}"
                    f"</strong> was approved.</p>")
            if expected_return:
                body += f"<p>Please return it by <strong>{expected_return:%Y-%m-%d}</strong>.</p>"
        else:
            subject = f"Borrowing rejected: {equipment_name}"
            body = (f"<p>Hi {html.escape(name)},</p><p>Your request for <strong>{html.escape(equipment_name)}"
                    f"</strong> was rejected.</p>")
        if note:
            body += f"<p>Note from staff: {html.escape(note)}</p>"
        return await self.send_email(to_email, subject, self._wrap("Borrowing Update", body))

    async def send_return_confirmation_email(self, to_email: str, name: str, equipment_name: str,
                                             penalty_text: Optional[str] = None) -> bool:
        body = (f"<p>Hi {html.escape(name)},</p><p>The return of <strong>{html.escape(equipment_name)}"
                f"</strong> has been confirmed. Thank you.</p>")
        if penalty_text:
            body += f"<p>A late return penalty of <strong>{html.escape(penalty_text)}</strong> applies.</p>"
        return await self.send_email(to_email, f"Return confirmed: {equipment_name}", self._wrap("Return Confirmed", body))

    async def send_extension_decision_email(self, to_email: str, name: str, equipment_name: str,
                                            approved: bool, new_date: Optional[datetime] = None,
                                            note: Optional[str] = None) -> bool:
        outcome = "approved" if approved else "rejected"
        body = (f"<p>Hi {html.escape(name)},</p><p>Your extension request for "
                f"<strong>{html.escape(equipment_name)}</strong> was {outcome}.</p>")
        if approved and new_date:
            body += f"<p>New return date: <strong>{new_date:%Y-%m-%d}</strong></p>"
        if note:
            body += f"<p>Note from staff: {html.escape(note)}</p>"
        return await self.send_email(to_email, f"Extension {outcome}: {equipment_name}", self._wrap("Extension", body))

    async def send_due_reminder_email(self, to_email: str, name: str, equipment_name: str,
                                      expected_return: datetime) -> bool:
        body = (f"<p>Hi {html.escape(name)},</p><p><strong>{html.escape(equipment_name)}</strong> is due "
                f"on <strong>{expected_return:%Y-%m-%d}</strong>. Please return it on time to avoid a penalty.</p>")
        return await self.send_email(to_email, f"Reminder: {equipment_name} is due soon", self._wrap("Return Reminder", body))

    async def send_overdue_email(self, to_email: str, name: str, equipment_name: str,
                                 days_overdue: int, penalty_text: str) -> bool:
        body = (f"<p>Hi {html.escape(name)},</p><p><strong>{html.escape(equipment_name)}</strong> is "
                f"{days_overdue} day(s) overdue. The current penalty is <strong>{html.escape(penalty_text)}"
                f"</strong> and grows every day until it is returned.</p>")
        return await self.send_email(to_email, f"Overdue: {equipment_name}", self._wrap("Overdue Equipment", body))


email_service = EmailService()
