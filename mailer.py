import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional
from urllib.parse import quote

from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

RESET_TEMPLATE = """\
<div style="max-width: 600px; margin: 0 auto; padding: 20px; font-family: Arial, sans-serif;">
    <h2 style="color: #074799; text-align: center;">Password Reset Request</h2>
    <p>Hello {name},</p>
    <p>We received a request to reset your password. Click the button below to create a new password:</p>
    <div style="text-align: center; margin: 30px 0;">
        <a href="{link}" style="background-color: #074799; color: white; padding: 12px 24px; text-decoration: none; border-radius: 4px; display: inline-block;">Reset Password</a>
    </div>
    <p>If you didn't request this, you can safely ignore this email.</p>
    <p>This link will expire in {minutes} minutes for security reasons.</p>
    <hr style="border: 1px solid #eee; margin: 20px 0;">
    <p style="color: #666; font-size: 12px; text-align: center;">Task Manager Team</p>
</div>
"""


@dataclass
class MailResult:
    sent: bool
    preview_url: Optional[str] = None


class Mailer:
    def __init__(self, settings: Settings = default_settings):
        self.settings = settings

    def reset_link(self, token: str) -> str:
        return f"{self.settings.CLIENT_URL.rstrip('/')}/auth/reset-password?token={quote(token)}"

    def build_password_reset(self, to: str, full_name: str, token: str) -> EmailMessage:
        link = self.reset_link(token)
        msg = EmailMessage()
        msg["Subject"] = "Password Reset Request"
        msg["From"] = self.settings.MAIL_FROM
        msg["To"] = to
        msg.set_content(f"Hello {full_name},\n\nReset your password here: {link}\n")
        msg.add_alternative(
            RESET_TEMPLATE.format(
                name=full_name or "there",
                link=link,
                minutes=self.settings.RESET_TOKEN_EXPIRE_MINUTES,
            ),
            subtype="html",
        )
        return msg

    def send_password_reset(self, to: str, full_name: str, token: str) -> MailResult:
        msg = self.build_password_reset(to, full_name, token)
        if not self.settings.SMTP_HOST:
            # No SMTP configured: nothing is sent, the link is handed back for local testing
            logger.info("SMTP_HOST not set; password reset mail for %s not sent, returning preview link", to)
            return MailResult(sent=False, preview_url=self.reset_link(token))
        try:
            self._deliver(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending password reset email to %s: %s", to, e)
            return MailResult(sent=False)
        logger.info("Password reset email sent to %s", to)
        return MailResult(sent=True)

    def _deliver(self, msg: EmailMessage) -> None:
        s = self.settings
        with smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=30) as smtp:
            if s.SMTP_USE_TLS:
                smtp.starttls()
            if s.SMTP_USER:
                smtp.login(s.SMTP_USER, s.SMTP_PASSWORD or "")
            smtp.send_message(msg)


def get_mailer() -> Mailer:
    return Mailer()
