# services/email_service.py
import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

from admin_messaging.config import Settings

logger = logging.getLogger(__name__)


class NoopEmailNotifier:

    enabled = False

    async def send_message_notification(
        self,
        to_email: str,
        recipient_name: str,
        sender_name: str,
        sender_role: str,
        preview: str,
        conversation_id: str,
    ) -> None:
        return


class EmailNotifier:

    enabled = True

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def build_message(
        self,
        to_email: str,
        recipient_name: str,
        sender_name: str,
        sender_role: str,
        preview: str,
        conversation_id: str,
    ) -> MIMEMultipart:
        subject = f"New message from {sender_name}"
        link = f"{self._settings.dashboard_url.rstrip('/')}/messages?conversation={conversation_id}"
        short = preview if len(preview) <= 300 else preview[:297] + "..."

        text_body = f"""
        Hi {recipient_name},

        {sender_name} ({sender_role}) sent you a message:

        {short}

        Open the conversation: {link}
        """

        html_body = f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="UTF-8">
            <title>New message</title>
        </head>
        <body style="margin:0; padding:0; background-color:#f3f4f6;">
            <div style="max-width:600px; margin:0 auto; padding:24px;">
                <div style="background-color:#ffffff; border-radius:8px; padding:24px; font-family:Arial, sans-serif;">
                    <h2 style="margin-top:0; color:#1d4ed8; font-size:20px;">You have a new message</h2>
                    <p style="font-size:14px; color:#111827;">
                        Hi {html.escape(recipient_name)}, <strong>{html.escape(sender_name)}</strong>
                        ({html.escape(sender_role)}) sent you a message:
                    </p>
                    <div style="background-color:#f9fafb; border-left:4px solid #1d4ed8; padding:12px; border-radius:4px;">
                        <p style="margin:0; font-size:14px; color:#374151;">{html.escape(short)}</p>
                    </div>
                    <p style="margin-top:24px;">
                        <a href="{html.escape(link)}" style="background-color:#1d4ed8; color:#ffffff; padding:10px 16px; border-radius:6px; text-decoration:none;">
                            Open conversation
                        </a>
                    </p>
                    <p style="font-size:12px; color:#6b7280; margin-top:24px;">
                        This is an automated message. Reply from the dashboard, not by email.
                    </p>
                </div>
            </div>
        </body>
        </html>
        """

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self._settings.smtp_from_name} <{self._settings.smtp_from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    async def send_message_notification(
        self,
        to_email: str,
        recipient_name: str,
        sender_name: str,
        sender_role: str,
        preview: str,
        conversation_id: str,
    ) -> None:
        msg = self.build_message(to_email, recipient_name, sender_name, sender_role, preview, conversation_id)
        smtp = aiosmtplib.SMTP(
            hostname=self._settings.smtp_host,
            port=self._settings.smtp_port,
            timeout=self._settings.smtp_timeout_seconds,
        )
        await smtp.connect()
        try:
            if self._settings.smtp_user:
                await smtp.login(self._settings.smtp_user, self._settings.smtp_password or "")
            await smtp.send_message(msg)
        finally:
            await smtp.quit()
        logger.info("Message notification sent to %s", to_email)


def build_email_notifier(settings: Settings) -> NoopEmailNotifier | EmailNotifier:
    if not settings.smtp_host:
        return NoopEmailNotifier()
    return EmailNotifier(settings)
