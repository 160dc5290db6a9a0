"""Email-уведомления о постоянных сбоях загрузки."""
import asyncio
import smtplib
from email.message import EmailMessage

from loguru import logger

from harvester.config import HarvestOptions

SMTP_TIMEOUT = 10.0


class EmailNotifier:
    """Отправка письма через SMTP. Ошибки логируются и никогда не пробрасываются."""

    def __init__(self, options: HarvestOptions) -> None:
        self.options = options

    @property
    def enabled(self) -> bool:
        return self.options.email_notifications and bool(self.options.notify_email)

    def _build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.options.smtp_sender
        message["To"] = self.options.notify_email
        message.set_content(body)
        return message

    def _send_sync(self, message: EmailMessage) -> None:
        opts = self.options
        with smtplib.SMTP(opts.smtp_host, opts.smtp_port, timeout=SMTP_TIMEOUT) as smtp:
            if opts.smtp_username and opts.smtp_password:
                smtp.starttls()
                smtp.login(opts.smtp_username, opts.smtp_password)
            smtp.send_message(message)

    async def send(self, subject: str, body: str) -> bool:
        """Отправить письмо на notify_email. Вернуть True при успехе."""
        if not self.enabled:
            return False
        try:
            await asyncio.to_thread(self._send_sync, self._build_message(subject, body))
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"[notifier] Failed to send email to {self.options.notify_email}: {e}")
            return False
        logger.info(f"[notifier] Sent '{subject}' to {self.options.notify_email}")
        return True
