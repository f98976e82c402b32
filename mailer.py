import logging
import smtplib
from email.message import EmailMessage

from config import get_settings

logger = logging.getLogger(__name__)


class MailDeliveryError(RuntimeError):
    pass


class Mailer:
    """Sends verification codes; logs them instead when no SMTP host is set."""

    def __init__(self) -> None:
        self.settings = get_settings()

    def send_code(self, email: str, subject: str, code: str) -> None:
        if not self.settings.smtp_host:
            logger.info(f"mail_log: to={email} subject={subject!r} code={code}")
            return

        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = email
        message["Subject"] = subject
        message.set_content(f"Your code: {code}\nIt expires in a few minutes.")
        try:
            with smtplib.SMTP(
                self.settings.smtp_host, self.settings.smtp_port, timeout=10
            ) as smtp:
                smtp.send_message(message)
        except (OSError, smtplib.SMTPException) as exc:
            raise MailDeliveryError(f"Cannot send code to email: {email}") from exc
        logger.info(f"mail_sent: to={email} subject={subject!r}")
