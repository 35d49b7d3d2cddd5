"""
SMTP e-mail port.

``send_email({to, subject, text, html})`` is best-effort: failures are logged
and reported through the return value, never raised to the caller.
"""

import logging
import smtplib
import time
from contextlib import contextmanager
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from leaseledger.core.config import settings

logger = logging.getLogger(__name__)


class EmailClient:
    """SMTP client with a short retry loop for connection blips."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        sender: str = "",
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @contextmanager
    def _connection(self):
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        try:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            yield server
        finally:
            try:
                server.quit()
            except smtplib.SMTPException as e:
                logger.warning("Error closing SMTP connection: %s", e)

    def _build_message(self, to: list[str], subject: str, text: str, html: str | None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg.attach(MIMEText(text or "", "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))
        return msg

    def send(self, message: dict) -> bool:
        """Send ``{to, subject, text, html}``. Returns True on success."""
        to = message["to"] if isinstance(message["to"], list) else [message["to"]]
        if not to:
            return False
        msg = self._build_message(to, message["subject"], message.get("text", ""), message.get("html"))

        for attempt in range(1, self.max_retries + 1):
            try:
                with self._connection() as server:
                    server.sendmail(self.sender, to, msg.as_string())
                logger.info("Email '%s' sent to %d recipient(s)", message["subject"], len(to))
                return True
            except smtplib.SMTPAuthenticationError:
                logger.error("SMTP authentication failed; check SMTP_USERNAME/SMTP_PASSWORD")
                break
            except (smtplib.SMTPException, OSError) as e:
                logger.warning("Email attempt %d/%d failed: %s", attempt, self.max_retries, e)
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay)

        logger.error("Failed to send email '%s' after %d attempts", message["subject"], self.max_retries)
        return False


def get_email_client() -> EmailClient:
    return EmailClient(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        sender=settings.email_sender,
    )
