"""
Email Transports
================

A transport delivers one message or raises a SendFailure:

  - TransientSendFailure: timeouts, connection problems, temporary rejects.
    The worker retries these within the entry's attempt budget.
  - PermanentSendFailure: the recipient or sender is refused outright.
    The worker fails the entry immediately.

Transports must be safe to call from several worker threads at once; the
SMTP transport opens one connection per message for that reason.
"""

import email.utils
import logging
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, List, Optional, Protocol, Tuple

from mailqueue.core.config import Settings, settings as default_settings
from mailqueue.core.exceptions import PermanentSendFailure, TransientSendFailure

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def send(self, to_email: str, to_name: str, subject: str, html_body: str) -> None:
        ...


def format_address(address: str, name: Optional[str]) -> str:
    return email.utils.formataddr((name, address)) if name else address


class SmtpTransport:
    """Sends through an SMTP relay with STARTTLS and login."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        from_email: str = "",
        from_name: str = "",
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, to_email: str, to_name: str, subject: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg['From'] = format_address(self.from_email, self.from_name)
        msg['To'] = format_address(to_email, to_name)
        msg['Subject'] = subject
        msg['Date'] = email.utils.formatdate(localtime=True)
        msg['Message-ID'] = email.utils.make_msgid()
        msg.attach(MIMEText(html_body, 'html'))
        return msg

    def send(self, to_email: str, to_name: str, subject: str, html_body: str) -> None:
        msg = self.build_message(to_email, to_name, subject, html_body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused) as e:
            raise PermanentSendFailure(f"Address refused: {e}") from e
        except smtplib.SMTPResponseException as e:
            # 5xx replies are final, 4xx are worth another try
            if 500 <= e.smtp_code < 600 and not isinstance(e, smtplib.SMTPAuthenticationError):
                raise PermanentSendFailure(f"SMTP error {e.smtp_code}: {e.smtp_error!r}") from e
            raise TransientSendFailure(f"SMTP error {e.smtp_code}: {e.smtp_error!r}") from e
        except (smtplib.SMTPException, OSError, TimeoutError) as e:
            raise TransientSendFailure(f"SMTP error ({self.host}:{self.port}): {e}") from e

        logger.debug(f"SMTP accepted message for {to_email}")


class MockTransport:
    """
    Logs messages instead of sending them (development and --dry-run).

    `failures` maps a recipient address to a list of exceptions raised on
    successive sends to that address; once the list is used up, sends succeed.
    """

    def __init__(self, failures: Optional[Dict[str, List[Exception]]] = None):
        self._lock = threading.Lock()
        self._failures = {k: list(v) for k, v in (failures or {}).items()}
        self.sent: List[Tuple[str, str]] = []

    def send(self, to_email: str, to_name: str, subject: str, html_body: str) -> None:
        with self._lock:
            pending = self._failures.get(to_email)
            if pending:
                raise pending.pop(0)
            self.sent.append((to_email, subject))
        logger.info(f"[DRY RUN] Would send '{subject}' to {to_email}")


def create_transport(config: Optional[Settings] = None, dry_run: bool = False) -> Transport:
    """Build the transport named by TRANSPORT (or a mock one for dry runs)."""
    config = config or default_settings
    if dry_run or config.TRANSPORT == "mock":
        return MockTransport()
    return SmtpTransport(
        host=config.SMTP_HOST,
        port=config.SMTP_PORT,
        username=config.SMTP_USER,
        password=config.SMTP_PASSWORD,
        from_email=config.EMAIL_FROM,
        from_name=config.EMAIL_FROM_NAME,
        use_tls=config.SMTP_USE_TLS,
        timeout=config.SEND_TIMEOUT_SECONDS,
    )
