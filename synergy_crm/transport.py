"""
Mail transports for delivering follow-up emails.

SMTP is the default; the Gmail API is available for accounts that
authenticate with OAuth. Both raise TransportError on any failure and
give no delivery receipt beyond that.
"""

import base64
import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Optional

from .config import config
from .errors import TransportError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.send"]


def create_message(
    sender: Optional[str],
    to: str,
    subject: str,
    body_text: str,
    sender_name: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> MIMEText:
    """
    Build a plain text MIME message.

    Args:
        sender: From address, or None to let the provider fill it in.
        to: Recipient email address.
        subject: Email subject line.
        body_text: Plain text body of the email.
        sender_name: Optional display name for the From header.
        reply_to: Optional Reply-To address.
    """
    message = MIMEText(body_text, "plain", "utf-8")
    message["To"] = to
    if sender:
        message["From"] = formataddr((sender_name, sender)) if sender_name else sender
    message["Subject"] = subject
    if reply_to:
        message["Reply-To"] = reply_to
    return message


class MailTransport:
    """Base class for mail transports."""

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        sender_name: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class SmtpTransport(MailTransport):
    """Deliver through an SMTP relay, one connection per message."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
    ):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.user = user or config.SMTP_USER
        self.password = password or config.SMTP_PASSWORD
        self.use_tls = config.SMTP_USE_TLS if use_tls is None else use_tls
        self.sender = sender or config.SMTP_FROM

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        sender_name: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> None:
        if not (self.host and self.user and self.password and self.sender):
            raise TransportError("Missing SMTP configuration")

        message = create_message(self.sender, to, subject, body, sender_name, reply_to)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
                if self.use_tls:
                    smtp.starttls()
                smtp.login(self.user, self.password)
                smtp.sendmail(self.sender, [to], message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP delivery to {to} failed: {e}")
            raise TransportError(f"Failed to send email to {to}: {e}") from e

        logger.info(f"Email sent to {to} via SMTP")


class GmailTransport(MailTransport):
    """Deliver through the Gmail API as the authenticated user."""

    def __init__(self, service: Optional[Any] = None):
        self._service = service

    @property
    def service(self) -> Any:
        """Lazy-load an authenticated Gmail API service."""
        if self._service is None:
            self._service = get_gmail_service()
        return self._service

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        sender_name: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> None:
        message = create_message(None, to, subject, body, None, reply_to)
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("utf-8")
        try:
            self.service.users().messages().send(userId="me", body={"raw": raw}).execute()
        except Exception as e:
            logger.error(f"Gmail delivery to {to} failed: {e}")
            raise TransportError(f"Failed to send email to {to}: {e}") from e

        logger.info(f"Email sent to {to} via Gmail")


def get_gmail_service() -> Any:
    """
    Get an authenticated Gmail API service.

    Refreshes an expired token; a missing token needs the interactive
    OAuth flow, which is run from the CLI.
    """
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow
    from googleapiclient.discovery import build

    creds = None
    token_file = config.GMAIL_TOKEN_FILE

    try:
        if token_file.exists():
            creds = Credentials.from_authorized_user_file(str(token_file), SCOPES)

        if not creds or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
            else:
                flow = InstalledAppFlow.from_client_secrets_file(
                    str(config.GMAIL_CREDENTIALS_FILE), SCOPES
                )
                creds = flow.run_local_server(port=0)

            token_file.write_text(creds.to_json())

        return build("gmail", "v1", credentials=creds)
    except Exception as e:
        raise TransportError(f"Could not authenticate with Gmail: {e}") from e


def get_transport() -> MailTransport:
    """Pick the configured mail transport."""
    if config.MAIL_TRANSPORT == "gmail":
        return GmailTransport()
    return SmtpTransport()
