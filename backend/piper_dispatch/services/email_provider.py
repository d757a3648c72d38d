"""
Email provider abstraction layer.

Delivers one rendered message per call. Supported backends:
- SMTPProvider: standard SMTP submission with STARTTLS
- MailEngineProvider: HTTP mail engine API
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Dict, Optional

import httpx

from piper_dispatch.core.config import settings

logger = logging.getLogger(__name__)

MESSAGE_ID_HEADER = "X-Piper-Message-ID"
CAMPAIGN_ID_HEADER = "X-Piper-Campaign-ID"


@dataclass
class EmailMessage:
    """Email message structure."""
    to: str
    subject: str
    html_body: str
    text_body: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    message_id: Optional[str] = None
    campaign_id: Optional[str] = None
    headers: Optional[dict[str, str]] = None


@dataclass
class SendResult:
    """Result of sending an email."""
    success: bool
    message_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class EmailProvider(ABC):
    """Abstract base class for email providers."""

    @abstractmethod
    async def send_email(self, message: EmailMessage) -> SendResult:
        """Send an email message. Transport failures are reported in the result."""
        ...

    @abstractmethod
    async def verify_connection(self) -> bool:
        """Verify the email provider connection."""
        ...

    async def close(self) -> None:
        return None


class SMTPProvider(EmailProvider):
    """
    Send emails via an SMTP submission port (587).

    smtplib is blocking, so each send runs in the default executor.
    """

    def __init__(
        self,
        host: str = None,
        port: int = None,
        username: str = None,
        password: str = None,
        use_tls: bool = None,
        from_email: str = None,
        from_name: str = None,
    ):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username or settings.smtp_username
        self.password = password or settings.smtp_password
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.from_email = from_email or settings.mail_from_email
        self.from_name = from_name or settings.mail_from_name

    def build_mime(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = message.subject
        msg['From'] = f"{message.from_name or self.from_name} <{message.from_email or self.from_email}>"
        msg['To'] = message.to
        msg['Message-ID'] = make_msgid(domain=(message.from_email or self.from_email).split("@")[-1])

        reply_to = message.reply_to or settings.mail_reply_to
        if reply_to:
            msg['Reply-To'] = reply_to

        if message.message_id:
            msg[MESSAGE_ID_HEADER] = message.message_id
        if message.campaign_id:
            msg[CAMPAIGN_ID_HEADER] = message.campaign_id

        if message.headers:
            for key, value in message.headers.items():
                msg[key] = value

        if message.text_body:
            msg.attach(MIMEText(message.text_body, 'plain', 'utf-8'))
        msg.attach(MIMEText(message.html_body, 'html', 'utf-8'))
        return msg

    async def send_email(self, message: EmailMessage) -> SendResult:
        """Send an email via SMTP."""
        try:
            msg = self.build_mime(message)
            loop = asyncio.get_running_loop()
            provider_message_id = await loop.run_in_executor(
                None,
                self._send_sync,
                msg,
                message.to,
            )
            return SendResult(
                success=True,
                message_id=message.message_id,
                provider_message_id=provider_message_id,
            )
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("SMTP delivery to %s failed: %s", message.to, e)
            return SendResult(success=False, message_id=message.message_id, error=str(e))

    def _send_sync(self, msg: MIMEMultipart, to_addr: str) -> str:
        """Synchronous SMTP send."""
        with smtplib.SMTP(self.host, self.port, timeout=settings.delivery_timeout_seconds) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg, to_addrs=[to_addr])
            return msg['Message-ID']

    async def verify_connection(self) -> bool:
        """Verify SMTP connection."""
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._verify_sync)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("SMTP connection check failed: %s", e)
            return False

    def _verify_sync(self) -> bool:
        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            return True


class MailEngineProvider(EmailProvider):
    """Send emails through the mail engine HTTP API."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.mail_engine_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.mail_engine_api_key
        self.client = client or httpx.AsyncClient(timeout=settings.delivery_timeout_seconds)

    async def _request(
        self, method: str, endpoint: str, data: Optional[Dict] = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v1{endpoint}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        response = await self.client.request(
            method, url, json=data, headers=headers
        )
        response.raise_for_status()
        return response.json()

    async def send_email(self, message: EmailMessage) -> SendResult:
        data = {
            "to": message.to,
            "from": message.from_email or settings.mail_from_email,
            "from_name": message.from_name or settings.mail_from_name,
            "subject": message.subject,
            "html_body": message.html_body,
            "text_body": message.text_body or "",
            "reply_to": message.reply_to or settings.mail_reply_to,
            "headers": {
                MESSAGE_ID_HEADER: message.message_id or "",
                CAMPAIGN_ID_HEADER: message.campaign_id or "",
                **(message.headers or {}),
            },
            # Tracking is embedded by us, not the engine
            "track_opens": False,
            "track_clicks": False,
        }
        try:
            result = await self._request("POST", "/send", data)
        except httpx.HTTPError as e:
            logger.warning("Mail engine delivery to %s failed: %s", message.to, e)
            return SendResult(success=False, message_id=message.message_id, error=str(e))

        if result.get("status") in ("failed", "rejected"):
            return SendResult(
                success=False,
                message_id=message.message_id,
                error=result.get("error") or f"Mail engine status {result.get('status')}",
            )
        return SendResult(
            success=True,
            message_id=message.message_id,
            provider_message_id=result.get("message_id"),
        )

    async def verify_connection(self) -> bool:
        try:
            await self._request("GET", "/health")
            return True
        except httpx.HTTPError as e:
            logger.warning("Mail engine connection check failed: %s", e)
            return False

    async def close(self) -> None:
        await self.client.aclose()


# Global provider instance (initialized on demand)
_email_provider: Optional[EmailProvider] = None


def get_email_provider() -> EmailProvider:
    """Get the configured email provider."""
    global _email_provider
    if _email_provider is None:
        if settings.mail_provider == "mail_engine":
            _email_provider = MailEngineProvider()
        else:
            _email_provider = SMTPProvider()
    return _email_provider


async def reset_email_provider() -> None:
    """Close and forget the provider so the next call builds a fresh one."""
    global _email_provider
    if _email_provider is not None:
        provider, _email_provider = _email_provider, None
        await provider.close()
