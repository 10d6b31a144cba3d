"""Mail transport: turns a :class:`TransportMessage` into an SMTP delivery."""

from __future__ import annotations

import base64
import mimetypes
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from typing import Any, List, Optional, Protocol, Tuple

import aiosmtplib

from .config import SMTPSettings
from .logger import get_logger
from .models import DeliveryInfo, EmailAttachment, TransportMessage
from .smtp_pool import SMTPPool

logger = get_logger("EmailWorker.transport")


class MailTransport(Protocol):
    """Single-operation contract the delivery engine sends through."""

    async def send(self, message: TransportMessage) -> DeliveryInfo:
        """Deliver ``message``; raise on any failure."""

    async def verify(self) -> bool:
        """Check the transport is usable; never raises."""

    async def close(self) -> None:
        """Release open connections."""


def _format_addresses(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    else:
        items = [str(addr).strip() for addr in value if addr]
    return ", ".join(items) if items else None


def _attachment_bytes(attachment: EmailAttachment) -> bytes:
    """Decode the opaque attachment content into raw bytes."""
    content = attachment.content
    if content is None:
        return b""
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    # Node.js buffers serialize to {"type": "Buffer", "data": [...]}
    if isinstance(content, dict) and content.get("type") == "Buffer":
        return bytes(content.get("data") or [])
    encoding = (attachment.model_extra or {}).get("encoding")
    if isinstance(content, str):
        if encoding == "base64":
            return base64.b64decode(content)
        return content.encode("utf-8")
    return str(content).encode("utf-8")


def _mime_type(attachment: EmailAttachment) -> Tuple[str, str]:
    content_type = attachment.content_type
    if not content_type:
        content_type, _ = mimetypes.guess_type(attachment.filename)
    if not content_type or "/" not in content_type:
        return "application", "octet-stream"
    maintype, subtype = content_type.split(";", 1)[0].strip().split("/", 1)
    return maintype, subtype


def build_email(message: TransportMessage) -> EmailMessage:
    """Translate a :class:`TransportMessage` into an :class:`EmailMessage`."""
    msg = EmailMessage()
    if message.sender:
        msg["From"] = message.sender
    if to_value := _format_addresses(message.to):
        msg["To"] = to_value
    msg["Subject"] = message.subject or ""
    domain = parseaddr(message.sender or "")[1].rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)

    if message.text is not None and message.html is not None:
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
    elif message.html is not None:
        msg.set_content(message.html, subtype="html")
    elif message.text is not None:
        msg.set_content(message.text)

    for attachment in message.attachments:
        maintype, subtype = _mime_type(attachment)
        data = _attachment_bytes(attachment)
        if maintype == "text":
            msg.add_attachment(data.decode("utf-8", errors="replace"), subtype=subtype, filename=attachment.filename)
        else:
            msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=attachment.filename)
    return msg


class SMTPTransport:
    """:class:`MailTransport` sending through pooled aiosmtplib connections."""

    def __init__(self, settings: SMTPSettings, pool: Optional[SMTPPool] = None):
        self.settings = settings
        self.pool = pool or SMTPPool(settings)

    async def send(self, message: TransportMessage) -> DeliveryInfo:
        email_msg = build_email(message)
        recipients: List[str] = [
            parseaddr(addr)[1] or addr for addr in (_format_addresses(message.to) or "").split(", ") if addr
        ]
        smtp = await self.pool.get_connection()
        try:
            errors, response = await smtp.send_message(email_msg)
        except (aiosmtplib.SMTPResponseException, aiosmtplib.SMTPRecipientsRefused):
            # the server answered, so the conversation is still in a known state
            raise
        except BaseException:
            # disconnected, timed out or cancelled mid-transaction
            self.pool.discard()
            raise
        rejected = list(errors.keys()) if errors else []
        return DeliveryInfo(
            message_id=email_msg["Message-ID"],
            accepted=[addr for addr in recipients if addr not in rejected],
            rejected=rejected,
            response=response,
        )

    async def verify(self) -> bool:
        try:
            await self.pool.get_connection()
        except Exception as exc:
            logger.error("SMTP configuration error (%s:%s): %s", self.settings.host, self.settings.port, exc)
            return False
        logger.info("SMTP server %s:%s is ready to send emails", self.settings.host, self.settings.port)
        return True

    async def close(self) -> None:
        await self.pool.close()
