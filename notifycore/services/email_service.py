"""
Email delivery service.
Sends plain-text mail (with an optional HTML alternative) and mail carrying
a file attachment over SMTP using aiosmtplib. Scheduled jobs such as report
delivery use it next to in-app notifications.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import aiosmtplib

from notifycore.core.config import Settings, settings as default_settings
from notifycore.core.exceptions import EmailDeliveryError

logger = logging.getLogger(__name__)

MailSender = Callable[..., Awaitable[Any]]


class EmailService:

    def __init__(
        self,
        config: Settings | None = None,
        *,
        send: MailSender = aiosmtplib.send,
    ) -> None:
        self._config = config or default_settings
        self._send = send

    def build_message(
        self,
        to: str | Sequence[str],
        subject: str,
        text: str,
        html: str | None = None,
    ) -> EmailMessage:
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            raise EmailDeliveryError("At least one recipient is required")

        sender = self._config.SMTP_FROM
        message = EmailMessage()
        message["From"] = sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid(domain=sender.rsplit("@", 1)[-1])
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")
        return message

    async def send_email(
        self,
        to: str | Sequence[str],
        subject: str,
        text: str,
        html: str | None = None,
    ) -> EmailMessage:
        message = self.build_message(to, subject, text, html)
        await self._deliver(message)
        logger.info("Email sent successfully: to=%s subject=%s", message["To"], subject)
        return message

    async def send_email_with_attachment(
        self,
        to: str | Sequence[str],
        subject: str,
        text: str,
        attachment_path: str | Path,
        attachment_name: str | None = None,
        html: str | None = None,
    ) -> EmailMessage:
        """
        Send mail with the file at ``attachment_path`` attached.
        The file is read off the event loop; a missing or unreadable file
        raises EmailDeliveryError before anything is sent.
        """
        path = Path(attachment_path)
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise EmailDeliveryError(f"Cannot read attachment {path}: {exc}") from exc

        filename = attachment_name or path.name
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        maintype, _, subtype = content_type.partition("/")

        message = self.build_message(to, subject, text, html)
        message.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
        await self._deliver(message)
        logger.info(
            "Email with attachment sent successfully: to=%s subject=%s attachment=%s",
            message["To"],
            subject,
            filename,
        )
        return message

    async def _deliver(self, message: EmailMessage) -> None:
        config = self._config
        try:
            await self._send(
                message,
                hostname=config.SMTP_HOST,
                port=config.SMTP_PORT,
                username=config.SMTP_USER,
                password=config.SMTP_PASSWORD,
                use_tls=config.SMTP_USE_TLS,
                start_tls=config.SMTP_START_TLS,
                timeout=config.SMTP_TIMEOUT,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error(
                "Failed to send email: to=%s subject=%s: %s",
                message["To"],
                message["Subject"],
                exc,
            )
            raise EmailDeliveryError(str(exc)) from exc
