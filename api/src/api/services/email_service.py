"""SMTP transactional email sending."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from catracker.config import Settings, get_settings

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 15


def _clean(value: object) -> str:
    return str(value or "").strip()


def smtp_is_configured(settings: Settings) -> bool:
    return bool(
        _clean(settings.smtp_host)
        and _clean(settings.smtp_from_email)
        and 0 < settings.smtp_port <= 65535
    )


def build_message(
    settings: Settings,
    *,
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
) -> EmailMessage:
    sender = _clean(settings.smtp_from_email).lower()
    sender_name = _clean(settings.smtp_from_name)
    message = EmailMessage()
    message["From"] = formataddr((sender_name, sender)) if sender_name else sender
    message["To"] = _clean(to_email).lower()
    message["Subject"] = _clean(subject)
    reply_to = _clean(settings.smtp_reply_to).lower()
    if reply_to:
        message["Reply-To"] = reply_to
    message.set_content(text_body)
    if html_body:
        message.add_alternative(html_body, subtype="html")
    return message


def _open_connection(settings: Settings) -> smtplib.SMTP:
    host = _clean(settings.smtp_host)
    if settings.smtp_use_ssl:
        return smtplib.SMTP_SSL(host=host, port=settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
    return smtplib.SMTP(host=host, port=settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)


def deliver_message(settings: Settings, message: EmailMessage) -> None:
    """Blocking SMTP delivery; run it in a worker thread."""
    with _open_connection(settings) as smtp:
        smtp.ehlo()
        if settings.smtp_use_starttls and not settings.smtp_use_ssl:
            smtp.starttls()
            smtp.ehlo()
        username = _clean(settings.smtp_username)
        if username:
            smtp.login(username, settings.smtp_password)
        smtp.send_message(message)


async def send_transactional_email(
    *,
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
    settings: Settings | None = None,
) -> bool:
    """Send one message; return False instead of raising on any failure."""
    settings = settings or get_settings()
    if not settings.smtp_enabled:
        logger.info("SMTP is disabled; skipping email to %s", to_email)
        return False
    if not smtp_is_configured(settings):
        logger.warning("SMTP is enabled but SMTP_HOST/SMTP_FROM_EMAIL/SMTP_PORT are not usable")
        return False

    message = build_message(
        settings,
        to_email=to_email,
        subject=subject,
        text_body=text_body,
        html_body=html_body,
    )
    try:
        await asyncio.to_thread(deliver_message, settings, message)
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed sending transactional email to %s", to_email)
        return False
    return True
