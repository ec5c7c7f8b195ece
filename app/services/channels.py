"""
Channel senders: the delivery side of the reminder engine.

Every channel (email, whatsapp, sms, voice, in_app) is driven through the
same ``ChannelSender.send`` contract and returns a provider receipt id.
Delivery problems are raised as ``DispatchFailure``; the reminder engine
owns the retry policy, so senders never retry on their own.

Selection (``get_sender``):
    - an override registered with ``register_sender`` (tests, custom providers)
    - email   → SmtpEmailSender when MAIL_SERVER is set, else LogOnlySender
    - in_app  → InAppSender (writes a Notification row)
    - others  → HttpGatewaySender when CHANNEL_PROVIDER_URLS[channel] is set,
                else LogOnlySender

Outbound HTTP goes through ``requests`` with an explicit timeout on every
call; pass a ``requests.Session`` double to HttpGatewaySender in tests.
"""

from __future__ import annotations

import logging
import smtplib
import uuid
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from typing import Any, Protocol

import requests
from flask import current_app

from app.core.exceptions import DispatchFailure

logger = logging.getLogger(__name__)

CHANNELS = ("email", "whatsapp", "sms", "voice", "in_app")


@dataclass(frozen=True)
class Recipient:
    """Contact snapshot handed to senders; senders never load users themselves."""

    user_id: int
    organization_id: int | None
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None

    @classmethod
    def from_user(cls, user) -> Recipient:
        return cls(
            user_id=user.id,
            organization_id=user.organization_id,
            email=user.email,
            phone=user.phone,
            full_name=user.full_name,
        )


class ChannelSender(Protocol):
    channel: str

    def send(self, recipient: Recipient, subject: str | None, body: str,
             metadata: dict[str, Any], timeout: float) -> str:
        """Deliver one message; return the provider receipt id or raise DispatchFailure."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
#  Senders
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class LogOnlySender:
    """Dev/test mode: log the message and pretend it was delivered."""

    channel: str

    def send(self, recipient, subject, body, metadata, timeout):
        receipt = f"log-{uuid.uuid4().hex[:12]}"
        logger.info(
            "%s (log-only): to=user:%s subject='%s' receipt=%s",
            self.channel, recipient.user_id, subject or "", receipt,
            extra={"organization_id": recipient.organization_id, "event_type": "channel.log_only"},
        )
        return receipt


@dataclass
class SmtpEmailSender:
    """Plain SMTP delivery using the MAIL_* settings."""

    server: str
    port: int = 587
    use_tls: bool = True
    username: str | None = None
    password: str | None = None
    sender: str = "noreply@collections.local"
    channel: str = "email"

    def send(self, recipient, subject, body, metadata, timeout):
        if not recipient.email:
            raise DispatchFailure("email", f"user {recipient.user_id} has no email address")

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject or "Reminder"
        msg["From"] = self.sender
        msg["To"] = f"{recipient.full_name} <{recipient.email}>" if recipient.full_name else recipient.email
        receipt = f"smtp-{uuid.uuid4().hex}"
        msg["Message-ID"] = f"<{receipt}@{self.server}>"

        try:
            with smtplib.SMTP(self.server, self.port, timeout=timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DispatchFailure("email", str(exc)[:500]) from exc
        return receipt


@dataclass
class HttpGatewaySender:
    """JSON POST to a WhatsApp/SMS/voice provider gateway.

    The gateway is expected to answer 2xx with ``{"id": "<receipt>"}``.
    """

    channel: str
    url: str
    token: str | None = None
    session: requests.Session = field(default_factory=requests.Session)

    def send(self, recipient, subject, body, metadata, timeout):
        if not recipient.phone:
            raise DispatchFailure(self.channel, f"user {recipient.user_id} has no phone number")

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {
            "channel": self.channel,
            "to": recipient.phone,
            "subject": subject,
            "body": body,
            "metadata": metadata,
        }

        try:
            resp = self.session.post(self.url, json=payload, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            raise DispatchFailure(self.channel, f"request timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise DispatchFailure(self.channel, str(exc)[:500]) from exc

        if not resp.ok:
            raise DispatchFailure(
                self.channel, f"HTTP {resp.status_code}: {resp.text[:300]}",
                provider_status=resp.status_code,
            )
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        return str(data.get("id") or data.get("message_id") or f"{self.channel}-{uuid.uuid4().hex[:12]}")


@dataclass
class InAppSender:
    """Delivers by writing an in-app Notification for the recipient."""

    channel: str = "in_app"

    def send(self, recipient, subject, body, metadata, timeout):
        from app.services.notification import NotificationService

        notif = NotificationService.create(
            organization_id=recipient.organization_id,
            user_id=recipient.user_id,
            title=subject or "Reminder",
            message=body,
            category="reminder",
            entity_type=metadata.get("related_type") or "",
            entity_id=metadata.get("related_id"),
        )
        return f"notification-{notif.id}"


# ═══════════════════════════════════════════════════════════════════════════
#  Registry
# ═══════════════════════════════════════════════════════════════════════════

_overrides: dict[str, ChannelSender] = {}


def register_sender(channel: str, sender: ChannelSender | None) -> None:
    """Override the sender for a channel; None restores the default."""
    if channel not in CHANNELS:
        raise ValueError(f"Unknown channel '{channel}'")
    if sender is None:
        _overrides.pop(channel, None)
    else:
        _overrides[channel] = sender


def clear_senders() -> None:
    _overrides.clear()


def get_sender(channel: str) -> ChannelSender:
    if channel not in CHANNELS:
        raise ValueError(f"Unknown channel '{channel}'")
    if channel in _overrides:
        return _overrides[channel]

    cfg = current_app.config
    if channel == "in_app":
        return InAppSender()
    if channel == "email":
        if cfg.get("MAIL_SERVER"):
            return SmtpEmailSender(
                server=cfg["MAIL_SERVER"],
                port=cfg.get("MAIL_PORT", 587),
                use_tls=cfg.get("MAIL_USE_TLS", True),
                username=cfg.get("MAIL_USERNAME"),
                password=cfg.get("MAIL_PASSWORD"),
                sender=cfg.get("MAIL_DEFAULT_SENDER", "noreply@collections.local"),
            )
        return LogOnlySender("email")

    url = (cfg.get("CHANNEL_PROVIDER_URLS") or {}).get(channel)
    if url:
        return HttpGatewaySender(channel=channel, url=url, token=cfg.get("CHANNEL_PROVIDER_TOKEN"))
    return LogOnlySender(channel)
