"""
Outbound delivery of signature links and OTP codes.

A single channel is configured per app (``DELIVERY_CHANNEL``) and stored in
``app.extensions["delivery_channel"]``. Channels never raise for provider
failures: they report them through ``DeliveryResult`` so callers can record
the outcome.
"""

from __future__ import annotations

import logging
import re
import smtplib
from collections import deque
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any

import requests
from flask import Flask, current_app

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r".+@.+\..+")
E164_RE = re.compile(r"^\+?[1-9]\d{6,14}$")


@dataclass
class DeliveryResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


def mask_email(value: str) -> str:
    local, _, domain = (value or "").partition("@")
    if not domain:
        return "***"
    return f"{local[:2]}{'*' * max(len(local) - 2, 3)}@{domain}"


def mask_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value or "")
    if len(digits) <= 4:
        return "***"
    return "*" * (len(digits) - 4) + digits[-4:]


def mask_destination(value: str) -> str:
    return mask_email(value) if "@" in (value or "") else mask_phone(value)


def is_email(value: str | None) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value.strip()))


def is_phone(value: str | None) -> bool:
    if not value:
        return False
    return bool(E164_RE.match(re.sub(r"[\s\-()]", "", value)))


class DeliveryChannel:
    name = "base"

    def send_message(self, destination: str, payload: dict[str, Any]) -> DeliveryResult:
        raise NotImplementedError


class LogDeliveryChannel(DeliveryChannel):
    """Development channel: records messages in memory instead of sending them."""

    name = "log"

    def __init__(self, maxlen: int = 200) -> None:
        self.outbox: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def send_message(self, destination: str, payload: dict[str, Any]) -> DeliveryResult:
        message_id = make_msgid(domain="firmas.local")
        self.outbox.append({"destination": destination, "message_id": message_id, **payload})
        # message bodies may carry OTP codes and are not logged
        logger.info(
            "Delivery (log channel) to %s: %s",
            mask_destination(destination),
            payload.get("subject", ""),
        )
        return DeliveryResult(success=True, provider_message_id=message_id)


class SmtpDeliveryChannel(DeliveryChannel):
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        sender: str = "",
        use_tls: bool = True,
        timeout: int = 15,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    def send_message(self, destination: str, payload: dict[str, Any]) -> DeliveryResult:
        if not is_email(destination):
            return DeliveryResult(success=False, error="El email del destinatario no es valido")
        message = EmailMessage()
        message["Subject"] = payload.get("subject", "")
        message["From"] = self.sender
        message["To"] = destination
        message["Message-ID"] = make_msgid()
        message.set_content(payload.get("body", ""))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP delivery to %s failed: %s", mask_email(destination), exc)
            return DeliveryResult(success=False, error=str(exc))
        return DeliveryResult(success=True, provider_message_id=message["Message-ID"])


class WhatsAppDeliveryChannel(DeliveryChannel):
    name = "whatsapp"

    def __init__(self, api_url: str, phone_number_id: str, access_token: str, timeout: int = 15) -> None:
        self.api_url = api_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.timeout = timeout

    def send_message(self, destination: str, payload: dict[str, Any]) -> DeliveryResult:
        if not is_phone(destination):
            return DeliveryResult(success=False, error="El telefono debe estar en formato E.164")
        url = f"{self.api_url}/{self.phone_number_id}/messages"
        body = {
            "messaging_product": "whatsapp",
            "to": re.sub(r"\D", "", destination),
            "type": "text",
            "text": {"body": payload.get("body", "")},
        }
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            response = requests.post(url, headers=headers, json=body, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("WhatsApp delivery to %s failed: %s", mask_phone(destination), exc)
            return DeliveryResult(success=False, error=str(exc))
        messages = data.get("messages") or [{}]
        return DeliveryResult(success=True, provider_message_id=messages[0].get("id"))


def build_delivery_channel(config: dict[str, Any]) -> DeliveryChannel:
    name = (config.get("DELIVERY_CHANNEL") or "log").strip().lower()
    if name == "smtp":
        return SmtpDeliveryChannel(
            host=config["SMTP_HOST"],
            port=config["SMTP_PORT"],
            username=config.get("SMTP_USER", ""),
            password=config.get("SMTP_PASSWORD", ""),
            sender=config.get("SMTP_FROM", ""),
            use_tls=config.get("SMTP_TLS", True),
        )
    if name == "whatsapp":
        return WhatsAppDeliveryChannel(
            api_url=config["WHATSAPP_API_URL"],
            phone_number_id=config["WHATSAPP_PHONE_NUMBER_ID"],
            access_token=config["WHATSAPP_ACCESS_TOKEN"],
        )
    if name != "log":
        raise ValueError(f"Canal de entrega desconocido: {name}")
    return LogDeliveryChannel()


def init_delivery(app: Flask) -> None:
    app.extensions["delivery_channel"] = build_delivery_channel(app.config)


def get_delivery_channel() -> DeliveryChannel:
    return current_app.extensions["delivery_channel"]
