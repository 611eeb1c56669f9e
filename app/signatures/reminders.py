"""
Signature reminders.

Run periodically by an external scheduler (``flask send-signature-reminders``).
Recipients whose link is still ``pendiente`` and close to expiry get one
reminder per ``REMINDER_INTERVAL_HOURS``; every sent reminder is recorded as a
``reminder_sent`` workflow step, which is also what throttles the next run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from app.core.extensions import db
from app.core.models import (
    SignatureLink,
    SignatureLinkStatus,
    SignatureWorkflowStep,
    as_utc,
    utcnow,
)
from app.signatures.delivery import get_delivery_channel, is_email, is_phone, mask_destination
from app.signatures.links import append_step, public_link_url

logger = logging.getLogger(__name__)

REMINDER_STEP = "reminder_sent"


@dataclass
class ReminderResult:
    sent: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {"sent": self.sent, "skipped": self.skipped, "errors": list(self.errors)}


def _destination(link: SignatureLink) -> str:
    if is_email(link.recipient_email):
        return link.recipient_email.strip()
    if is_phone(link.recipient_phone):
        return link.recipient_phone.strip()
    return ""


def _reminded_since(link_id: int, since: datetime) -> bool:
    steps = SignatureWorkflowStep.query.filter_by(signature_link_id=link_id, step_type=REMINDER_STEP)
    return any(as_utc(step.completed_at) >= since for step in steps)


def _remind(link: SignatureLink, destination: str, now: datetime) -> str | None:
    """Send one reminder; returns an error message or None."""
    expires_at = as_utc(link.expires_at)
    payload = {
        "subject": "Recordatorio: firma pendiente",
        "body": (
            f"Hola {link.recipient_name}, todavía tenés documentos pendientes de firma. "
            f"Ingresá a {public_link_url(link.token)} antes del {expires_at:%d/%m/%Y %H:%M} UTC."
        ),
    }
    result = get_delivery_channel().send_message(destination, payload)
    if not result.success:
        return result.error or "envio fallido"

    step = append_step(
        link.id,
        REMINDER_STEP,
        {"destination": mask_destination(destination), "provider_message_id": result.provider_message_id},
    )
    step.completed_at = now
    db.session.commit()
    return None


def send_signature_reminders(now: datetime | None = None) -> ReminderResult:
    now = now or utcnow()
    interval = timedelta(hours=current_app.config["REMINDER_INTERVAL_HOURS"])
    window = timedelta(days=current_app.config["REMINDER_WINDOW_DAYS"])
    result = ReminderResult()

    links = (
        SignatureLink.query.filter(
            SignatureLink.status == SignatureLinkStatus.PENDIENTE,
            SignatureLink.expires_at > now,
        )
        .order_by(SignatureLink.created_at.asc(), SignatureLink.id.asc())
        .all()
    )
    for link in links:
        destination = _destination(link)
        if (
            not destination
            or as_utc(link.expires_at) - now > window
            or _reminded_since(link.id, now - interval)
        ):
            result.skipped += 1
            continue
        try:
            error = _remind(link, destination, now)
        except Exception as exc:
            db.session.rollback()
            logger.exception("Reminder for signature link %s failed", link.id)
            result.errors.append(f"link {link.id}: {exc}")
            continue
        if error:
            logger.warning("Reminder for signature link %s was not delivered: %s", link.id, error)
            result.errors.append(f"link {link.id}: {error}")
            continue
        result.sent += 1

    logger.info(
        "Signature reminders: %s sent, %s skipped, %s error(s)",
        result.sent,
        result.skipped,
        len(result.errors),
    )
    return result
