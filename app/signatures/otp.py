from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from flask import current_app
from sqlalchemy import update
from werkzeug.security import check_password_hash, generate_password_hash

from app.core.errors import LinkNotFoundError, OtpDeliveryError, SignatureValidationError
from app.core.extensions import db
from app.core.models import (
    CompanyOtpPolicy,
    IdentityVerification,
    OtpResult,
    SignatureLink,
    as_utc,
    utcnow,
)
from app.signatures.delivery import get_delivery_channel, is_email, is_phone, mask_destination
from app.signatures.links import append_step, ensure_link_open

logger = logging.getLogger(__name__)

PHONE_CHANNELS = ("whatsapp", "sms")
AUTH_METHODS = {"email": "OTP_EMAIL", "whatsapp": "OTP_WHATSAPP", "sms": "OTP_SMS"}


@dataclass(frozen=True)
class OtpPolicy:
    require_otp_for_signature: bool = True
    otp_length: int = 6
    otp_expiration_seconds: int = 300
    max_attempts: int = 3
    default_channel: str = "email"
    allowed_channels: tuple[str, ...] = ("email",)


@dataclass
class OtpSendResult:
    verification_id: int
    masked_destination: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "verification_id": self.verification_id,
            "destination_masked": self.masked_destination,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class OtpVerifyResult:
    verified: bool
    attempts_remaining: int | None = None
    expired: bool = False
    verification_id: int | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "attempts_remaining": self.attempts_remaining,
            "expired": self.expired,
            "verification_id": self.verification_id,
            "message": self.message,
        }


def otp_policy_for(organization_id: int) -> OtpPolicy:
    row = CompanyOtpPolicy.query.filter_by(org_id=organization_id).first()
    if row is None:
        config = current_app.config
        channel = config["OTP_DEFAULT_CHANNEL"]
        return OtpPolicy(
            require_otp_for_signature=config["REQUIRE_OTP_FOR_SIGNATURE"],
            otp_length=config["OTP_LENGTH"],
            otp_expiration_seconds=config["OTP_EXPIRATION_SECONDS"],
            max_attempts=config["OTP_MAX_ATTEMPTS"],
            default_channel=channel,
            allowed_channels=(channel,),
        )
    return OtpPolicy(
        require_otp_for_signature=row.require_otp_for_signature,
        otp_length=row.otp_length,
        otp_expiration_seconds=row.otp_expiration_seconds,
        max_attempts=row.max_attempts,
        default_channel=row.default_channel,
        allowed_channels=tuple(row.allowed_channels or [row.default_channel]),
    )


def generate_code(length: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def _normalize_phone(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def _phone_channel(policy: OtpPolicy) -> str | None:
    if policy.default_channel in PHONE_CHANNELS:
        return policy.default_channel
    for channel in PHONE_CHANNELS:
        if channel in policy.allowed_channels:
            return channel
    return None


def _resolve_destination(link: SignatureLink, destination: str | None, policy: OtpPolicy) -> tuple[str, str]:
    """Return ``(destination, channel)``; only the link's own contacts are accepted."""
    destination = (destination or "").strip()
    if destination:
        if "@" in destination:
            if not link.recipient_email or destination.lower() != link.recipient_email.strip().lower():
                raise SignatureValidationError("El destino no corresponde al destinatario del enlace")
            candidates = [(link.recipient_email.strip(), "email")]
        else:
            if not link.recipient_phone or _normalize_phone(destination) != _normalize_phone(link.recipient_phone):
                raise SignatureValidationError("El destino no corresponde al destinatario del enlace")
            candidates = [(link.recipient_phone.strip(), _phone_channel(policy) or "sms")]
    else:
        email_option = (link.recipient_email.strip(), "email") if is_email(link.recipient_email) else None
        phone_channel = _phone_channel(policy)
        phone_option = (
            (link.recipient_phone.strip(), phone_channel)
            if phone_channel and is_phone(link.recipient_phone)
            else None
        )
        preferred = [email_option, phone_option]
        if policy.default_channel in PHONE_CHANNELS:
            preferred.reverse()
        candidates = [option for option in preferred if option is not None]

    for value, channel in candidates:
        if channel in policy.allowed_channels:
            return value, channel
    raise SignatureValidationError("No hay un canal de verificacion habilitado para este destinatario")


def _otp_payload(code: str, policy: OtpPolicy) -> dict[str, str]:
    minutes = max(policy.otp_expiration_seconds // 60, 1)
    return {
        "subject": "Código de verificación para firma electrónica",
        "body": (
            f"Su código de verificación es {code}. "
            f"Es válido por {minutes} minuto(s). "
            "Si no solicitó este código, puede ignorar este mensaje."
        ),
    }


def send_otp(
    link_id: int,
    destination: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> OtpSendResult:
    link = db.session.get(SignatureLink, link_id)
    if link is None:
        raise LinkNotFoundError()
    now = utcnow()
    ensure_link_open(link, now)

    policy = otp_policy_for(link.sale.org_id)
    target, channel = _resolve_destination(link, destination, policy)
    code = generate_code(policy.otp_length)
    record = IdentityVerification(
        signature_link_id=link.id,
        sale_id=link.sale_id,
        auth_method=AUTH_METHODS.get(channel, "OTP_EMAIL"),
        destination_masked=mask_destination(target),
        otp_code_hash=generate_password_hash(code),
        expires_at=now + timedelta(seconds=policy.otp_expiration_seconds),
        max_attempts=policy.max_attempts,
        attempts_remaining=policy.max_attempts,
        result=OtpResult.PENDING,
        ip_address=ip,
        user_agent=user_agent,
        created_at=now,
    )
    db.session.add(record)
    db.session.flush()

    delivery = get_delivery_channel().send_message(target, _otp_payload(code, policy))
    if not delivery.success:
        record.result = OtpResult.DELIVERY_FAILED
        db.session.commit()
        logger.warning("OTP delivery for link %s failed: %s", link.id, delivery.error)
        raise OtpDeliveryError("No se pudo enviar el código de verificación. Intente nuevamente.")

    record.provider_message_id = delivery.provider_message_id
    db.session.execute(
        update(IdentityVerification)
        .where(
            IdentityVerification.signature_link_id == link.id,
            IdentityVerification.result == OtpResult.PENDING,
            IdentityVerification.id != record.id,
        )
        .values(result=OtpResult.SUPERSEDED)
        .execution_options(synchronize_session=False)
    )
    append_step(link.id, "otp_sent", {"channel": channel, "destination_masked": record.destination_masked})
    db.session.commit()
    logger.info("OTP %s sent for link %s via %s", record.id, link.id, channel)
    return OtpSendResult(
        verification_id=record.id,
        masked_destination=record.destination_masked,
        expires_at=as_utc(record.expires_at),
    )


def _current_verification(link_id: int) -> IdentityVerification | None:
    return (
        IdentityVerification.query.filter(
            IdentityVerification.signature_link_id == link_id,
            IdentityVerification.result.notin_([OtpResult.SUPERSEDED, OtpResult.DELIVERY_FAILED]),
        )
        .order_by(IdentityVerification.id.desc())
        .first()
    )


def _mark(record_id: int, result: OtpResult) -> int:
    return db.session.execute(
        update(IdentityVerification)
        .where(IdentityVerification.id == record_id, IdentityVerification.result == OtpResult.PENDING)
        .values(result=result)
        .execution_options(synchronize_session=False)
    ).rowcount


def verify_otp(
    link_id: int,
    code: str,
    ip: str | None = None,
    user_agent: str | None = None,
) -> OtpVerifyResult:
    """Check a submitted code against the link's active OTP.

    Every wrong guess costs one attempt through a conditional decrement, so
    concurrent submissions can never push ``attempts_remaining`` below zero.
    Codes are only checked while the link is still open.
    """
    code = (code or "").strip()
    if not code:
        raise SignatureValidationError("El código es obligatorio")
    link = db.session.get(SignatureLink, link_id)
    if link is None:
        raise LinkNotFoundError()
    ensure_link_open(link, utcnow())
    record = _current_verification(link_id)
    if record is None:
        return OtpVerifyResult(verified=False, expired=True, message="No hay un código activo. Solicite uno nuevo.")
    if record.result == OtpResult.VERIFIED:
        return OtpVerifyResult(verified=True, verification_id=record.id, message="Identidad verificada")

    now = utcnow()
    if record.result == OtpResult.EXPIRED or as_utc(record.expires_at) < now:
        _mark(record.id, OtpResult.EXPIRED)
        db.session.commit()
        return OtpVerifyResult(
            verified=False,
            expired=True,
            verification_id=record.id,
            message="El código expiró. Solicite uno nuevo.",
        )
    if record.result == OtpResult.MAX_ATTEMPTS_EXCEEDED or record.attempts_remaining <= 0:
        return OtpVerifyResult(
            verified=False,
            attempts_remaining=0,
            expired=True,
            verification_id=record.id,
            message="Se superó el número máximo de intentos. Solicite un nuevo código.",
        )

    if check_password_hash(record.otp_code_hash, code):
        verified = db.session.execute(
            update(IdentityVerification)
            .where(
                IdentityVerification.id == record.id,
                IdentityVerification.result == OtpResult.PENDING,
                IdentityVerification.attempts_remaining > 0,
                IdentityVerification.expires_at >= now,
            )
            .values(result=OtpResult.VERIFIED, verified_at=now, ip_address=ip, user_agent=user_agent)
            .execution_options(synchronize_session=False)
        ).rowcount
        if verified != 1:
            db.session.rollback()
            return OtpVerifyResult(
                verified=False,
                expired=True,
                verification_id=record.id,
                message="No hay un código activo. Solicite uno nuevo.",
            )
        append_step(link_id, "otp_verified", {"verification_id": record.id, "ip": ip})
        db.session.commit()
        logger.info("OTP %s verified for link %s", record.id, link_id)
        return OtpVerifyResult(verified=True, verification_id=record.id, message="Identidad verificada")

    decremented = db.session.execute(
        update(IdentityVerification)
        .where(
            IdentityVerification.id == record.id,
            IdentityVerification.result == OtpResult.PENDING,
            IdentityVerification.attempts_remaining > 0,
        )
        .values(attempts_remaining=IdentityVerification.attempts_remaining - 1)
        .execution_options(synchronize_session=False)
    ).rowcount
    remaining = (
        db.session.query(IdentityVerification.attempts_remaining)
        .filter(IdentityVerification.id == record.id)
        .scalar()
    )
    if remaining == 0:
        _mark(record.id, OtpResult.MAX_ATTEMPTS_EXCEEDED)
    db.session.commit()

    if decremented != 1:
        return OtpVerifyResult(
            verified=False,
            attempts_remaining=0,
            expired=True,
            verification_id=record.id,
            message="Se superó el número máximo de intentos. Solicite un nuevo código.",
        )
    logger.info("Wrong OTP for link %s, %s attempt(s) left", link_id, remaining)
    return OtpVerifyResult(
        verified=False,
        attempts_remaining=remaining,
        verification_id=record.id,
        message=f"Código incorrecto. {remaining} intento(s) restante(s).",
    )
