from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from flask import current_app
from sqlalchemy import func, update

from app.core.errors import (
    IdentityVerificationRequiredError,
    LinkAlreadyCompletedError,
    LinkExpiredError,
    LinkNotFoundError,
    LinkRevokedError,
    SaleNotFoundError,
    SignatureValidationError,
)
from app.core.extensions import db
from app.core.models import (
    ConsentRecord,
    DocumentStatus,
    EvidenceBundleRecord,
    IdentityVerification,
    LINK_OPEN_STATUSES,
    OtpResult,
    RecipientType,
    Sale,
    SaleDocument,
    SaleStatus,
    SignatureLink,
    SignatureLinkStatus,
    SignatureWorkflowStep,
    as_utc,
    utcnow,
)
from app.core.tenancy import org_id
from app.signatures.delivery import DeliveryResult, get_delivery_channel, is_email, is_phone, mask_destination
from app.signatures.evidence import build_evidence_bundle

logger = logging.getLogger(__name__)

SIGNING_ELIGIBLE_STATES = {
    SaleStatus.APROBADO_PARA_TEMPLATES,
    SaleStatus.LISTO_PARA_ENVIAR,
    SaleStatus.ENVIADO,
    SaleStatus.FIRMADO_PARCIAL,
}
SIGNATURE_METHOD = "firma_electronica_manuscrita"


def public_link_url(token: str) -> str:
    base = current_app.config["PUBLIC_SIGNATURE_BASE_URL"].rstrip("/")
    return f"{base}/{token}"


@dataclass
class GeneratedLink:
    link_id: int
    recipient_type: RecipientType
    recipient_name: str
    destination: str
    token: str
    expires_at: datetime

    @property
    def url(self) -> str:
        return public_link_url(self.token)

    def to_dict(self) -> dict[str, Any]:
        return {
            "link_id": self.link_id,
            "type": self.recipient_type.value,
            "recipient_name": self.recipient_name,
            "destination": mask_destination(self.destination) if self.destination else None,
            "url": self.url,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class CompletionResult:
    link_id: int
    sale_id: int
    evidence_bundle_hash: str
    all_signatures_completed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "link_id": self.link_id,
            "sale_id": self.sale_id,
            "evidence_bundle_hash": self.evidence_bundle_hash,
            "all_signatures_completed": self.all_signatures_completed,
        }


@dataclass
class _Recipient:
    type: RecipientType
    id: int
    name: str
    email: str | None
    phone: str | None
    beneficiary_id: int | None

    @property
    def destination(self) -> str:
        if is_email(self.email):
            return self.email.strip()
        if is_phone(self.phone):
            return self.phone.strip()
        return ""


def _conditional_update(stmt) -> int:
    return db.session.execute(stmt.execution_options(synchronize_session=False)).rowcount


def _link_ttl() -> timedelta:
    return timedelta(hours=current_app.config["SIGNATURE_LINK_TTL_HOURS"])


def _has_contact(email: str | None, phone: str | None) -> bool:
    return is_email(email) or is_phone(phone)


def append_step(link_id: int, step_type: str, data: dict[str, Any] | None = None) -> SignatureWorkflowStep:
    last = (
        db.session.query(func.max(SignatureWorkflowStep.step_order))
        .filter(SignatureWorkflowStep.signature_link_id == link_id)
        .scalar()
    )
    step = SignatureWorkflowStep(
        signature_link_id=link_id,
        step_order=(last or 0) + 1,
        step_type=step_type,
        data=data or {},
    )
    db.session.add(step)
    return step


def _recipients_for(sale: Sale) -> list[_Recipient]:
    recipients: list[_Recipient] = []
    client = sale.client
    # the titular always gets a link; without contact it is handed over by staff
    recipients.append(
        _Recipient(RecipientType.TITULAR, client.id, client.full_name, client.email, client.phone, None)
    )
    if not _has_contact(client.email, client.phone):
        logger.info("Sale %s: titular %s has no usable contact", sale.id, client.id)

    for beneficiary in sorted(sale.beneficiaries, key=lambda item: item.id):
        if beneficiary.signature_required is False:
            continue
        if not _has_contact(beneficiary.email, beneficiary.phone):
            logger.info("Sale %s: adherente %s has no usable contact", sale.id, beneficiary.id)
            continue
        recipients.append(
            _Recipient(
                RecipientType.ADHERENTE,
                beneficiary.id,
                beneficiary.full_name,
                beneficiary.email,
                beneficiary.phone,
                beneficiary.id,
            )
        )
    return recipients


def _live_recipient_keys(sale_id: int, now: datetime) -> set[tuple[RecipientType, int | None]]:
    keys = set()
    for link in SignatureLink.query.filter(
        SignatureLink.sale_id == sale_id,
        SignatureLink.status.in_(LINK_OPEN_STATUSES),
    ):
        if as_utc(link.expires_at) >= now:
            keys.add((link.recipient_type, link.recipient_id))
    return keys


def _mint_link(
    sale: Sale,
    recipient: _Recipient,
    user_id: int | None,
    now: datetime,
) -> GeneratedLink:
    link = SignatureLink(
        sale_id=sale.id,
        token=secrets.token_urlsafe(32),
        recipient_type=recipient.type,
        recipient_id=recipient.id,
        recipient_name=recipient.name,
        recipient_email=recipient.email if is_email(recipient.email) else None,
        recipient_phone=recipient.phone if is_phone(recipient.phone) else None,
        status=SignatureLinkStatus.PENDIENTE,
        expires_at=now + _link_ttl(),
        created_by_user_id=user_id,
        created_at=now,
    )
    db.session.add(link)
    db.session.flush()

    SaleDocument.query.filter(
        SaleDocument.sale_id == sale.id,
        SaleDocument.beneficiary_id.is_(None)
        if recipient.beneficiary_id is None
        else SaleDocument.beneficiary_id == recipient.beneficiary_id,
        SaleDocument.requires_signature.is_(True),
        SaleDocument.status != DocumentStatus.FIRMADO,
    ).update(
        {"signature_link_id": link.id, "status": DocumentStatus.PENDIENTE},
        synchronize_session=False,
    )
    append_step(link.id, "link_created", {"recipient_type": recipient.type.value})
    if recipient.type == RecipientType.TITULAR:
        sale.signature_token = link.token

    return GeneratedLink(
        link_id=link.id,
        recipient_type=recipient.type,
        recipient_name=recipient.name,
        destination=recipient.destination,
        token=link.token,
        expires_at=link.expires_at,
    )


def create_links_for_sale(sale_id: int, user_id: int | None = None) -> list[GeneratedLink]:
    """Mint one signature link per recipient of a sale.

    The titular always gets a link; every adherente whose signature is
    required gets one when they have an email or phone. Recipients that
    already hold a live link are skipped. Raises ``SignatureValidationError``
    when nothing could be minted.
    """
    sale = Sale.query.filter_by(org_id=org_id(), id=sale_id).first()
    if sale is None:
        raise SaleNotFoundError()
    if sale.status not in SIGNING_ELIGIBLE_STATES:
        raise SignatureValidationError(f"La venta en estado {sale.status.value} no admite enlaces de firma")
    if sale.client is None:
        raise SignatureValidationError("La venta debe tener un cliente asignado")

    now = utcnow()
    recipients = _recipients_for(sale)
    live = _live_recipient_keys(sale.id, now)
    pending = [r for r in recipients if (r.type, r.id) not in live]
    if not pending:
        raise SignatureValidationError("Todos los destinatarios ya tienen un enlace de firma vigente")

    generated = [_mint_link(sale, recipient, user_id, now) for recipient in pending]
    refresh_signature_aggregate(sale.id)
    db.session.commit()
    logger.info("Created %s signature link(s) for sale %s", len(generated), sale.id)
    return generated


def notify_recipients(links: list[GeneratedLink]) -> list[DeliveryResult]:
    channel = get_delivery_channel()
    results = []
    for generated in links:
        if not generated.destination:
            logger.warning("Link %s has no destination and was not sent", generated.link_id)
            results.append(DeliveryResult(success=False, error="El destinatario no tiene email ni telefono"))
            continue
        payload = {
            "subject": "Firma de documentos",
            "body": (
                f"Hola {generated.recipient_name}, tenés documentos pendientes de firma. "
                f"Ingresá a {generated.url} antes del {generated.expires_at:%d/%m/%Y %H:%M} UTC."
            ),
        }
        result = channel.send_message(generated.destination, payload)
        if not result.success:
            logger.warning("Link %s could not be delivered: %s", generated.link_id, result.error)
        results.append(result)
    return results


def link_by_token(token: str) -> SignatureLink:
    link = SignatureLink.query.filter_by(token=token).first()
    if link is None:
        raise LinkNotFoundError()
    return link


def staff_link_by_id(link_id: int) -> SignatureLink:
    link = (
        SignatureLink.query.join(Sale, Sale.id == SignatureLink.sale_id)
        .filter(SignatureLink.id == link_id, Sale.org_id == org_id())
        .first()
    )
    if link is None:
        raise LinkNotFoundError()
    return link


def links_for_sale(sale_id: int) -> list[SignatureLink]:
    sale = Sale.query.filter_by(org_id=org_id(), id=sale_id).first()
    if sale is None:
        raise SaleNotFoundError()
    return SignatureLink.query.filter_by(sale_id=sale.id).order_by(SignatureLink.id.asc()).all()


def ensure_link_open(link: SignatureLink, now: datetime) -> None:
    if link.status == SignatureLinkStatus.COMPLETADO:
        raise LinkAlreadyCompletedError()
    if link.status == SignatureLinkStatus.REVOCADO:
        raise LinkRevokedError()
    if link.status == SignatureLinkStatus.EXPIRADO or as_utc(link.expires_at) < now:
        raise LinkExpiredError()


def access_link(token: str, ip: str | None = None, user_agent: str | None = None) -> SignatureLink:
    link = link_by_token(token)
    now = utcnow()
    if link.status == SignatureLinkStatus.REVOCADO:
        raise LinkRevokedError()
    if as_utc(link.expires_at) < now:
        raise LinkExpiredError()

    _conditional_update(
        update(SignatureLink)
        .where(SignatureLink.id == link.id)
        .values(access_count=SignatureLink.access_count + 1, accessed_at=now)
    )
    first_view = _conditional_update(
        update(SignatureLink)
        .where(SignatureLink.id == link.id, SignatureLink.status == SignatureLinkStatus.PENDIENTE)
        .values(status=SignatureLinkStatus.VISUALIZADO)
    )
    if first_view:
        append_step(link.id, "link_viewed", {"ip": ip, "user_agent": user_agent})
    db.session.commit()
    db.session.refresh(link)
    return link


def link_documents(link_id: int) -> list[SaleDocument]:
    return SaleDocument.query.filter_by(signature_link_id=link_id).order_by(SaleDocument.id.asc()).all()


def link_document_content(link_id: int) -> str:
    return "\n".join(document.content for document in link_documents(link_id))


def latest_verified_identity(link_id: int) -> IdentityVerification | None:
    return (
        IdentityVerification.query.filter_by(signature_link_id=link_id, result=OtpResult.VERIFIED)
        .order_by(IdentityVerification.id.desc())
        .first()
    )


def _terminal_error(link_id: int) -> Exception:
    link = db.session.get(SignatureLink, link_id)
    if link.status == SignatureLinkStatus.COMPLETADO:
        return LinkAlreadyCompletedError()
    if link.status == SignatureLinkStatus.REVOCADO:
        return LinkRevokedError()
    return LinkExpiredError()


def _existing_consent(link: SignatureLink, consent_record_id: Any) -> ConsentRecord | None:
    if consent_record_id in (None, ""):
        return None
    if isinstance(consent_record_id, bool):
        raise SignatureValidationError("Identificador de consentimiento invalido")
    try:
        record_id = int(consent_record_id)
    except (TypeError, ValueError):
        raise SignatureValidationError("Identificador de consentimiento invalido") from None
    consent = db.session.get(ConsentRecord, record_id)
    if consent is None or consent.signature_link_id != link.id:
        raise SignatureValidationError("El consentimiento no corresponde a este enlace")
    return consent


def _new_consent(link: SignatureLink, ip: str | None, user_agent: str | None, now: datetime) -> ConsentRecord:
    consent = ConsentRecord(
        signature_link_id=link.id,
        consent_text_version=current_app.config["CONSENT_TEXT_VERSION"],
        ip_address=ip,
        user_agent=user_agent,
        accepted_at=now,
    )
    db.session.add(consent)
    db.session.flush()
    return consent


def record_consent(token: str, ip: str | None = None, user_agent: str | None = None) -> ConsentRecord:
    link = link_by_token(token)
    now = utcnow()
    ensure_link_open(link, now)
    consent = _new_consent(link, ip, user_agent, now)
    append_step(link.id, "consent_accepted", {"consent_record_id": consent.id})
    db.session.commit()
    return consent


def complete_link(
    link_id: int,
    signature_payload: str,
    signed_ip: str | None = None,
    user_agent: str | None = None,
    consent_record_id: Any = None,
) -> CompletionResult:
    """Finalize a signature.

    Every input check (identity, consent reference) runs before the link row
    is touched. The row then only moves to ``completado`` through a
    conditional update guarded by status and expiry, so a concurrent sweep or
    a second submit can never complete an expired link or complete one twice.
    Documents, consent, evidence and the sale aggregate are written in the
    same transaction; any failure after the status change rolls all of it
    back.
    """
    link = db.session.get(SignatureLink, link_id)
    if link is None:
        raise LinkNotFoundError()
    if not (signature_payload or "").strip():
        raise SignatureValidationError("La firma es obligatoria")

    now = utcnow()
    ensure_link_open(link, now)

    from app.signatures.otp import otp_policy_for

    policy = otp_policy_for(link.sale.org_id)
    verification = latest_verified_identity(link.id)
    if policy.require_otp_for_signature and verification is None:
        raise IdentityVerificationRequiredError()
    consent = _existing_consent(link, consent_record_id)

    completed = _conditional_update(
        update(SignatureLink)
        .where(
            SignatureLink.id == link.id,
            SignatureLink.status.in_(LINK_OPEN_STATUSES),
            SignatureLink.expires_at >= now,
        )
        .values(
            status=SignatureLinkStatus.COMPLETADO,
            completed_at=now,
            signature_data=signature_payload,
            signed_ip=signed_ip,
            signed_user_agent=user_agent,
        )
    )
    if completed != 1:
        db.session.rollback()
        raise _terminal_error(link.id)

    try:
        documents = link_documents(link.id)
        for document in documents:
            document.status = DocumentStatus.FIRMADO
            document.signed_at = now
            document.content_hash = hashlib.sha256(document.content.encode("utf-8")).hexdigest()

        if consent is None:
            consent = _new_consent(link, signed_ip, user_agent, now)
        evidence = build_evidence_bundle(
            document_content="\n".join(document.content for document in documents),
            identity_verification_id=verification.id if verification else None,
            consent_record_id=consent.id,
            signature_method=SIGNATURE_METHOD,
            ip=signed_ip,
            user_agent=user_agent,
            timestamp=now,
            legal_framework=current_app.config["LEGAL_FRAMEWORK"],
        )
        db.session.add(
            EvidenceBundleRecord(
                signature_link_id=link.id,
                sale_id=link.sale_id,
                bundle=evidence.bundle,
                bundle_hash=evidence.bundle_hash,
                document_hash=evidence.document_hash,
                created_at=now,
            )
        )
        append_step(
            link.id,
            "signature_completed",
            {"ip": signed_ip, "user_agent": user_agent, "evidence_bundle_hash": evidence.bundle_hash},
        )
        all_complete = refresh_signature_aggregate(link.sale_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Signature link %s could not be completed", link_id)
        raise

    logger.info("Signature link %s completed (sale %s, all=%s)", link_id, link.sale_id, all_complete)
    return CompletionResult(
        link_id=link.id,
        sale_id=link.sale_id,
        evidence_bundle_hash=evidence.bundle_hash,
        all_signatures_completed=all_complete,
    )


def signatures_complete(statuses: list[SignatureLinkStatus]) -> bool:
    participating = [
        status
        for status in statuses
        if status not in (SignatureLinkStatus.REVOCADO, SignatureLinkStatus.EXPIRADO)
    ]
    return bool(participating) and all(status == SignatureLinkStatus.COMPLETADO for status in participating)


def sale_signatures_complete(sale_id: int) -> bool:
    statuses = [status for (status,) in db.session.query(SignatureLink.status).filter_by(sale_id=sale_id)]
    return signatures_complete(statuses)


def refresh_signature_aggregate(sale_id: int) -> bool:
    db.session.flush()
    complete = sale_signatures_complete(sale_id)
    _conditional_update(update(Sale).where(Sale.id == sale_id).values(all_signatures_completed=complete))
    return complete


def revoke_link(link_id: int, user_id: int | None = None, commit: bool = True) -> SignatureLink:
    """Revoke an open link.

    Completed links cannot be revoked. Links that are already expired or
    revoked are returned unchanged so their terminal status and history stay
    as they were.
    """
    link = staff_link_by_id(link_id)
    now = utcnow()
    revoked = _conditional_update(
        update(SignatureLink)
        .where(SignatureLink.id == link.id, SignatureLink.status.in_(LINK_OPEN_STATUSES))
        .values(status=SignatureLinkStatus.REVOCADO, expires_at=now)
    )
    if revoked != 1:
        db.session.rollback()
        if link.status == SignatureLinkStatus.COMPLETADO:
            raise LinkAlreadyCompletedError("No se puede revocar un enlace ya firmado")
        logger.info("Signature link %s is already %s", link.id, link.status.value)
        return link
    append_step(link.id, "link_revoked", {"user_id": user_id})
    refresh_signature_aggregate(link.sale_id)
    if commit:
        db.session.commit()
    logger.info("Signature link %s revoked by user %s", link.id, user_id)
    db.session.refresh(link)
    return link


def resend_link(link_id: int, user_id: int | None = None) -> GeneratedLink:
    """Revoke a link and mint a fresh one for the same recipient."""
    link = revoke_link(link_id, user_id, commit=False)
    recipient = _Recipient(
        type=link.recipient_type,
        id=link.recipient_id,
        name=link.recipient_name,
        email=link.recipient_email,
        phone=link.recipient_phone,
        beneficiary_id=link.recipient_id if link.recipient_type == RecipientType.ADHERENTE else None,
    )
    if recipient.type == RecipientType.ADHERENTE and not recipient.destination:
        db.session.rollback()
        raise SignatureValidationError("El destinatario no tiene email ni telefono")
    now = utcnow()
    if (recipient.type, recipient.id) in _live_recipient_keys(link.sale_id, now):
        db.session.rollback()
        raise SignatureValidationError("El destinatario ya tiene un enlace de firma vigente")
    generated = _mint_link(link.sale, recipient, user_id, now)
    append_step(link.id, "link_replaced", {"replacement_link_id": generated.link_id})
    refresh_signature_aggregate(link.sale_id)
    db.session.commit()
    logger.info("Signature link %s replaced by %s", link.id, generated.link_id)
    return generated
