from __future__ import annotations

from flask import jsonify, request
from flask_login import current_user, login_required

from app.core.errors import SaleNotFoundError, SignatureError
from app.core.models import SignatureLink, as_utc
from app.core.permissions import require_membership, require_role
from app.signatures import signatures_bp
from app.signatures.delivery import mask_destination
from app.signatures.evidence import verify_link_evidence
from app.signatures.links import (
    access_link,
    complete_link,
    create_links_for_sale,
    link_by_token,
    link_documents,
    links_for_sale,
    notify_recipients,
    record_consent,
    resend_link,
    revoke_link,
)
from app.signatures.otp import send_otp, verify_otp

STAFF_ROLES = ("vendedor", "gestor", "supervisor", "admin", "super_admin")


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def _user_agent() -> str | None:
    return request.headers.get("User-Agent")


def _error(exc: ValueError):
    return jsonify({"error": str(exc)}), getattr(exc, "status_code", 400)


def _link_summary(link: SignatureLink) -> dict[str, object]:
    destination = link.recipient_email or link.recipient_phone or ""
    return {
        "id": link.id,
        "sale_id": link.sale_id,
        "recipient_type": link.recipient_type.value,
        "recipient_name": link.recipient_name,
        "destination": mask_destination(destination) if destination else None,
        "status": link.status.value,
        "expires_at": as_utc(link.expires_at).isoformat(),
        "access_count": link.access_count,
        "completed_at": as_utc(link.completed_at).isoformat() if link.completed_at else None,
    }


@signatures_bp.post("/ventas/<int:sale_id>/firmas/enlaces")
@login_required
@require_membership
@require_role(*STAFF_ROLES)
def sale_links_create(sale_id: int):
    try:
        generated = create_links_for_sale(sale_id, current_user.id)
    except ValueError as exc:
        return _error(exc)
    deliveries = notify_recipients(generated)
    return (
        jsonify(
            [
                {**item.to_dict(), "delivered": delivery.success}
                for item, delivery in zip(generated, deliveries)
            ]
        ),
        201,
    )


@signatures_bp.get("/ventas/<int:sale_id>/firmas/enlaces")
@login_required
@require_membership
def sale_links_list(sale_id: int):
    try:
        links = links_for_sale(sale_id)
    except SaleNotFoundError as exc:
        return _error(exc)
    return jsonify([_link_summary(link) for link in links])


@signatures_bp.post("/firmas/enlaces/<int:link_id>/revocar")
@login_required
@require_membership
@require_role(*STAFF_ROLES)
def link_revoke(link_id: int):
    try:
        link = revoke_link(link_id, current_user.id)
    except ValueError as exc:
        return _error(exc)
    return jsonify(_link_summary(link))


@signatures_bp.post("/firmas/enlaces/<int:link_id>/reenviar")
@login_required
@require_membership
@require_role(*STAFF_ROLES)
def link_resend(link_id: int):
    try:
        generated = resend_link(link_id, current_user.id)
    except ValueError as exc:
        return _error(exc)
    delivery = notify_recipients([generated])[0]
    return jsonify({**generated.to_dict(), "delivered": delivery.success}), 201


@signatures_bp.get("/firmas/enlaces/<int:link_id>/evidencia")
@login_required
@require_membership
def link_evidence(link_id: int):
    try:
        record = verify_link_evidence(link_id)
    except ValueError as exc:
        return _error(exc)
    return jsonify(
        {
            "bundle": record.bundle,
            "bundle_hash": record.bundle_hash,
            "document_hash": record.document_hash,
            "integrity_status": record.integrity_status.value,
        }
    )


# Public endpoints: the token is the capability, no session required.


@signatures_bp.get("/firma/<token>")
def public_link_view(token: str):
    try:
        link = access_link(token, _client_ip(), _user_agent())
    except SignatureError as exc:
        return _error(exc)
    data = _link_summary(link)
    data["documents"] = [
        {
            "id": document.id,
            "name": document.name,
            "document_type": document.document_type,
            "status": document.status.value,
            "content": document.content,
        }
        for document in link_documents(link.id)
    ]
    return jsonify(data)


@signatures_bp.post("/firma/<token>/consentimiento")
def public_consent(token: str):
    try:
        consent = record_consent(token, _client_ip(), _user_agent())
    except SignatureError as exc:
        return _error(exc)
    return jsonify({"consent_record_id": consent.id, "version": consent.consent_text_version}), 201


@signatures_bp.post("/firma/<token>/otp/enviar")
def public_otp_send(token: str):
    payload = _payload()
    try:
        link = link_by_token(token)
        result = send_otp(link.id, payload.get("destination"), _client_ip(), _user_agent())
    except SignatureError as exc:
        return _error(exc)
    return jsonify(result.to_dict())


@signatures_bp.post("/firma/<token>/otp/verificar")
def public_otp_verify(token: str):
    payload = _payload()
    try:
        link = link_by_token(token)
        result = verify_otp(link.id, str(payload.get("code") or ""), _client_ip(), _user_agent())
    except SignatureError as exc:
        return _error(exc)
    return jsonify(result.to_dict()), 200 if result.verified else 400


@signatures_bp.post("/firma/<token>/firmar")
def public_sign(token: str):
    payload = _payload()
    try:
        link = link_by_token(token)
        result = complete_link(
            link.id,
            str(payload.get("signature") or ""),
            _client_ip(),
            _user_agent(),
            payload.get("consent_record_id"),
        )
    except SignatureError as exc:
        return _error(exc)
    return jsonify(result.to_dict())
