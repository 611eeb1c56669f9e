from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.errors import (
    IdentityVerificationRequiredError,
    LinkAlreadyCompletedError,
    LinkExpiredError,
    LinkRevokedError,
    SignatureValidationError,
)
from app.core.extensions import db
from app.core.models import (
    Beneficiary,
    CompanyOtpPolicy,
    ConsentRecord,
    DocumentStatus,
    EvidenceBundleRecord,
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
from app.signatures import links
from app.signatures.links import (
    access_link,
    complete_link,
    create_links_for_sale,
    notify_recipients,
    record_consent,
    resend_link,
    revoke_link,
    sale_signatures_complete,
)
from app.signatures.otp import send_otp, verify_otp
from app.signatures.sweep import run_expiration_sweep


def _link(generated) -> SignatureLink:
    return db.session.get(SignatureLink, generated.link_id)


def _verify_identity(link_id, read_otp):
    send_otp(link_id)
    assert verify_otp(link_id, read_otp()).verified is True


def test_links_are_minted_per_recipient_with_documents(signing_sale):
    sale, generated = signing_sale
    assert [item.recipient_type for item in generated] == [RecipientType.TITULAR, RecipientType.ADHERENTE]

    titular, adherente = (_link(item) for item in generated)
    assert titular.status == SignatureLinkStatus.PENDIENTE
    assert as_utc(titular.expires_at) > utcnow() + timedelta(hours=23)
    assert db.session.get(Sale, sale.id).signature_token == titular.token

    contrato = SaleDocument.query.filter_by(sale_id=sale.id, document_type="contrato").one()
    ddjj = SaleDocument.query.filter_by(sale_id=sale.id, document_type="ddjj").one()
    assert contrato.signature_link_id == titular.id
    assert ddjj.signature_link_id == adherente.id
    assert [step.step_type for step in titular.steps] == ["link_created"]


def test_links_require_signing_eligible_sale(org_context, demo_sale):
    with pytest.raises(SignatureValidationError):
        create_links_for_sale(demo_sale.id)


def test_second_mint_skips_live_recipients(signing_sale):
    sale, _ = signing_sale
    with pytest.raises(SignatureValidationError):
        create_links_for_sale(sale.id)
    assert SignatureLink.query.filter_by(sale_id=sale.id).count() == 2


def test_adherente_without_required_signature_is_skipped(org_context, demo_sale):
    beneficiary = Beneficiary.query.filter_by(sale_id=demo_sale.id).one()
    beneficiary.signature_required = False
    demo_sale.status = SaleStatus.ENVIADO
    db.session.commit()

    generated = create_links_for_sale(demo_sale.id)
    assert [item.recipient_type for item in generated] == [RecipientType.TITULAR]


def _drop_client_contact(sale):
    sale.client.email = None
    sale.client.phone = None
    sale.status = SaleStatus.ENVIADO
    db.session.commit()


def test_titular_without_contact_still_gets_a_link(org_context, demo_sale, outbox):
    _drop_client_contact(demo_sale)

    generated = create_links_for_sale(demo_sale.id)

    assert [item.recipient_type for item in generated] == [RecipientType.TITULAR, RecipientType.ADHERENTE]
    titular = _link(generated[0])
    assert titular.recipient_email is None
    assert titular.recipient_phone is None
    assert generated[0].to_dict()["destination"] is None
    assert db.session.get(Sale, demo_sale.id).signature_token == titular.token

    sent_before = len(outbox)
    results = notify_recipients(generated)
    assert [result.success for result in results] == [False, True]
    assert len(outbox) == sent_before + 1


def test_adherente_alone_does_not_complete_the_sale(org_context, demo_sale, demo_org):
    db.session.add(CompanyOtpPolicy(org_id=demo_org.id, require_otp_for_signature=False))
    _drop_client_contact(demo_sale)
    generated = create_links_for_sale(demo_sale.id)

    result = complete_link(generated[1].link_id, "sig-adherente")

    assert result.all_signatures_completed is False
    assert sale_signatures_complete(demo_sale.id) is False
    assert db.session.get(Sale, demo_sale.id).all_signatures_completed is False


def test_only_the_titular_is_minted_when_nobody_has_contact(org_context, demo_sale):
    demo_sale.client.email = None
    demo_sale.client.phone = "123"
    for beneficiary in demo_sale.beneficiaries:
        beneficiary.email = None
        beneficiary.phone = None
    demo_sale.status = SaleStatus.ENVIADO
    db.session.commit()

    generated = create_links_for_sale(demo_sale.id)
    assert [item.recipient_type for item in generated] == [RecipientType.TITULAR]


def test_titular_link_without_contact_can_be_replaced(org_context, demo_sale):
    _drop_client_contact(demo_sale)
    generated = create_links_for_sale(demo_sale.id)

    replacement = resend_link(generated[0].link_id)

    assert replacement.recipient_type == RecipientType.TITULAR
    assert replacement.destination == ""
    assert _link(generated[0]).status == SignatureLinkStatus.REVOCADO


def test_notify_recipients_sends_public_url(signing_sale, outbox):
    _, generated = signing_sale
    results = notify_recipients(generated)
    assert all(result.success for result in results)
    assert outbox[-2]["destination"] == "ana.benitez@example.com"
    assert f"http://testserver/firma/{generated[0].token}" in outbox[-2]["body"]


def test_access_marks_first_view_and_counts_every_access(signing_sale):
    _, generated = signing_sale
    token = generated[0].token

    first = access_link(token, "10.0.0.1", "pytest")
    assert first.status == SignatureLinkStatus.VISUALIZADO
    assert first.access_count == 1
    second = access_link(token)
    assert second.access_count == 2

    viewed = SignatureWorkflowStep.query.filter_by(signature_link_id=first.id, step_type="link_viewed").count()
    assert viewed == 1


def test_access_rejects_past_expiry_regardless_of_status(signing_sale):
    _, generated = signing_sale
    link = _link(generated[0])
    link.expires_at = utcnow() - timedelta(hours=1)
    db.session.commit()

    with pytest.raises(LinkExpiredError):
        access_link(generated[0].token)
    assert db.session.get(SignatureLink, link.id).access_count == 0


def test_access_rejects_revoked_link(signing_sale):
    _, generated = signing_sale
    revoke_link(generated[0].link_id)
    with pytest.raises(LinkRevokedError):
        access_link(generated[0].token)


def test_completion_requires_verified_identity(signing_sale):
    _, generated = signing_sale
    with pytest.raises(IdentityVerificationRequiredError):
        complete_link(generated[0].link_id, "data:image/png;base64,AAAA")
    assert _link(generated[0]).status == SignatureLinkStatus.PENDIENTE


def test_completion_signs_documents_and_stores_evidence(signing_sale, read_otp):
    sale, generated = signing_sale
    titular = generated[0]
    _verify_identity(titular.link_id, read_otp)

    result = complete_link(titular.link_id, "data:image/png;base64,AAAA", "10.0.0.1", "pytest")

    link = _link(titular)
    assert link.status == SignatureLinkStatus.COMPLETADO
    assert link.signed_ip == "10.0.0.1"
    assert result.all_signatures_completed is False

    contrato = SaleDocument.query.filter_by(signature_link_id=link.id).one()
    assert contrato.status == DocumentStatus.FIRMADO
    assert len(contrato.content_hash) == 64

    record = EvidenceBundleRecord.query.filter_by(signature_link_id=link.id).one()
    assert record.bundle_hash == result.evidence_bundle_hash
    assert record.bundle["identity_verification"]["verified"] is True
    assert ConsentRecord.query.filter_by(signature_link_id=link.id).count() == 1
    assert db.session.get(Sale, sale.id).all_signatures_completed is False


def test_two_recipients_complete_independently(signing_sale, read_otp):
    sale, generated = signing_sale
    for item in generated:
        _verify_identity(item.link_id, read_otp)

    first = complete_link(generated[0].link_id, "sig-titular")
    assert first.all_signatures_completed is False
    second = complete_link(generated[1].link_id, "sig-adherente")
    assert second.all_signatures_completed is True

    assert sale_signatures_complete(sale.id) is True
    assert db.session.get(Sale, sale.id).all_signatures_completed is True


def test_link_completes_at_most_once(signing_sale, read_otp):
    _, generated = signing_sale
    link_id = generated[0].link_id
    _verify_identity(link_id, read_otp)
    complete_link(link_id, "sig")

    with pytest.raises(LinkAlreadyCompletedError):
        complete_link(link_id, "sig-again")
    assert EvidenceBundleRecord.query.filter_by(signature_link_id=link_id).count() == 1


def test_expired_link_cannot_be_completed(signing_sale, read_otp):
    _, generated = signing_sale
    link_id = generated[0].link_id
    _verify_identity(link_id, read_otp)
    link = db.session.get(SignatureLink, link_id)
    link.expires_at = utcnow() - timedelta(seconds=1)
    db.session.commit()

    with pytest.raises(LinkExpiredError):
        complete_link(link_id, "sig")
    assert EvidenceBundleRecord.query.count() == 0


def test_completion_without_otp_when_policy_disables_it(signing_sale, demo_org):
    db.session.add(CompanyOtpPolicy(org_id=demo_org.id, require_otp_for_signature=False))
    db.session.commit()
    _, generated = signing_sale

    result = complete_link(generated[0].link_id, "sig")

    record = EvidenceBundleRecord.query.filter_by(signature_link_id=generated[0].link_id).one()
    assert record.bundle["identity_verification"] == {"verified": False, "verification_id": None}
    assert result.evidence_bundle_hash == record.bundle_hash


def test_blank_signature_is_rejected(signing_sale):
    _, generated = signing_sale
    with pytest.raises(SignatureValidationError):
        complete_link(generated[0].link_id, "   ")


def test_revoke_refuses_completed_links(signing_sale, read_otp):
    _, generated = signing_sale
    _verify_identity(generated[0].link_id, read_otp)
    complete_link(generated[0].link_id, "sig")

    with pytest.raises(LinkAlreadyCompletedError):
        revoke_link(generated[0].link_id)

    revoked = revoke_link(generated[1].link_id)
    assert revoked.status == SignatureLinkStatus.REVOCADO
    assert as_utc(revoked.expires_at) <= utcnow()


def test_revoked_links_do_not_block_the_aggregate(signing_sale, read_otp):
    sale, generated = signing_sale
    revoke_link(generated[1].link_id)
    _verify_identity(generated[0].link_id, read_otp)

    result = complete_link(generated[0].link_id, "sig")
    assert result.all_signatures_completed is True
    assert db.session.get(Sale, sale.id).all_signatures_completed is True


def test_resend_replaces_link_for_same_recipient(signing_sale):
    sale, generated = signing_sale
    old = generated[1]

    replacement = resend_link(old.link_id)

    assert _link(old).status == SignatureLinkStatus.REVOCADO
    new_link = db.session.get(SignatureLink, replacement.link_id)
    assert new_link.recipient_type == RecipientType.ADHERENTE
    assert new_link.recipient_email == "luis.benitez@example.com"
    assert new_link.token != old.token
    ddjj = SaleDocument.query.filter_by(sale_id=sale.id, document_type="ddjj").one()
    assert ddjj.signature_link_id == new_link.id
    assert ddjj.status == DocumentStatus.PENDIENTE


def _disable_otp(org):
    db.session.add(CompanyOtpPolicy(org_id=org.id, require_otp_for_signature=False))
    db.session.commit()


def test_consent_of_another_link_is_rejected_before_completion(signing_sale, demo_org):
    _disable_otp(demo_org)
    sale, generated = signing_sale
    foreign = record_consent(generated[1].token)

    with pytest.raises(SignatureValidationError):
        complete_link(generated[0].link_id, "sig", consent_record_id=foreign.id)
    db.session.commit()

    link = _link(generated[0])
    assert link.status == SignatureLinkStatus.PENDIENTE
    assert link.completed_at is None
    assert EvidenceBundleRecord.query.count() == 0
    contrato = SaleDocument.query.filter_by(sale_id=sale.id, document_type="contrato").one()
    assert contrato.status == DocumentStatus.PENDIENTE


@pytest.mark.parametrize("consent_record_id", ["abc", "1.5", [1], True])
def test_malformed_consent_id_is_a_validation_error(signing_sale, demo_org, consent_record_id):
    _disable_otp(demo_org)
    _, generated = signing_sale

    with pytest.raises(SignatureValidationError):
        complete_link(generated[0].link_id, "sig", consent_record_id=consent_record_id)
    assert _link(generated[0]).status == SignatureLinkStatus.PENDIENTE


def test_numeric_string_consent_id_is_accepted(signing_sale, demo_org):
    _disable_otp(demo_org)
    _, generated = signing_sale
    consent = record_consent(generated[0].token)

    complete_link(generated[0].link_id, "sig", consent_record_id=str(consent.id))

    record = EvidenceBundleRecord.query.filter_by(signature_link_id=generated[0].link_id).one()
    assert record.bundle["consent_record"] == {"record_id": consent.id}
    assert ConsentRecord.query.filter_by(signature_link_id=generated[0].link_id).count() == 1


def test_failure_after_status_change_rolls_everything_back(signing_sale, demo_org, monkeypatch):
    _disable_otp(demo_org)
    sale, generated = signing_sale

    def broken_bundle(**kwargs):
        raise RuntimeError("hash backend unavailable")

    monkeypatch.setattr(links, "build_evidence_bundle", broken_bundle)
    with pytest.raises(RuntimeError):
        complete_link(generated[0].link_id, "sig")
    db.session.commit()

    link = _link(generated[0])
    assert link.status == SignatureLinkStatus.PENDIENTE
    assert link.signature_data is None
    assert EvidenceBundleRecord.query.count() == 0
    assert ConsentRecord.query.count() == 0
    contrato = SaleDocument.query.filter_by(sale_id=sale.id, document_type="contrato").one()
    assert contrato.status == DocumentStatus.PENDIENTE
    assert contrato.signed_at is None


def test_revoking_an_expired_link_keeps_it_expired(signing_sale):
    _, generated = signing_sale
    run_expiration_sweep(utcnow() + timedelta(days=2))
    expired_at = as_utc(_link(generated[1]).expires_at)

    link = revoke_link(generated[1].link_id)

    assert link.status == SignatureLinkStatus.EXPIRADO
    assert as_utc(link.expires_at) == expired_at
    revoked_steps = SignatureWorkflowStep.query.filter_by(signature_link_id=link.id, step_type="link_revoked")
    assert revoked_steps.count() == 0


def test_revoking_twice_keeps_the_first_revocation(signing_sale):
    _, generated = signing_sale
    first = revoke_link(generated[1].link_id)
    revoked_at = as_utc(first.expires_at)

    second = revoke_link(generated[1].link_id)

    assert second.status == SignatureLinkStatus.REVOCADO
    assert as_utc(second.expires_at) == revoked_at
    revoked_steps = SignatureWorkflowStep.query.filter_by(signature_link_id=second.id, step_type="link_revoked")
    assert revoked_steps.count() == 1


def test_expired_link_can_be_replaced(signing_sale):
    sale, generated = signing_sale
    run_expiration_sweep(utcnow() + timedelta(days=2))

    replacement = resend_link(generated[1].link_id)

    assert _link(generated[1]).status == SignatureLinkStatus.EXPIRADO
    assert db.session.get(SignatureLink, replacement.link_id).status == SignatureLinkStatus.PENDIENTE


def test_resend_refuses_when_recipient_already_has_a_live_link(signing_sale):
    _, generated = signing_sale
    revoke_link(generated[1].link_id)
    resend_link(generated[1].link_id)

    with pytest.raises(SignatureValidationError):
        resend_link(generated[1].link_id)
    assert SignatureLink.query.filter_by(recipient_type=RecipientType.ADHERENTE).count() == 2
