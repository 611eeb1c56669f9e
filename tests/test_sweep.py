from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.errors import LinkExpiredError
from app.core.extensions import db
from app.core.models import (
    CompanyOtpPolicy,
    DocumentStatus,
    EvidenceBundleRecord,
    ProcessTrace,
    Sale,
    SaleDocument,
    SaleStatus,
    SaleStatusHistory,
    SignatureLink,
    SignatureLinkStatus,
    SignatureWorkflowStep,
    utcnow,
)
from app.signatures import links, sweep
from app.signatures.links import complete_link
from app.signatures.sweep import TRACE_ACTION, run_expiration_sweep


def _later():
    return utcnow() + timedelta(days=2)


def test_sweep_expires_links_documents_and_sale(signing_sale):
    sale, generated = signing_sale

    result = run_expiration_sweep(_later())

    assert result.links_expired == 2
    assert result.documents_updated == 2
    assert result.sales_updated == 1
    assert result.errors == []
    assert {link.status for link in SignatureLink.query.filter_by(sale_id=sale.id)} == {SignatureLinkStatus.EXPIRADO}
    assert {doc.status for doc in SaleDocument.query.filter_by(sale_id=sale.id)} == {DocumentStatus.VENCIDO}
    assert db.session.get(Sale, sale.id).status == SaleStatus.EXPIRADO

    history = SaleStatusHistory.query.filter_by(sale_id=sale.id).one()
    assert (history.from_status, history.to_status) == ("listo_para_enviar", "expirado")
    expired_steps = SignatureWorkflowStep.query.filter_by(step_type="link_expired").count()
    assert expired_steps == 2

    trace = ProcessTrace.query.filter_by(action=TRACE_ACTION).one()
    assert trace.details["links_expired"] == 2


def test_second_run_changes_nothing(signing_sale):
    later = _later()
    run_expiration_sweep(later)

    again = run_expiration_sweep(later)

    assert (again.links_expired, again.documents_updated, again.sales_updated) == (0, 0, 0)
    assert ProcessTrace.query.count() == 1
    assert SaleStatusHistory.query.count() == 1


def test_nothing_due_means_no_trace(signing_sale):
    result = run_expiration_sweep()
    assert result.links_expired == 0
    assert ProcessTrace.query.count() == 0
    assert SignatureLink.query.filter_by(status=SignatureLinkStatus.PENDIENTE).count() == 2


def test_completed_links_are_left_alone(signing_sale, demo_org):
    db.session.add(CompanyOtpPolicy(org_id=demo_org.id, require_otp_for_signature=False))
    db.session.commit()
    sale, generated = signing_sale
    complete_link(generated[0].link_id, "sig")

    result = run_expiration_sweep(_later())

    assert result.links_expired == 1
    assert db.session.get(SignatureLink, generated[0].link_id).status == SignatureLinkStatus.COMPLETADO
    contrato = SaleDocument.query.filter_by(sale_id=sale.id, document_type="contrato").one()
    assert contrato.status == DocumentStatus.FIRMADO


def test_sale_with_a_live_link_is_not_expired(signing_sale):
    sale, generated = signing_sale
    link = db.session.get(SignatureLink, generated[0].link_id)
    link.expires_at = utcnow() - timedelta(minutes=5)
    db.session.commit()

    result = run_expiration_sweep()

    assert result.links_expired == 1
    assert result.sales_updated == 0
    assert db.session.get(Sale, sale.id).status == SaleStatus.LISTO_PARA_ENVIAR


def test_protected_sale_status_is_kept(signing_sale):
    sale, _ = signing_sale
    sale.status = SaleStatus.CANCELADO
    db.session.commit()

    result = run_expiration_sweep(_later())

    assert result.links_expired == 2
    assert result.sales_updated == 0
    assert db.session.get(Sale, sale.id).status == SaleStatus.CANCELADO


def test_failing_link_is_reported_and_others_continue(signing_sale, monkeypatch):
    _, generated = signing_sale
    real_expire = sweep._expire_link
    broken_id = generated[0].link_id

    def flaky_expire(link_id, now):
        if link_id == broken_id:
            raise RuntimeError("disk full")
        return real_expire(link_id, now)

    monkeypatch.setattr(sweep, "_expire_link", flaky_expire)
    result = run_expiration_sweep(_later())

    assert result.links_expired == 1
    assert result.errors == [f"link {broken_id}: disk full"]
    assert db.session.get(SignatureLink, broken_id).status == SignatureLinkStatus.PENDIENTE
    trace = ProcessTrace.query.one()
    assert trace.details["errors"] == result.errors


def test_sweep_landing_between_check_and_completion_wins(signing_sale, demo_org, monkeypatch):
    db.session.add(CompanyOtpPolicy(org_id=demo_org.id, require_otp_for_signature=False))
    db.session.commit()
    sale, generated = signing_sale
    link_id = generated[0].link_id
    real_check = links.ensure_link_open

    def check_then_sweep(link, now):
        real_check(link, now)
        run_expiration_sweep(now + timedelta(days=2))

    monkeypatch.setattr(links, "ensure_link_open", check_then_sweep)
    with pytest.raises(LinkExpiredError):
        complete_link(link_id, "sig")

    link = db.session.get(SignatureLink, link_id)
    assert link.status == SignatureLinkStatus.EXPIRADO
    assert link.completed_at is None
    assert link.signature_data is None
    assert EvidenceBundleRecord.query.count() == 0
    completed_steps = SignatureWorkflowStep.query.filter_by(
        signature_link_id=link_id, step_type="signature_completed"
    ).count()
    assert completed_steps == 0
    contrato = SaleDocument.query.filter_by(sale_id=sale.id, document_type="contrato").one()
    assert contrato.status == DocumentStatus.VENCIDO
