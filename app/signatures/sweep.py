"""
Expiration sweep for signature links.

Run periodically by an external scheduler (``flask sweep-expired-links``).
Every state change is a conditional update, so the sweep can run concurrently
with itself and with signature completion. Each link, and then each touched
sale, is committed on its own: a failing record is logged and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import update

from app.core.extensions import db
from app.core.models import (
    DocumentStatus,
    LINK_OPEN_STATUSES,
    ProcessTrace,
    Sale,
    SaleDocument,
    SaleStatus,
    SaleStatusHistory,
    SignatureLink,
    SignatureLinkStatus,
    utcnow,
)
from app.signatures.links import append_step, refresh_signature_aggregate

logger = logging.getLogger(__name__)

PROTECTED_SALE_STATUSES = (
    SaleStatus.COMPLETADO,
    SaleStatus.FIRMADO,
    SaleStatus.CANCELADO,
    SaleStatus.EXPIRADO,
)
TRACE_ACTION = "cleanup_expired_signature_links"


@dataclass
class SweepResult:
    links_expired: int = 0
    documents_updated: int = 0
    sales_updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "links_expired": self.links_expired,
            "documents_updated": self.documents_updated,
            "sales_updated": self.sales_updated,
            "errors": list(self.errors),
        }


def _expire_link(link_id: int, now: datetime) -> tuple[int, int] | None:
    """Expire one link; returns ``(sale_id, documents_updated)`` or None if untouched."""
    changed = db.session.execute(
        update(SignatureLink)
        .where(
            SignatureLink.id == link_id,
            SignatureLink.status.in_(LINK_OPEN_STATUSES),
            SignatureLink.expires_at < now,
        )
        .values(status=SignatureLinkStatus.EXPIRADO)
        .execution_options(synchronize_session=False)
    ).rowcount
    if changed != 1:
        db.session.rollback()
        return None

    documents = db.session.execute(
        update(SaleDocument)
        .where(
            SaleDocument.signature_link_id == link_id,
            SaleDocument.status == DocumentStatus.PENDIENTE,
        )
        .values(status=DocumentStatus.VENCIDO)
        .execution_options(synchronize_session=False)
    ).rowcount
    append_step(link_id, "link_expired", {"expired_at": now.isoformat()})
    sale_id = db.session.query(SignatureLink.sale_id).filter(SignatureLink.id == link_id).scalar()
    db.session.commit()
    return sale_id, documents


def _expire_sale_if_exhausted(sale_id: int, now: datetime) -> bool:
    statuses = [status for (status,) in db.session.query(SignatureLink.status).filter_by(sale_id=sale_id)]
    # revoked links were replaced or withdrawn and do not count
    considered = [status for status in statuses if status != SignatureLinkStatus.REVOCADO]
    exhausted = (
        bool(considered)
        and all(status in (SignatureLinkStatus.EXPIRADO, SignatureLinkStatus.COMPLETADO) for status in considered)
        and SignatureLinkStatus.EXPIRADO in considered
    )

    expired = False
    sale = db.session.get(Sale, sale_id)
    if exhausted and sale is not None and sale.status not in PROTECTED_SALE_STATUSES:
        previous = sale.status
        expired = (
            db.session.execute(
                update(Sale)
                .where(Sale.id == sale_id, Sale.status == previous)
                .values(status=SaleStatus.EXPIRADO, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            == 1
        )
        if expired:
            db.session.add(
                SaleStatusHistory(
                    org_id=sale.org_id,
                    sale_id=sale_id,
                    from_status=previous.value,
                    to_status=SaleStatus.EXPIRADO.value,
                    note="Enlaces de firma vencidos",
                    changed_at=now,
                )
            )
    refresh_signature_aggregate(sale_id)
    db.session.commit()
    return expired


def run_expiration_sweep(now: datetime | None = None) -> SweepResult:
    now = now or utcnow()
    result = SweepResult()
    candidate_ids = [
        link_id
        for (link_id,) in db.session.query(SignatureLink.id)
        .filter(SignatureLink.status.in_(LINK_OPEN_STATUSES), SignatureLink.expires_at < now)
        .order_by(SignatureLink.id.asc())
    ]

    touched_sales: set[int] = set()
    for link_id in candidate_ids:
        try:
            touched = _expire_link(link_id, now)
        except Exception as exc:
            db.session.rollback()
            logger.exception("Sweep failed to expire signature link %s", link_id)
            result.errors.append(f"link {link_id}: {exc}")
            continue
        if touched is None:
            continue
        sale_id, documents = touched
        result.links_expired += 1
        result.documents_updated += documents
        touched_sales.add(sale_id)

    for sale_id in sorted(touched_sales):
        try:
            if _expire_sale_if_exhausted(sale_id, now):
                result.sales_updated += 1
        except Exception as exc:
            db.session.rollback()
            logger.exception("Sweep failed to update sale %s", sale_id)
            result.errors.append(f"sale {sale_id}: {exc}")

    if result.links_expired or result.errors:
        db.session.add(ProcessTrace(action=TRACE_ACTION, details=result.to_dict(), created_at=now))
        db.session.commit()
    logger.info(
        "Expiration sweep: %s link(s), %s document(s), %s sale(s), %s error(s)",
        result.links_expired,
        result.documents_updated,
        result.sales_updated,
        len(result.errors),
    )
    return result
