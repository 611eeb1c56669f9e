from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from app.core.models import Sale, SaleStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaleFacts:
    """Snapshot of the sale fields the built-in conditions look at."""

    status: SaleStatus | None
    client_id: int | None = None
    plan_id: int | None = None
    template_id: int | None = None
    contract_pdf_url: str | None = None
    signature_token: str | None = None
    all_signatures_completed: bool | None = None
    audit_status: str | None = None
    adherents_count: int | None = None
    beneficiaries_count: int | None = None
    template_responses_count: int = 0

    @classmethod
    def from_sale(cls, sale: Sale) -> "SaleFacts":
        return cls(
            status=sale.status,
            client_id=sale.client_id,
            plan_id=sale.plan_id,
            template_id=sale.template_id,
            contract_pdf_url=sale.contract_pdf_url,
            signature_token=sale.signature_token,
            all_signatures_completed=sale.all_signatures_completed,
            audit_status=sale.audit_status,
            adherents_count=sale.adherents_count,
            beneficiaries_count=len(sale.beneficiaries),
            template_responses_count=len(sale.template_responses),
        )


def _has_beneficiaries(facts: SaleFacts) -> bool:
    if facts.adherents_count is not None:
        return facts.adherents_count > 0
    return (facts.beneficiaries_count or 0) > 0


BUILT_IN_CONDITIONS: dict[str, tuple[str, Callable[[SaleFacts], bool]]] = {
    "has_client": ("Cliente asignado", lambda f: bool(f.client_id)),
    "has_plan": ("Plan seleccionado", lambda f: bool(f.plan_id)),
    "has_beneficiaries": ("Adherentes cargados", _has_beneficiaries),
    "has_documents": ("Documentos generados", lambda f: bool(f.contract_pdf_url)),
    "has_template": ("Template asignado", lambda f: bool(f.template_id)),
    "has_ddjj": ("DDJJ completada", lambda f: f.template_responses_count > 0),
    "audit_approved": ("Auditoria aprobada", lambda f: f.audit_status == "aprobado"),
    "all_signatures_complete": ("Firmas completadas", lambda f: f.all_signatures_completed is True),
    "has_signature_token": ("Link de firma generado", lambda f: bool(f.signature_token)),
}


def evaluate(key: str, facts: SaleFacts) -> bool:
    # Unknown keys pass: configuration may reference conditions newer than this code.
    entry = BUILT_IN_CONDITIONS.get(key)
    if entry is None:
        logger.warning("Unknown built-in condition key %r treated as satisfied", key)
        return True
    return entry[1](facts)


def built_in_label(key: str) -> str:
    entry = BUILT_IN_CONDITIONS.get(key)
    return entry[0] if entry else key
