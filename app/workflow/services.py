from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Mapping

from flask import current_app
from sqlalchemy import update

from app.core.errors import (
    SaleNotFoundError,
    SignatureValidationError,
    TransitionConflictError,
    TransitionDeniedError,
)
from app.core.extensions import db
from app.core.models import (
    CompanyWorkflowConfig,
    LINK_OPEN_STATUSES,
    Role,
    Sale,
    SaleStatus,
    SaleStatusHistory,
    SignatureLink,
    as_utc,
    utcnow,
)
from app.core.tenancy import org_id
from app.signatures.links import create_links_for_sale, sale_signatures_complete
from app.workflow.conditions import SaleFacts
from app.workflow.config import (
    DEFAULT_WORKFLOW_CONFIG,
    WorkflowConfig,
    WorkflowConfigError,
    parse_status,
    parse_workflow_config,
)
from app.workflow.validator import (
    TransitionCheck,
    available_transitions,
    can_edit_state,
    can_transition,
    can_view_state,
)

logger = logging.getLogger(__name__)

REASON_NOTE_REQUIRED = "Se requiere una nota para esta transicion"

# entering these states mints signature links when none are live
AUTO_MINT_STATES = {SaleStatus.LISTO_PARA_ENVIAR, SaleStatus.ENVIADO}


def active_workflow_config(organization_id: int) -> WorkflowConfig | None:
    """Load the workflow that governs an organization's sales.

    ``None`` means the tenant is ungoverned and every transition is allowed.
    Tenants without an active, non-empty configuration fall back according to
    ``WORKFLOW_FALLBACK``.
    """
    row = CompanyWorkflowConfig.query.filter_by(org_id=organization_id).first()
    if row is None or not row.is_active or not row.workflow_config:
        if current_app.config.get("WORKFLOW_FALLBACK") == "default_rules":
            return DEFAULT_WORKFLOW_CONFIG
        return None
    return parse_workflow_config(row.workflow_config)


def sale_by_id(sale_id: int) -> Sale:
    sale = Sale.query.filter_by(org_id=org_id(), id=sale_id).first()
    if sale is None:
        raise SaleNotFoundError()
    return sale


def sale_facts(sale: Sale) -> SaleFacts:
    """Facts for condition checks, with the signature aggregate read from the links."""
    return replace(SaleFacts.from_sale(sale), all_signatures_completed=sale_signatures_complete(sale.id))


def validate_transition(
    sale: Sale,
    target: SaleStatus,
    role: Role,
    custom_facts: Mapping[str, bool] | None = None,
) -> TransitionCheck:
    config = active_workflow_config(sale.org_id)
    return can_transition(config, sale_facts(sale), target, role, custom_facts)


def sale_workflow_view(sale_id: int, role: Role) -> dict[str, Any]:
    sale = sale_by_id(sale_id)
    config = active_workflow_config(sale.org_id)
    facts = sale_facts(sale)
    transitions = []
    for rule in available_transitions(config, facts, role):
        check = can_transition(config, facts, rule.to_status, role)
        transitions.append(
            {
                "to_status": rule.to_status.value,
                "require_note": rule.require_note,
                "allowed": check.allowed,
                "reasons": check.reasons,
            }
        )
    return {
        "sale_id": sale.id,
        "status": sale.status.value,
        "governed": config is not None,
        "can_view": can_view_state(config, sale.status, role),
        "can_edit": can_edit_state(config, sale.status, role),
        "transitions": transitions,
    }


def _has_live_links(sale_id: int) -> bool:
    now = utcnow()
    for link in SignatureLink.query.filter(
        SignatureLink.sale_id == sale_id,
        SignatureLink.status.in_(LINK_OPEN_STATUSES),
    ):
        if as_utc(link.expires_at) >= now:
            return True
    return False


def transition_sale(
    sale_id: int,
    payload: dict[str, Any],
    role: Role,
    user_id: int | None,
) -> Sale:
    sale = sale_by_id(sale_id)
    raw_target = payload.get("target") or payload.get("to_status")
    try:
        target = parse_status(raw_target)
    except WorkflowConfigError:
        raise ValueError(f"Estado destino desconocido: {raw_target!r}") from None
    note = str(payload.get("note") or "").strip()
    custom_facts = payload.get("custom_facts") or {}
    if not isinstance(custom_facts, dict):
        raise ValueError("custom_facts debe ser un objeto")

    check = validate_transition(sale, target, role, custom_facts)
    reasons = list(check.reasons)
    if check.allowed and check.rule is not None and check.rule.require_note and not note:
        reasons.append(REASON_NOTE_REQUIRED)
    if reasons:
        logger.info(
            "Transition %s -> %s denied for sale %s (role=%s): %s",
            sale.status.value,
            target.value,
            sale.id,
            role.value,
            reasons,
        )
        raise TransitionDeniedError(reasons)

    previous = sale.status
    result = db.session.execute(
        update(Sale)
        .where(Sale.id == sale.id, Sale.status == previous)
        .values(status=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise TransitionConflictError()

    db.session.add(
        SaleStatusHistory(
            org_id=sale.org_id,
            sale_id=sale.id,
            from_status=previous.value,
            to_status=target.value,
            role=role.value,
            user_id=user_id,
            rule_id=check.rule.id if check.rule else None,
            note=note,
        )
    )
    db.session.commit()
    logger.info("Sale %s moved %s -> %s by user %s", sale.id, previous.value, target.value, user_id)

    if target in AUTO_MINT_STATES and not _has_live_links(sale.id):
        try:
            create_links_for_sale(sale.id, user_id)
        except SignatureValidationError as exc:
            logger.warning("Sale %s entered %s without signature links: %s", sale.id, target.value, exc)

    db.session.refresh(sale)
    return sale


def sale_status_history(sale_id: int) -> list[SaleStatusHistory]:
    sale = sale_by_id(sale_id)
    return (
        SaleStatusHistory.query.filter_by(sale_id=sale.id)
        .order_by(SaleStatusHistory.id.asc())
        .all()
    )


def save_workflow_config(payload: dict[str, Any], user_id: int | None) -> CompanyWorkflowConfig:
    raw = payload.get("workflow_config")
    if not isinstance(raw, dict):
        raise ValueError("workflow_config debe ser un objeto")
    parsed = parse_workflow_config(raw)

    row = CompanyWorkflowConfig.query.filter_by(org_id=org_id()).first()
    if row is None:
        row = CompanyWorkflowConfig(org_id=org_id())
        db.session.add(row)
    row.workflow_config = parsed.to_dict()
    row.is_active = bool(payload.get("is_active", True))
    row.updated_by_user_id = user_id
    db.session.commit()
    logger.info("Workflow config updated for org %s (active=%s)", row.org_id, row.is_active)
    return row
