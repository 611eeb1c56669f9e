from __future__ import annotations

from flask import abort, g, jsonify, request
from flask_login import current_user, login_required

from app.core.errors import SaleNotFoundError, TransitionConflictError, TransitionDeniedError
from app.core.permissions import require_membership, require_role
from app.workflow import workflow_bp
from app.workflow.config import WorkflowConfigError
from app.workflow.services import (
    active_workflow_config,
    sale_status_history,
    sale_workflow_view,
    save_workflow_config,
    transition_sale,
)


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


@workflow_bp.get("/ventas/<int:sale_id>/transiciones")
@login_required
@require_membership
def sale_transitions(sale_id: int):
    try:
        data = sale_workflow_view(sale_id, g.role)
    except SaleNotFoundError:
        abort(404)
    if not data["can_view"]:
        abort(403)
    return jsonify(data)


@workflow_bp.post("/ventas/<int:sale_id>/transicion")
@login_required
@require_membership
def sale_transition(sale_id: int):
    try:
        sale = transition_sale(sale_id, _payload(), g.role, current_user.id)
    except TransitionDeniedError as exc:
        return jsonify({"allowed": False, "reasons": exc.reasons}), exc.status_code
    except TransitionConflictError as exc:
        return jsonify({"error": str(exc)}), exc.status_code
    except SaleNotFoundError:
        abort(404)
    except WorkflowConfigError:
        raise
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(
        {
            "sale_id": sale.id,
            "status": sale.status.value,
            "signature_token_set": bool(sale.signature_token),
        }
    )


@workflow_bp.get("/ventas/<int:sale_id>/historial")
@login_required
@require_membership
def sale_history(sale_id: int):
    try:
        rows = sale_status_history(sale_id)
    except SaleNotFoundError:
        abort(404)
    return jsonify(
        [
            {
                "from_status": row.from_status,
                "to_status": row.to_status,
                "role": row.role,
                "user_id": row.user_id,
                "rule_id": row.rule_id,
                "note": row.note,
                "changed_at": row.changed_at.isoformat(),
            }
            for row in rows
        ]
    )


@workflow_bp.get("/configuracion/workflow")
@login_required
@require_membership
@require_role("admin", "super_admin")
def workflow_config_get():
    config = active_workflow_config(g.org.id)
    return jsonify(
        {
            "governed": config is not None,
            "workflow_config": config.to_dict() if config else None,
        }
    )


@workflow_bp.put("/configuracion/workflow")
@login_required
@require_membership
@require_role("admin", "super_admin")
def workflow_config_put():
    try:
        row = save_workflow_config(_payload(), current_user.id)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"is_active": row.is_active, "workflow_config": row.workflow_config})
