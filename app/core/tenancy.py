from __future__ import annotations

from flask import abort, g
from flask_login import current_user

from app.core.models import Membership
from app.core.roles import resolve_effective_role


def load_tenant_context() -> None:
    g.org = None
    g.membership = None
    g.role = None
    if not current_user.is_authenticated:
        return
    membership = (
        Membership.query.filter_by(user_id=current_user.id)
        .order_by(Membership.id.asc())
        .first()
    )
    if membership is None:
        abort(403)
    g.org = membership.organization
    g.membership = membership
    g.role = resolve_effective_role(current_user.id, membership.org_id)


def org_id() -> int:
    return g.org.id
