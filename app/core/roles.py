from __future__ import annotations

from app.core.models import Membership, Role, UserRoleGrant

ROLE_PRIORITY: tuple[Role, ...] = (
    Role.SUPER_ADMIN,
    Role.ADMIN,
    Role.SUPERVISOR,
    Role.AUDITOR,
    Role.FINANCIERO,
    Role.GESTOR,
    Role.VENDEDOR,
)


def _coerce_role(value: str | None) -> Role | None:
    try:
        return Role((value or "").strip().lower())
    except ValueError:
        return None


def resolve_effective_role(user_id: int, org_id: int) -> Role:
    """Pick the highest-priority role a user holds in an organization.

    Explicit grants win over the membership role; a user with neither is
    treated as ``vendedor``. Called once per request; the result is passed
    explicitly to the workflow validator.
    """
    granted = {
        grant.role
        for grant in UserRoleGrant.query.filter_by(user_id=user_id, org_id=org_id).all()
    }
    for role in ROLE_PRIORITY:
        if role in granted:
            return role

    membership = Membership.query.filter_by(user_id=user_id, org_id=org_id).first()
    if membership is not None:
        role = _coerce_role(membership.role)
        if role is not None:
            return role
    return Role.VENDEDOR
