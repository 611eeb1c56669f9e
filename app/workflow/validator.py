from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from app.core.models import Role, SaleStatus
from app.workflow.conditions import SaleFacts, evaluate
from app.workflow.config import (
    CONDITION_BUILT_IN,
    CONDITION_CUSTOM,
    TransitionRule,
    WorkflowConfig,
)

REASON_NOT_CONFIGURED = "Transicion no permitida en la configuracion"


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    reasons: list[str] = field(default_factory=list)
    rule: TransitionRule | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "reasons": list(self.reasons),
            "rule": self.rule.to_dict() if self.rule else None,
        }


def role_denied_reason(role: Role) -> str:
    return f'El rol "{role.value}" no puede realizar esta transicion'


def can_transition(
    config: WorkflowConfig | None,
    facts: SaleFacts,
    target: SaleStatus,
    role: Role,
    custom_facts: Mapping[str, bool] | None = None,
) -> TransitionCheck:
    if config is None:
        return TransitionCheck(allowed=True)

    rule = config.rule_for(facts.status, target)
    if rule is None:
        return TransitionCheck(allowed=False, reasons=[REASON_NOT_CONFIGURED])

    reasons: list[str] = []
    if rule.allowed_roles and role not in rule.allowed_roles:
        reasons.append(role_denied_reason(role))

    custom_facts = custom_facts or {}
    for condition in rule.conditions:
        if condition.type == CONDITION_BUILT_IN:
            if not evaluate(condition.built_in_key or "", facts):
                reasons.append(condition.label)
        elif condition.type == CONDITION_CUSTOM:
            if custom_facts.get(condition.id) is not True:
                reasons.append(condition.label)

    return TransitionCheck(allowed=not reasons, reasons=reasons, rule=rule)


def available_transitions(
    config: WorkflowConfig | None,
    facts: SaleFacts,
    role: Role,
) -> list[TransitionRule]:
    # affordance only: conditions are not evaluated here
    if config is None:
        return []
    return [
        rule
        for rule in config.rules_from(facts.status)
        if not rule.allowed_roles or role in rule.allowed_roles
    ]


def can_view_state(config: WorkflowConfig | None, state: SaleStatus, role: Role) -> bool:
    if config is None:
        return True
    access = config.access_for(state)
    if access is None:
        return True
    return role in access.visible_to


def can_edit_state(config: WorkflowConfig | None, state: SaleStatus, role: Role) -> bool:
    if config is None:
        return True
    access = config.access_for(state)
    if access is None:
        return True
    return role in access.editable_by
