"""
Typed workflow configuration.

A tenant's workflow is stored as JSON (``company_workflow_config.workflow_config``)
and parsed once per request into the frozen dataclasses below. The validator in
``app.workflow.validator`` is a pure function over these structures.

JSON shape::

    {
      "transitions": [
        {"id": "...", "from": "borrador", "to": "en_auditoria",
         "allowed_roles": ["vendedor"], "require_note": false,
         "conditions": [{"id": "c1", "type": "built_in",
                         "built_in_key": "has_client", "label": "Cliente asignado"}]}
      ],
      "state_access": [
        {"state": "borrador", "visible_to": ["vendedor"], "editable_by": ["vendedor"]}
      ]
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from app.core.models import Role, SaleStatus


class WorkflowConfigError(ValueError):
    """Malformed or ambiguous workflow configuration."""


CONDITION_BUILT_IN = "built_in"
CONDITION_CUSTOM = "custom"


@dataclass(frozen=True)
class Condition:
    id: str
    type: str
    label: str
    built_in_key: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "type": self.type, "label": self.label}
        if self.built_in_key:
            data["built_in_key"] = self.built_in_key
        if self.description:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class TransitionRule:
    id: str
    from_status: SaleStatus
    to_status: SaleStatus
    allowed_roles: frozenset[Role] = frozenset()
    conditions: tuple[Condition, ...] = ()
    require_note: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.from_status.value,
            "to": self.to_status.value,
            "allowed_roles": sorted(role.value for role in self.allowed_roles),
            "conditions": [condition.to_dict() for condition in self.conditions],
            "require_note": self.require_note,
        }


@dataclass(frozen=True)
class StateAccessRule:
    state: SaleStatus
    visible_to: frozenset[Role] = frozenset()
    editable_by: frozenset[Role] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "visible_to": sorted(role.value for role in self.visible_to),
            "editable_by": sorted(role.value for role in self.editable_by),
        }


@dataclass(frozen=True)
class WorkflowConfig:
    transitions: tuple[TransitionRule, ...] = ()
    state_access: tuple[StateAccessRule, ...] = ()
    _by_pair: dict[tuple[SaleStatus, SaleStatus], TransitionRule] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _access: dict[SaleStatus, StateAccessRule] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        for rule in self.transitions:
            key = (rule.from_status, rule.to_status)
            if key in self._by_pair:
                raise WorkflowConfigError(
                    f"Regla ambigua: {rule.from_status.value} -> {rule.to_status.value} aparece mas de una vez"
                )
            self._by_pair[key] = rule
        for access in self.state_access:
            if access.state in self._access:
                raise WorkflowConfigError(f"Acceso duplicado para el estado {access.state.value}")
            self._access[access.state] = access

    def rule_for(self, from_status: SaleStatus | None, to_status: SaleStatus) -> TransitionRule | None:
        if from_status is None:
            return None
        return self._by_pair.get((from_status, to_status))

    def rules_from(self, from_status: SaleStatus | None) -> list[TransitionRule]:
        return [rule for rule in self.transitions if rule.from_status == from_status]

    def access_for(self, state: SaleStatus) -> StateAccessRule | None:
        return self._access.get(state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transitions": [rule.to_dict() for rule in self.transitions],
            "state_access": [access.to_dict() for access in self.state_access],
        }


def parse_status(value: Any) -> SaleStatus:
    if isinstance(value, SaleStatus):
        return value
    try:
        return SaleStatus(str(value or "").strip().lower())
    except ValueError as exc:
        raise WorkflowConfigError(f"Estado desconocido: {value!r}") from exc


def parse_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value or "").strip().lower())
    except ValueError as exc:
        raise WorkflowConfigError(f"Rol desconocido: {value!r}") from exc


def _roles(values: Iterable[Any] | None) -> frozenset[Role]:
    return frozenset(parse_role(value) for value in (values or []))


def _parse_condition(raw: dict[str, Any]) -> Condition:
    cond_type = (raw.get("type") or "").strip()
    if cond_type not in {CONDITION_BUILT_IN, CONDITION_CUSTOM}:
        raise WorkflowConfigError(f"Tipo de condicion invalido: {cond_type!r}")
    cond_id = str(raw.get("id") or "").strip()
    if not cond_id:
        raise WorkflowConfigError("Condicion sin id")
    built_in_key = (raw.get("built_in_key") or "").strip() or None
    if cond_type == CONDITION_BUILT_IN and not built_in_key:
        raise WorkflowConfigError(f"Condicion {cond_id} sin built_in_key")
    return Condition(
        id=cond_id,
        type=cond_type,
        label=(raw.get("label") or built_in_key or cond_id).strip(),
        built_in_key=built_in_key,
        description=(raw.get("description") or "").strip(),
    )


def parse_workflow_config(raw: dict[str, Any] | None) -> WorkflowConfig:
    if not isinstance(raw, dict):
        raise WorkflowConfigError("La configuracion de workflow debe ser un objeto")
    transitions = []
    for index, item in enumerate(raw.get("transitions") or []):
        if not isinstance(item, dict):
            raise WorkflowConfigError(f"Transicion #{index} invalida")
        transitions.append(
            TransitionRule(
                id=str(item.get("id") or f"rule-{index + 1}"),
                from_status=parse_status(item.get("from")),
                to_status=parse_status(item.get("to")),
                allowed_roles=_roles(item.get("allowed_roles")),
                conditions=tuple(_parse_condition(c) for c in item.get("conditions") or []),
                require_note=bool(item.get("require_note", False)),
            )
        )
    state_access = [
        StateAccessRule(
            state=parse_status(item.get("state")),
            visible_to=_roles(item.get("visible_to")),
            editable_by=_roles(item.get("editable_by")),
        )
        for item in raw.get("state_access") or []
    ]
    return WorkflowConfig(transitions=tuple(transitions), state_access=tuple(state_access))


def _built_in(cond_id: str, key: str, label: str) -> Condition:
    return Condition(id=cond_id, type=CONDITION_BUILT_IN, built_in_key=key, label=label)


_SELLERS = frozenset({Role.VENDEDOR, Role.GESTOR, Role.ADMIN, Role.SUPER_ADMIN})
_AUDITORS = frozenset({Role.AUDITOR, Role.ADMIN, Role.SUPER_ADMIN})
_ADMINS = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
_VIEWERS = frozenset({Role.VENDEDOR, Role.GESTOR, Role.SUPERVISOR, Role.AUDITOR, Role.ADMIN, Role.SUPER_ADMIN})

DEFAULT_WORKFLOW_CONFIG = WorkflowConfig(
    transitions=(
        TransitionRule(
            id="default-1",
            from_status=SaleStatus.BORRADOR,
            to_status=SaleStatus.EN_AUDITORIA,
            allowed_roles=_SELLERS,
            conditions=(
                _built_in("dc-1", "has_client", "Cliente asignado"),
                _built_in("dc-2", "has_plan", "Plan seleccionado"),
            ),
        ),
        TransitionRule(
            id="default-2",
            from_status=SaleStatus.EN_AUDITORIA,
            to_status=SaleStatus.APROBADO_PARA_TEMPLATES,
            allowed_roles=_AUDITORS,
        ),
        TransitionRule(
            id="default-3",
            from_status=SaleStatus.EN_AUDITORIA,
            to_status=SaleStatus.RECHAZADO,
            allowed_roles=_AUDITORS,
            require_note=True,
        ),
        TransitionRule(
            id="default-4",
            from_status=SaleStatus.RECHAZADO,
            to_status=SaleStatus.BORRADOR,
            allowed_roles=_SELLERS,
        ),
        TransitionRule(
            id="default-5",
            from_status=SaleStatus.APROBADO_PARA_TEMPLATES,
            to_status=SaleStatus.ENVIADO,
            allowed_roles=_SELLERS,
            conditions=(_built_in("dc-3", "has_signature_token", "Link de firma generado"),),
        ),
        TransitionRule(
            id="default-6",
            from_status=SaleStatus.ENVIADO,
            to_status=SaleStatus.FIRMADO,
            allowed_roles=_SELLERS,
            conditions=(_built_in("dc-4", "all_signatures_complete", "Firmas completadas"),),
        ),
        TransitionRule(
            id="default-7",
            from_status=SaleStatus.FIRMADO,
            to_status=SaleStatus.COMPLETADO,
            allowed_roles=_ADMINS,
        ),
        TransitionRule(
            id="default-8",
            from_status=SaleStatus.BORRADOR,
            to_status=SaleStatus.CANCELADO,
            allowed_roles=_SELLERS,
            require_note=True,
        ),
        TransitionRule(
            id="default-9",
            from_status=SaleStatus.ENVIADO,
            to_status=SaleStatus.CANCELADO,
            allowed_roles=_ADMINS,
            require_note=True,
        ),
    ),
    state_access=(
        StateAccessRule(SaleStatus.BORRADOR, _VIEWERS, _SELLERS),
        StateAccessRule(SaleStatus.EN_AUDITORIA, _VIEWERS, _AUDITORS),
        StateAccessRule(SaleStatus.RECHAZADO, _VIEWERS, _SELLERS),
        StateAccessRule(SaleStatus.APROBADO_PARA_TEMPLATES, _VIEWERS, _SELLERS),
        StateAccessRule(SaleStatus.ENVIADO, _VIEWERS, _ADMINS),
        StateAccessRule(SaleStatus.FIRMADO, _VIEWERS, _ADMINS),
        StateAccessRule(SaleStatus.COMPLETADO, _VIEWERS, frozenset()),
        StateAccessRule(SaleStatus.CANCELADO, _VIEWERS, frozenset()),
    ),
)
