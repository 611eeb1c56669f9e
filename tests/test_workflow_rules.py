from __future__ import annotations

import logging

import pytest

from app.core.extensions import db
from app.core.models import Role, SaleStatus, User, UserRoleGrant
from app.core.roles import resolve_effective_role
from app.workflow.conditions import SaleFacts, evaluate
from app.workflow.config import (
    DEFAULT_WORKFLOW_CONFIG,
    WorkflowConfigError,
    parse_workflow_config,
)
from app.workflow.validator import (
    REASON_NOT_CONFIGURED,
    available_transitions,
    can_edit_state,
    can_transition,
    can_view_state,
)


def _config(conditions=None, roles=("vendedor", "admin"), require_note=False):
    return parse_workflow_config(
        {
            "transitions": [
                {
                    "id": "r1",
                    "from": "borrador",
                    "to": "enviado",
                    "allowed_roles": list(roles),
                    "require_note": require_note,
                    "conditions": conditions
                    if conditions is not None
                    else [
                        {"id": "c1", "type": "built_in", "built_in_key": "has_client", "label": "Cliente asignado"},
                        {"id": "c2", "type": "built_in", "built_in_key": "has_plan", "label": "Plan seleccionado"},
                    ],
                }
            ]
        }
    )


def test_missing_plan_blocks_transition_with_condition_label():
    facts = SaleFacts(status=SaleStatus.BORRADOR, client_id=10, plan_id=None)
    check = can_transition(_config(), facts, SaleStatus.ENVIADO, Role.VENDEDOR)
    assert check.allowed is False
    assert check.reasons == ["Plan seleccionado"]


def test_role_outside_rule_is_denied_and_conditions_still_reported():
    facts = SaleFacts(status=SaleStatus.BORRADOR, client_id=None, plan_id=3)
    check = can_transition(_config(), facts, SaleStatus.ENVIADO, Role.AUDITOR)
    assert check.allowed is False
    assert check.reasons == ['El rol "auditor" no puede realizar esta transicion', "Cliente asignado"]


def test_unconfigured_pair_is_denied():
    facts = SaleFacts(status=SaleStatus.BORRADOR, client_id=1, plan_id=1)
    check = can_transition(_config(), facts, SaleStatus.FIRMADO, Role.ADMIN)
    assert check.allowed is False
    assert check.reasons == [REASON_NOT_CONFIGURED]
    assert check.rule is None


def test_no_configuration_allows_everything():
    facts = SaleFacts(status=SaleStatus.BORRADOR)
    check = can_transition(None, facts, SaleStatus.COMPLETADO, Role.VENDEDOR)
    assert check.allowed is True
    assert check.reasons == []


def test_unknown_built_in_key_passes_and_is_logged(caplog):
    config = _config(
        conditions=[{"id": "c9", "type": "built_in", "built_in_key": "has_future_thing", "label": "Futuro"}]
    )
    facts = SaleFacts(status=SaleStatus.BORRADOR)
    with caplog.at_level(logging.WARNING, logger="app.workflow.conditions"):
        check = can_transition(config, facts, SaleStatus.ENVIADO, Role.VENDEDOR)
    assert check.allowed is True
    assert "has_future_thing" in caplog.text


def test_custom_condition_needs_explicit_true_fact():
    config = _config(conditions=[{"id": "firma-papel", "type": "custom", "label": "Copia en papel recibida"}])
    facts = SaleFacts(status=SaleStatus.BORRADOR)

    denied = can_transition(config, facts, SaleStatus.ENVIADO, Role.ADMIN)
    assert denied.reasons == ["Copia en papel recibida"]

    truthy_but_not_true = can_transition(config, facts, SaleStatus.ENVIADO, Role.ADMIN, {"firma-papel": 1})
    assert truthy_but_not_true.allowed is False

    allowed = can_transition(config, facts, SaleStatus.ENVIADO, Role.ADMIN, {"firma-papel": True})
    assert allowed.allowed is True


def test_validator_is_deterministic():
    facts = SaleFacts(status=SaleStatus.BORRADOR, client_id=1)
    first = can_transition(_config(), facts, SaleStatus.ENVIADO, Role.VENDEDOR)
    second = can_transition(_config(), facts, SaleStatus.ENVIADO, Role.VENDEDOR)
    assert first == second


def test_duplicate_rule_is_rejected_at_load():
    raw = {
        "transitions": [
            {"id": "a", "from": "borrador", "to": "enviado", "allowed_roles": ["vendedor"]},
            {"id": "b", "from": "borrador", "to": "enviado", "allowed_roles": ["admin"]},
        ]
    }
    with pytest.raises(WorkflowConfigError):
        parse_workflow_config(raw)


@pytest.mark.parametrize(
    "raw",
    [
        {"transitions": [{"from": "borrador", "to": "inexistente"}]},
        {"transitions": [{"from": "borrador", "to": "enviado", "allowed_roles": ["jefe"]}]},
        {"transitions": [{"from": "borrador", "to": "enviado", "conditions": [{"id": "x", "type": "magic"}]}]},
        ["not", "an", "object"],
    ],
)
def test_malformed_configuration_raises(raw):
    with pytest.raises(WorkflowConfigError):
        parse_workflow_config(raw)


def test_default_config_survives_json_storage():
    assert parse_workflow_config(DEFAULT_WORKFLOW_CONFIG.to_dict()) == DEFAULT_WORKFLOW_CONFIG


def test_available_transitions_filters_by_role_only():
    facts = SaleFacts(status=SaleStatus.EN_AUDITORIA)
    targets = {rule.to_status for rule in available_transitions(DEFAULT_WORKFLOW_CONFIG, facts, Role.AUDITOR)}
    assert targets == {SaleStatus.APROBADO_PARA_TEMPLATES, SaleStatus.RECHAZADO}
    assert available_transitions(DEFAULT_WORKFLOW_CONFIG, facts, Role.VENDEDOR) == []


def test_default_signing_rules_require_token_and_complete_signatures():
    approved = SaleFacts(status=SaleStatus.APROBADO_PARA_TEMPLATES)
    check = can_transition(DEFAULT_WORKFLOW_CONFIG, approved, SaleStatus.ENVIADO, Role.VENDEDOR)
    assert check.reasons == ["Link de firma generado"]

    sent = SaleFacts(status=SaleStatus.ENVIADO, all_signatures_completed=False)
    check = can_transition(DEFAULT_WORKFLOW_CONFIG, sent, SaleStatus.FIRMADO, Role.VENDEDOR)
    assert check.reasons == ["Firmas completadas"]


def test_state_access_rules():
    assert can_view_state(DEFAULT_WORKFLOW_CONFIG, SaleStatus.ENVIADO, Role.VENDEDOR) is True
    assert can_edit_state(DEFAULT_WORKFLOW_CONFIG, SaleStatus.ENVIADO, Role.VENDEDOR) is False
    assert can_edit_state(DEFAULT_WORKFLOW_CONFIG, SaleStatus.ENVIADO, Role.ADMIN) is True
    assert can_view_state(DEFAULT_WORKFLOW_CONFIG, SaleStatus.BORRADOR, Role.FINANCIERO) is False
    # states without an access entry are open
    assert can_edit_state(DEFAULT_WORKFLOW_CONFIG, SaleStatus.ESPERANDO_DDJJ, Role.FINANCIERO) is True


def test_has_beneficiaries_prefers_declared_count():
    assert evaluate("has_beneficiaries", SaleFacts(status=None, adherents_count=0, beneficiaries_count=2)) is False
    assert evaluate("has_beneficiaries", SaleFacts(status=None, adherents_count=None, beneficiaries_count=2)) is True


def test_effective_role_prefers_highest_grant(app, demo_org):
    vendedor = User.query.filter_by(email="vendedor@prepaga.local").first()
    assert resolve_effective_role(vendedor.id, demo_org.id) == Role.VENDEDOR

    db.session.add_all(
        [
            UserRoleGrant(user_id=vendedor.id, org_id=demo_org.id, role=Role.GESTOR),
            UserRoleGrant(user_id=vendedor.id, org_id=demo_org.id, role=Role.SUPERVISOR),
        ]
    )
    db.session.commit()
    assert resolve_effective_role(vendedor.id, demo_org.id) == Role.SUPERVISOR


def test_effective_role_defaults_to_vendedor_without_membership(app, demo_org):
    stranger = User(email="nadie@example.com", full_name="Nadie", password_hash="x")
    db.session.add(stranger)
    db.session.commit()
    assert resolve_effective_role(stranger.id, demo_org.id) == Role.VENDEDOR
