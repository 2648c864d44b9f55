from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from dealgate.enforcement.config import EnforcementPolicyConfig
from dealgate.enforcement.enums import (
    AuthorityLevel,
    DealStage,
    DealStatus,
    DecisionOutcome,
    EnforcementAction,
    EnforcementState,
    HealthBand,
    ReasonCode,
)
from dealgate.enforcement.policy import DEFAULT_RULES, PolicyEngine
from dealgate.enforcement.schemas import ActionRequest
from dealgate.enforcement.signals import SignalSnapshot


CONFIG = EnforcementPolicyConfig()

MUTATING_ACTIONS = [action for action in EnforcementAction if action.is_mutating]


def _snapshot(**overrides) -> SignalSnapshot:
    base = SignalSnapshot(
        deal_id=uuid.UUID("00000000-0000-4000-8000-000000000001"),
        actor_id="ae-1",
        stage=DealStage.NEGOTIATION,
        deal_status=DealStatus.OPEN,
        freeze_state=EnforcementState.OPEN,
        freeze_reason_code=None,
        row_version=3,
        qualification_score=Decimal("85.00"),
        health_total=82,
        health_band=HealthBand.GREEN,
        actor_authority_level=AuthorityLevel.ACCOUNT_EXECUTIVE,
        actor_certification_valid=True,
        taken_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        deal_amount=Decimal("100000.00"),
    )
    return replace(base, **overrides)


def _request(action: EnforcementAction, **params) -> ActionRequest:
    defaults: dict[EnforcementAction, dict] = {
        EnforcementAction.DEAL_UPDATE: {"changes": {"name": "Renamed"}},
        EnforcementAction.DEAL_CLOSE: {"close_status": "CLOSED_WON"},
        EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT: {"discount_percent": "10"},
        EnforcementAction.COMMERCIAL_APPROVE_PRICING: {"price": "95000"},
    }
    payload = {"action": action, **defaults.get(action, {}), **params}
    return ActionRequest.model_validate(payload)


def _evaluate(request: ActionRequest, snapshot: SignalSnapshot):
    return PolicyEngine().evaluate(request, snapshot, CONFIG)


def test_certified_actor_on_green_deal_advances_past_threshold() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE, target_stage="LEGAL"), _snapshot())

    assert CONFIG.threshold_for_stage(DealStage.LEGAL) == Decimal("70")
    assert decision.outcome is DecisionOutcome.ALLOWED
    assert decision.reason_code is ReasonCode.POLICY_SATISFIED
    assert decision.allowed


def test_advance_without_target_moves_to_next_stage() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE), _snapshot(stage=DealStage.PROPOSAL))

    assert decision.outcome is DecisionOutcome.ALLOWED


@pytest.mark.parametrize("action", list(EnforcementAction))
def test_closed_deal_denies_everything(action: EnforcementAction) -> None:
    snapshot = _snapshot(deal_status=DealStatus.CLOSED_LOST)

    decision = _evaluate(_request(action), snapshot)

    assert decision.outcome is DecisionOutcome.DENIED
    assert decision.reason_code is ReasonCode.DEAL_CLOSED


@pytest.mark.parametrize("action", MUTATING_ACTIONS)
def test_frozen_deal_denies_every_mutation(action: EnforcementAction) -> None:
    snapshot = _snapshot(freeze_state=EnforcementState.FROZEN, freeze_reason_code=ReasonCode.MANUAL_HOLD)

    decision = _evaluate(_request(action), snapshot)

    assert decision.outcome is DecisionOutcome.DENIED
    assert decision.reason_code is ReasonCode.DEAL_FROZEN


def test_frozen_check_precedes_black_health() -> None:
    snapshot = _snapshot(
        freeze_state=EnforcementState.FROZEN,
        freeze_reason_code=ReasonCode.DRI_BLACK_AUTO_HALT,
        health_band=HealthBand.BLACK,
    )

    decision = _evaluate(_request(EnforcementAction.DEAL_UPDATE), snapshot)

    assert decision.reason_code is ReasonCode.DEAL_FROZEN


def test_unfreeze_is_allowed_on_frozen_black_deal_for_deal_desk() -> None:
    snapshot = _snapshot(
        freeze_state=EnforcementState.FROZEN,
        freeze_reason_code=ReasonCode.DRI_BLACK_AUTO_HALT,
        health_band=HealthBand.BLACK,
        actor_authority_level=AuthorityLevel.DEAL_DESK,
    )

    decision = _evaluate(_request(EnforcementAction.DEAL_UNFREEZE), snapshot)

    assert decision.outcome is DecisionOutcome.ALLOWED


def test_unfreeze_on_open_deal_is_denied() -> None:
    decision = _evaluate(
        _request(EnforcementAction.DEAL_UNFREEZE),
        _snapshot(actor_authority_level=AuthorityLevel.DEAL_DESK),
    )

    assert decision.outcome is DecisionOutcome.DENIED
    assert decision.reason_code is ReasonCode.DEAL_NOT_FROZEN


@pytest.mark.parametrize("action", MUTATING_ACTIONS)
def test_black_health_halts_every_mutating_action(action: EnforcementAction) -> None:
    snapshot = _snapshot(health_band=HealthBand.BLACK, health_total=10, actor_authority_level=AuthorityLevel.FOUNDER)

    decision = _evaluate(_request(action), snapshot)

    assert decision.outcome is DecisionOutcome.DENIED
    assert decision.reason_code is ReasonCode.DRI_BLACK_AUTO_HALT


@pytest.mark.parametrize("target", ["INTAKE", "NEGOTIATION"])
def test_advance_must_move_forward(target: str) -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE, target_stage=target), _snapshot())

    assert decision.outcome is DecisionOutcome.DENIED
    assert decision.reason_code is ReasonCode.STAGE_TRANSITION_INVALID


def test_advance_past_final_stage_is_invalid() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE), _snapshot(stage=DealStage.COMMIT))

    assert decision.reason_code is ReasonCode.STAGE_TRANSITION_INVALID


def test_discount_above_hard_cap_is_hard_violation() -> None:
    snapshot = _snapshot(actor_authority_level=AuthorityLevel.FOUNDER)

    decision = _evaluate(_request(EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT, discount_percent="45"), snapshot)

    assert decision.outcome is DecisionOutcome.DENIED
    assert decision.reason_code is ReasonCode.POLICY_VIOLATION_HARD


def test_pricing_below_hard_cap_floor_is_hard_violation() -> None:
    snapshot = _snapshot(actor_authority_level=AuthorityLevel.FOUNDER, deal_amount=Decimal("1000.00"))

    decision = _evaluate(_request(EnforcementAction.COMMERCIAL_APPROVE_PRICING, price="500"), snapshot)

    assert decision.reason_code is ReasonCode.POLICY_VIOLATION_HARD


def test_red_health_escalates_stage_advance() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE), _snapshot(health_band=HealthBand.RED))

    assert decision.outcome is DecisionOutcome.REQUIRES_OVERRIDE
    assert decision.reason_code is ReasonCode.DRI_RED_REQUIRES_ESCALATION


def test_red_health_does_not_escalate_field_updates() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_UPDATE), _snapshot(health_band=HealthBand.RED))

    assert decision.outcome is DecisionOutcome.ALLOWED


def test_hard_halt_wins_over_red_escalation() -> None:
    snapshot = _snapshot(health_band=HealthBand.RED)

    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE, target_stage="QUALIFIED"), snapshot)

    assert decision.reason_code is ReasonCode.STAGE_TRANSITION_INVALID


def test_low_authority_requires_override() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_FREEZE), _snapshot())

    assert decision.outcome is DecisionOutcome.REQUIRES_OVERRIDE
    assert decision.reason_code is ReasonCode.AUTHORITY_INSUFFICIENT


def test_missing_profile_fails_closed_on_authority() -> None:
    snapshot = _snapshot(actor_authority_level=AuthorityLevel.NONE, actor_certification_valid=False)

    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE), snapshot)

    assert decision.reason_code is ReasonCode.AUTHORITY_INSUFFICIENT


def test_invalid_certification_requires_override() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE), _snapshot(actor_certification_valid=False))

    assert decision.outcome is DecisionOutcome.REQUIRES_OVERRIDE
    assert decision.reason_code is ReasonCode.CERTIFICATION_INVALID


def test_certification_not_required_for_field_updates() -> None:
    decision = _evaluate(_request(EnforcementAction.DEAL_UPDATE), _snapshot(actor_certification_valid=False))

    assert decision.outcome is DecisionOutcome.ALLOWED


def test_discount_above_soft_cap_needs_escalation_level() -> None:
    manager = _snapshot(actor_authority_level=AuthorityLevel.SALES_MANAGER)
    deal_desk = _snapshot(actor_authority_level=AuthorityLevel.DEAL_DESK)
    request = _request(EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT, discount_percent="30")

    assert _evaluate(request, manager).reason_code is ReasonCode.DISCOUNT_ABOVE_AUTHORITY
    assert _evaluate(request, deal_desk).outcome is DecisionOutcome.ALLOWED


def test_low_qualification_requires_override() -> None:
    snapshot = _snapshot(qualification_score=Decimal("62.50"))

    decision = _evaluate(_request(EnforcementAction.DEAL_ADVANCE_STAGE, target_stage="LEGAL"), snapshot)

    assert decision.outcome is DecisionOutcome.REQUIRES_OVERRIDE
    assert decision.reason_code is ReasonCode.QUALIFICATION_BELOW_THRESHOLD


def test_commercial_actions_use_action_thresholds() -> None:
    snapshot = _snapshot(qualification_score=Decimal("40.00"), actor_authority_level=AuthorityLevel.SALES_MANAGER)

    decision = _evaluate(_request(EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT), snapshot)

    assert decision.reason_code is ReasonCode.QUALIFICATION_BELOW_THRESHOLD


def test_evaluation_is_deterministic() -> None:
    request = _request(EnforcementAction.DEAL_ADVANCE_STAGE, target_stage="LEGAL")
    snapshot = _snapshot(health_band=HealthBand.YELLOW)

    first = _evaluate(request, snapshot)
    second = _evaluate(request, snapshot)

    assert first == second


def test_no_matching_rule_fails_closed(caplog: pytest.LogCaptureFixture) -> None:
    rules_without_default = tuple(rule for rule in DEFAULT_RULES if rule.name != "default")
    engine = PolicyEngine(rules=rules_without_default)
    before = REGISTRY.get_sample_value("enforcement_unclassified_decisions_total") or 0.0

    with caplog.at_level(logging.ERROR, logger="dealgate.enforcement.policy"):
        decision = engine.evaluate(_request(EnforcementAction.DEAL_UPDATE), _snapshot(), CONFIG)

    assert decision.outcome is DecisionOutcome.DENIED
    assert decision.reason_code is ReasonCode.UNCLASSIFIED
    assert REGISTRY.get_sample_value("enforcement_unclassified_decisions_total") == before + 1
    record = next(item for item in caplog.records if item.getMessage() == "policy_unclassified")
    assert record.action == "DEAL_UPDATE"
    assert record.snapshot["request"] == {"changes": {"name": "Renamed"}}
