from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal

from dealgate.enforcement.config import EnforcementPolicyConfig
from dealgate.enforcement.enums import (
    DealStage,
    DecisionOutcome,
    EnforcementAction,
    HealthBand,
    ReasonCode,
)
from dealgate.enforcement.schemas import ActionRequest
from dealgate.enforcement.signals import SignalSnapshot
from dealgate.metrics import observe_unclassified_decision


logger = logging.getLogger("dealgate.enforcement.policy")

_PERCENT_PLACES = Decimal("0.01")

_COMMERCIAL_ACTIONS = frozenset(
    {EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT, EnforcementAction.COMMERCIAL_APPROVE_PRICING}
)

RulePredicate = Callable[[ActionRequest, SignalSnapshot, EnforcementPolicyConfig], bool]


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    outcome: DecisionOutcome
    reason_code: ReasonCode
    rule: str

    @property
    def allowed(self) -> bool:
        return self.outcome is DecisionOutcome.ALLOWED


@dataclass(frozen=True, slots=True)
class Rule:
    name: str
    outcome: DecisionOutcome
    reason_code: ReasonCode
    applies: RulePredicate

    def decision(self) -> PolicyDecision:
        return PolicyDecision(outcome=self.outcome, reason_code=self.reason_code, rule=self.name)


def resolve_target_stage(request: ActionRequest, snapshot: SignalSnapshot) -> DealStage | None:
    """Explicit target, or the next stage in order when none was given."""
    if request.target_stage is not None:
        return request.target_stage
    return snapshot.stage.next_stage()


def effective_discount_percent(request: ActionRequest, snapshot: SignalSnapshot) -> Decimal | None:
    if request.action is EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT:
        return request.discount_percent
    if request.action is EnforcementAction.COMMERCIAL_APPROVE_PRICING and request.price is not None:
        amount = snapshot.deal_amount
        if amount is None or amount <= 0 or request.price >= amount:
            return Decimal("0")
        return ((amount - request.price) / amount * 100).quantize(_PERCENT_PLACES)
    return None


def qualification_threshold(
    request: ActionRequest,
    snapshot: SignalSnapshot,
    config: EnforcementPolicyConfig,
) -> Decimal | None:
    if request.action is EnforcementAction.DEAL_ADVANCE_STAGE:
        target = resolve_target_stage(request, snapshot)
        return config.threshold_for_stage(target) if target is not None else None
    return config.threshold_for_action(request.action)


def _deal_closed(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return snapshot.is_closed


def _deal_frozen(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return snapshot.is_frozen and request.action.is_mutating


def _deal_not_frozen(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return request.action is EnforcementAction.DEAL_UNFREEZE and not snapshot.is_frozen


def _health_black(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return request.action.is_mutating and snapshot.health_band is HealthBand.BLACK


def _stage_transition_invalid(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    if request.action is not EnforcementAction.DEAL_ADVANCE_STAGE:
        return False
    target = resolve_target_stage(request, snapshot)
    return target is None or target.position <= snapshot.stage.position


def _hard_commercial_violation(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    discount = effective_discount_percent(request, snapshot)
    return discount is not None and discount > config.discount_hard_cap_percent


def _health_red(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return snapshot.health_band is HealthBand.RED and request.action in config.red_escalated_actions


def _authority_insufficient(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return snapshot.actor_authority_level < config.action_authority[request.action]


def _certification_invalid(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return request.action in config.certification_required_actions and not snapshot.actor_certification_valid


def _discount_above_authority(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    if request.action not in _COMMERCIAL_ACTIONS:
        return False
    discount = effective_discount_percent(request, snapshot)
    return (
        discount is not None
        and discount > config.discount_soft_cap_percent
        and snapshot.actor_authority_level < config.discount_escalation_level
    )


def _qualification_below_threshold(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    threshold = qualification_threshold(request, snapshot, config)
    return threshold is not None and snapshot.qualification_score < threshold


def _always(request: ActionRequest, snapshot: SignalSnapshot, config: EnforcementPolicyConfig) -> bool:
    return True


_DENIED = DecisionOutcome.DENIED
_OVERRIDE = DecisionOutcome.REQUIRES_OVERRIDE

# Order is precedence: hard halts, escalation, authority, qualification, default.
DEFAULT_RULES: tuple[Rule, ...] = (
    Rule("deal_closed", _DENIED, ReasonCode.DEAL_CLOSED, _deal_closed),
    Rule("deal_frozen", _DENIED, ReasonCode.DEAL_FROZEN, _deal_frozen),
    Rule("deal_not_frozen", _DENIED, ReasonCode.DEAL_NOT_FROZEN, _deal_not_frozen),
    Rule("health_black", _DENIED, ReasonCode.DRI_BLACK_AUTO_HALT, _health_black),
    Rule("stage_transition", _DENIED, ReasonCode.STAGE_TRANSITION_INVALID, _stage_transition_invalid),
    Rule("commercial_hard_cap", _DENIED, ReasonCode.POLICY_VIOLATION_HARD, _hard_commercial_violation),
    Rule("health_red", _OVERRIDE, ReasonCode.DRI_RED_REQUIRES_ESCALATION, _health_red),
    Rule("authority", _OVERRIDE, ReasonCode.AUTHORITY_INSUFFICIENT, _authority_insufficient),
    Rule("certification", _OVERRIDE, ReasonCode.CERTIFICATION_INVALID, _certification_invalid),
    Rule("discount_authority", _OVERRIDE, ReasonCode.DISCOUNT_ABOVE_AUTHORITY, _discount_above_authority),
    Rule("qualification", _OVERRIDE, ReasonCode.QUALIFICATION_BELOW_THRESHOLD, _qualification_below_threshold),
    Rule("default", DecisionOutcome.ALLOWED, ReasonCode.POLICY_SATISFIED, _always),
)

UNCLASSIFIED_DECISION = PolicyDecision(
    outcome=DecisionOutcome.DENIED,
    reason_code=ReasonCode.UNCLASSIFIED,
    rule="unclassified",
)


@dataclass(frozen=True, slots=True)
class PolicyEngine:
    rules: Sequence[Rule] = DEFAULT_RULES

    def evaluate(
        self,
        request: ActionRequest,
        snapshot: SignalSnapshot,
        config: EnforcementPolicyConfig,
    ) -> PolicyDecision:
        for rule in self.rules:
            if rule.applies(request, snapshot, config):
                return rule.decision()

        observe_unclassified_decision()
        logger.error(
            "policy_unclassified",
            extra={
                "deal_id": str(snapshot.deal_id),
                "actor_id": snapshot.actor_id,
                "action": request.action.value,
                "snapshot": {**snapshot.to_dict(), "request": request.action_params()},
            },
        )
        return UNCLASSIFIED_DECISION


policy_engine = PolicyEngine()
