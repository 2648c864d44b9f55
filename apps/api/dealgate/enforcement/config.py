from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from dealgate.core.config import get_settings
from dealgate.enforcement.enums import (
    HARD_HALT_REASONS,
    OVERRIDABLE_REASONS,
    STAGE_ORDER,
    AuthorityLevel,
    DealStage,
    EnforcementAction,
    EvidenceCategory,
    EvidenceStatus,
    HealthBand,
    ReasonCode,
)
from dealgate.enforcement.errors import PolicyConfigError


logger = logging.getLogger("dealgate.enforcement.config")

_AUTO_FREEZE_ELIGIBLE = HARD_HALT_REASONS - {
    ReasonCode.DEAL_CLOSED,
    ReasonCode.DEAL_FROZEN,
    ReasonCode.DEAL_NOT_FROZEN,
}


def _default_category_weights() -> dict[EvidenceCategory, int]:
    return {
        EvidenceCategory.METRICS: 15,
        EvidenceCategory.ECONOMIC_BUYER: 15,
        EvidenceCategory.DECISION_CRITERIA: 10,
        EvidenceCategory.DECISION_PROCESS: 10,
        EvidenceCategory.PAPER_PROCESS: 10,
        EvidenceCategory.IDENTIFY_PAIN: 15,
        EvidenceCategory.CHAMPION: 15,
        EvidenceCategory.COMPETITION: 10,
    }


def _default_confidence_multipliers() -> dict[EvidenceStatus, Decimal]:
    return {
        EvidenceStatus.MISSING: Decimal("0"),
        EvidenceStatus.CLAIMED: Decimal("0.5"),
        EvidenceStatus.EVIDENCED: Decimal("0.75"),
        EvidenceStatus.CONFIRMED: Decimal("1.0"),
    }


def _default_stage_thresholds() -> dict[DealStage, Decimal]:
    return {
        DealStage.INTAKE: Decimal("0"),
        DealStage.QUALIFIED: Decimal("20"),
        DealStage.DISCOVERY: Decimal("30"),
        DealStage.SOLUTION_FIT: Decimal("40"),
        DealStage.POV: Decimal("50"),
        DealStage.PROPOSAL: Decimal("60"),
        DealStage.NEGOTIATION: Decimal("65"),
        DealStage.LEGAL: Decimal("70"),
        DealStage.PROCUREMENT: Decimal("70"),
        DealStage.COMMIT: Decimal("80"),
    }


def _default_action_authority() -> dict[EnforcementAction, AuthorityLevel]:
    return {
        EnforcementAction.DEAL_ADVANCE_STAGE: AuthorityLevel.ACCOUNT_EXECUTIVE,
        EnforcementAction.DEAL_UPDATE: AuthorityLevel.ACCOUNT_EXECUTIVE,
        EnforcementAction.DEAL_CLOSE: AuthorityLevel.ACCOUNT_EXECUTIVE,
        EnforcementAction.DEAL_FREEZE: AuthorityLevel.DEAL_DESK,
        EnforcementAction.DEAL_UNFREEZE: AuthorityLevel.DEAL_DESK,
        EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT: AuthorityLevel.SALES_MANAGER,
        EnforcementAction.COMMERCIAL_APPROVE_PRICING: AuthorityLevel.SALES_MANAGER,
    }


def _default_override_authority() -> dict[ReasonCode, AuthorityLevel]:
    return {
        ReasonCode.DRI_RED_REQUIRES_ESCALATION: AuthorityLevel.SALES_MANAGER,
        ReasonCode.AUTHORITY_INSUFFICIENT: AuthorityLevel.ACCOUNT_EXECUTIVE,
        ReasonCode.CERTIFICATION_INVALID: AuthorityLevel.ACCOUNT_EXECUTIVE,
        ReasonCode.DISCOUNT_ABOVE_AUTHORITY: AuthorityLevel.SALES_MANAGER,
        ReasonCode.QUALIFICATION_BELOW_THRESHOLD: AuthorityLevel.ACCOUNT_EXECUTIVE,
    }


_GATED_ACTIONS = frozenset(
    {
        EnforcementAction.DEAL_ADVANCE_STAGE,
        EnforcementAction.DEAL_CLOSE,
        EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT,
        EnforcementAction.COMMERCIAL_APPROVE_PRICING,
    }
)


class HealthBandFloors(BaseModel):
    """Lowest total (inclusive) for each band; anything below ``red`` is BLACK."""

    model_config = ConfigDict(frozen=True)

    green: int = Field(default=75, ge=1, le=100)
    yellow: int = Field(default=50, ge=1, le=100)
    red: int = Field(default=25, ge=1, le=100)

    @model_validator(mode="after")
    def _strictly_descending(self) -> HealthBandFloors:
        if not self.green > self.yellow > self.red:
            raise ValueError("health band floors must satisfy green > yellow > red")
        return self

    def band_for(self, total: int) -> HealthBand:
        if total >= self.green:
            return HealthBand.GREEN
        if total >= self.yellow:
            return HealthBand.YELLOW
        if total >= self.red:
            return HealthBand.RED
        return HealthBand.BLACK


class EnforcementPolicyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_weights: dict[EvidenceCategory, int] = Field(default_factory=_default_category_weights)
    confidence_multipliers: dict[EvidenceStatus, Decimal] = Field(default_factory=_default_confidence_multipliers)
    health_band_floors: HealthBandFloors = Field(default_factory=HealthBandFloors)
    stage_thresholds: dict[DealStage, Decimal] = Field(default_factory=_default_stage_thresholds)
    action_thresholds: dict[EnforcementAction, Decimal] = Field(
        default_factory=lambda: {
            EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT: Decimal("50"),
            EnforcementAction.COMMERCIAL_APPROVE_PRICING: Decimal("50"),
        }
    )
    action_authority: dict[EnforcementAction, AuthorityLevel] = Field(default_factory=_default_action_authority)
    certification_required_actions: frozenset[EnforcementAction] = Field(default=_GATED_ACTIONS)
    red_escalated_actions: frozenset[EnforcementAction] = Field(default=_GATED_ACTIONS)
    discount_soft_cap_percent: Decimal = Field(default=Decimal("20"), ge=Decimal("0"), le=Decimal("100"))
    discount_hard_cap_percent: Decimal = Field(default=Decimal("40"), ge=Decimal("0"), le=Decimal("100"))
    discount_escalation_level: AuthorityLevel = AuthorityLevel.DEAL_DESK
    override_authority: dict[ReasonCode, AuthorityLevel] = Field(default_factory=_default_override_authority)
    override_window_hours: int = Field(default=72, ge=1, le=24 * 30)
    auto_freeze_reason_codes: frozenset[ReasonCode] = Field(
        default=frozenset({ReasonCode.DRI_BLACK_AUTO_HALT, ReasonCode.POLICY_VIOLATION_HARD})
    )

    @field_validator("category_weights")
    @classmethod
    def _weights_cover_categories_and_sum_to_100(cls, value: dict[EvidenceCategory, int]) -> dict[EvidenceCategory, int]:
        missing = [category.value for category in EvidenceCategory if category not in value]
        if missing:
            raise ValueError(f"category weights missing: {', '.join(missing)}")
        if any(weight < 0 for weight in value.values()):
            raise ValueError("category weights must be non-negative")
        total = sum(value.values())
        if total != 100:
            raise ValueError(f"category weights must sum to 100, got {total}")
        return value

    @field_validator("confidence_multipliers")
    @classmethod
    def _multipliers_monotonic(cls, value: dict[EvidenceStatus, Decimal]) -> dict[EvidenceStatus, Decimal]:
        missing = [item.value for item in EvidenceStatus if item not in value]
        if missing:
            raise ValueError(f"confidence multipliers missing: {', '.join(missing)}")
        ordered = [value[item] for item in EvidenceStatus]
        if ordered[0] != Decimal("0") or ordered[-1] != Decimal("1"):
            raise ValueError("MISSING must weigh 0 and CONFIRMED must weigh 1")
        if any(later < earlier for earlier, later in zip(ordered, ordered[1:])):
            raise ValueError("confidence multipliers must not decrease along the confidence scale")
        return value

    @field_validator("stage_thresholds")
    @classmethod
    def _thresholds_monotonic(cls, value: dict[DealStage, Decimal]) -> dict[DealStage, Decimal]:
        missing = [stage.value for stage in STAGE_ORDER if stage not in value]
        if missing:
            raise ValueError(f"stage thresholds missing: {', '.join(missing)}")
        ordered = [value[stage] for stage in STAGE_ORDER]
        if any(item < 0 or item > 100 for item in ordered):
            raise ValueError("stage thresholds must be within [0, 100]")
        for earlier, later, stage in zip(ordered, ordered[1:], STAGE_ORDER[1:]):
            if later < earlier:
                raise ValueError(f"stage threshold for {stage.value} is lower than the previous stage")
        return value

    @field_validator("action_thresholds")
    @classmethod
    def _action_thresholds_in_range(cls, value: dict[EnforcementAction, Decimal]) -> dict[EnforcementAction, Decimal]:
        if EnforcementAction.DEAL_ADVANCE_STAGE in value:
            raise ValueError("stage advance thresholds belong in stage_thresholds")
        if any(item < 0 or item > 100 for item in value.values()):
            raise ValueError("action thresholds must be within [0, 100]")
        return value

    @field_validator("action_authority")
    @classmethod
    def _authority_for_every_action(cls, value: dict[EnforcementAction, AuthorityLevel]) -> dict[EnforcementAction, AuthorityLevel]:
        missing = [action.value for action in EnforcementAction if action not in value]
        if missing:
            raise ValueError(f"action authority missing: {', '.join(missing)}")
        return value

    @field_validator("override_authority")
    @classmethod
    def _override_levels_for_overridable_reasons(cls, value: dict[ReasonCode, AuthorityLevel]) -> dict[ReasonCode, AuthorityLevel]:
        unexpected = [code.value for code in value if code not in OVERRIDABLE_REASONS]
        if unexpected:
            raise ValueError(f"override authority given for non-overridable reasons: {', '.join(sorted(unexpected))}")
        missing = [code.value for code in OVERRIDABLE_REASONS if code not in value]
        if missing:
            raise ValueError(f"override authority missing: {', '.join(sorted(missing))}")
        if any(level >= AuthorityLevel.FOUNDER for level in value.values()):
            raise ValueError("override authority must leave room for a higher approver")
        return value

    @field_validator("auto_freeze_reason_codes")
    @classmethod
    def _auto_freeze_only_on_hard_halts(cls, value: frozenset[ReasonCode]) -> frozenset[ReasonCode]:
        invalid = [code.value for code in value if code not in _AUTO_FREEZE_ELIGIBLE]
        if invalid:
            raise ValueError(f"auto-freeze reason codes must be freezing hard halts: {', '.join(sorted(invalid))}")
        return value

    @model_validator(mode="after")
    def _discount_caps_ordered(self) -> EnforcementPolicyConfig:
        if self.discount_soft_cap_percent > self.discount_hard_cap_percent:
            raise ValueError("discount soft cap must not exceed the hard cap")
        return self

    def threshold_for_stage(self, stage: DealStage) -> Decimal:
        return self.stage_thresholds[stage]

    def threshold_for_action(self, action: EnforcementAction) -> Decimal | None:
        return self.action_thresholds.get(action)


def load_policy_config(path: str | Path | None = None) -> EnforcementPolicyConfig:
    """Build the policy configuration, failing loudly when it is invalid.

    With no path the built-in defaults are used. A path must point at a JSON
    document; omitted keys fall back to the defaults.
    """
    try:
        if path is None:
            return EnforcementPolicyConfig()
        raw = Path(path).read_text(encoding="utf-8")
        return EnforcementPolicyConfig.model_validate_json(raw)
    except ValidationError as exc:
        logger.error("policy_config_invalid", extra={"error": str(exc)})
        raise PolicyConfigError("enforcement policy configuration is invalid", details={"errors": exc.errors(include_url=False)}) from exc
    except OSError as exc:
        logger.error("policy_config_unreadable", extra={"error": str(exc)})
        raise PolicyConfigError(f"enforcement policy configuration could not be read: {path}") from exc


@lru_cache
def get_policy_config() -> EnforcementPolicyConfig:
    return load_policy_config(get_settings().enforcement_policy_path)
