from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dealgate.enforcement.enums import (
    AuthorityLevel,
    CertificationStatus,
    DealStage,
    DealStatus,
    DecisionOutcome,
    EnforcementAction,
    EnforcementState,
    EvidenceCategory,
    EvidenceStatus,
    HealthBand,
    OverrideStatus,
    ReasonCode,
    reason_message,
)


_CENTS = Decimal("0.01")

ACTION_PARAM_FIELDS = ("target_stage", "discount_percent", "price", "changes", "close_status")

_REQUIRED_PARAMS: dict[EnforcementAction, frozenset[str]] = {
    EnforcementAction.DEAL_ADVANCE_STAGE: frozenset(),
    EnforcementAction.DEAL_UPDATE: frozenset({"changes"}),
    EnforcementAction.DEAL_CLOSE: frozenset({"close_status"}),
    EnforcementAction.DEAL_FREEZE: frozenset(),
    EnforcementAction.DEAL_UNFREEZE: frozenset(),
    EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT: frozenset({"discount_percent"}),
    EnforcementAction.COMMERCIAL_APPROVE_PRICING: frozenset({"price"}),
}

_ALLOWED_PARAMS: dict[EnforcementAction, frozenset[str]] = {
    **_REQUIRED_PARAMS,
    EnforcementAction.DEAL_ADVANCE_STAGE: frozenset({"target_stage"}),
}


def _quantize(value: Decimal | None) -> Decimal | None:
    return None if value is None else value.quantize(_CENTS)


class DealChanges(BaseModel):
    """Field updates a DEAL_UPDATE may apply; anything else is rejected."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    owner_user_id: str | None = Field(default=None, min_length=1, max_length=255)
    amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    currency: str | None = Field(default=None, min_length=3, max_length=16)

    @field_validator("amount")
    @classmethod
    def _normalize_amount(cls, value: Decimal | None) -> Decimal | None:
        return _quantize(value)

    @model_validator(mode="after")
    def _not_empty(self) -> DealChanges:
        if not self.model_fields_set or all(getattr(self, name) is None for name in self.model_fields_set):
            raise ValueError("changes must set at least one field")
        return self


class ActionRequest(BaseModel):
    action: EnforcementAction
    target_stage: DealStage | None = None
    discount_percent: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    price: Decimal | None = Field(default=None, gt=Decimal("0"))
    changes: DealChanges | None = None
    close_status: DealStatus | None = None

    @field_validator("discount_percent", "price")
    @classmethod
    def _normalize_money(cls, value: Decimal | None) -> Decimal | None:
        return _quantize(value)

    @field_validator("close_status")
    @classmethod
    def _close_is_terminal(cls, value: DealStatus | None) -> DealStatus | None:
        if value is DealStatus.OPEN:
            raise ValueError("close_status must be CLOSED_WON or CLOSED_LOST")
        return value

    @model_validator(mode="after")
    def _params_match_action(self) -> ActionRequest:
        present = {name for name in ACTION_PARAM_FIELDS if getattr(self, name) is not None}
        missing = _REQUIRED_PARAMS[self.action] - present
        if missing:
            raise ValueError(f"{self.action.value} requires: {', '.join(sorted(missing))}")
        unexpected = present - _ALLOWED_PARAMS[self.action]
        if unexpected:
            raise ValueError(f"{self.action.value} does not accept: {', '.join(sorted(unexpected))}")
        return self

    def action_params(self) -> dict[str, Any]:
        """Canonical JSON form of the parameters, used to bind override tokens."""
        return self.model_dump(mode="json", include=set(ACTION_PARAM_FIELDS), exclude_none=True)


class AuthorizeRequest(ActionRequest):
    override_token_id: UUID | None = None


class DealCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    owner_user_id: str | None = Field(default=None, min_length=1, max_length=255)
    stage: DealStage = DealStage.INTAKE
    amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    currency: str = Field(default="USD", min_length=3, max_length=16)


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    owner_user_id: str
    stage: DealStage
    status: DealStatus
    enforcement_state: EnforcementState
    frozen_reason_code: ReasonCode | None
    frozen_at: datetime | None
    amount: Decimal | None
    currency: str
    approved_discount_percent: Decimal | None
    approved_price: Decimal | None
    closed_at: datetime | None
    row_version: int
    created_at: datetime
    updated_at: datetime


class EvidenceUpsert(BaseModel):
    category: EvidenceCategory
    status: EvidenceStatus
    notes: str | None = None
    evidence_refs: list[str] = Field(default_factory=list)


class EvidenceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    category: EvidenceCategory
    status: EvidenceStatus
    notes: str | None
    evidence_refs: list[str]
    last_updated_by: str
    updated_at: datetime


class HealthScoreCreate(BaseModel):
    total: int = Field(ge=0, le=100)
    component_breakdown: dict[str, int] = Field(default_factory=dict)
    blockers: list[str] = Field(default_factory=list)


class HealthScoreRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    total: int
    state: HealthBand
    component_breakdown: dict[str, Any]
    blockers: list[str]
    recorded_by: str
    created_at: datetime


class ActorProfileUpsert(BaseModel):
    authority_level: AuthorityLevel
    certification_status: CertificationStatus
    certification_expires_at: datetime | None = None


class ActorProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    authority_level: AuthorityLevel
    certification_status: CertificationStatus
    certification_expires_at: datetime | None
    updated_by: str
    updated_at: datetime


class SignalSnapshotRead(BaseModel):
    deal_id: UUID
    actor_id: str
    stage: DealStage
    deal_status: DealStatus
    freeze_state: EnforcementState
    freeze_reason_code: ReasonCode | None
    row_version: int
    qualification_score: Decimal
    health_total: int
    health_band: HealthBand
    health_blockers: list[str]
    actor_authority_level: AuthorityLevel
    actor_certification_valid: bool
    taken_at: datetime
    deal_amount: Decimal | None = None


class DecisionRead(BaseModel):
    id: UUID
    entity_id: UUID
    actor_id: str
    action: EnforcementAction
    outcome: DecisionOutcome
    reason_code: ReasonCode
    reason_message: str | None = None
    override_token_id: UUID | None = None
    correlation_id: str | None = None
    signal_snapshot: dict[str, Any] | None = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: Any) -> DecisionRead:
        reason = ReasonCode(record.reason_code)
        return cls(
            id=record.id,
            entity_id=record.deal_id,
            actor_id=record.actor_id,
            action=EnforcementAction(record.action),
            outcome=DecisionOutcome(record.outcome),
            reason_code=reason,
            reason_message=reason_message(reason),
            override_token_id=record.override_token_id,
            correlation_id=record.correlation_id,
            signal_snapshot=record.signal_snapshot,
            created_at=record.created_at,
        )


class DecisionPage(BaseModel):
    items: list[DecisionRead]
    next_cursor: str | None = None


class AuthorizationResult(BaseModel):
    allowed: bool
    decision: DecisionRead
    deal: DealRead


class OverrideCreate(ActionRequest):
    deal_id: UUID
    justification: str = Field(min_length=1, max_length=4000)

    @field_validator("justification")
    @classmethod
    def _justification_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("justification must not be blank")
        return stripped


class OverrideDecisionRequest(BaseModel):
    note: str | None = Field(default=None, max_length=4000)


class OverrideRead(BaseModel):
    id: UUID
    deal_id: UUID
    action: EnforcementAction
    action_params: dict[str, Any]
    requested_by: str
    justification: str
    reason_code: ReasonCode
    required_authority_level: AuthorityLevel
    status: OverrideStatus
    decided_by: str | None
    decided_at: datetime | None
    decision_note: str | None
    expires_at: datetime | None
    consumed_at: datetime | None
    consumed_decision_id: UUID | None
    created_at: datetime
