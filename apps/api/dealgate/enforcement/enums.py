from __future__ import annotations

from enum import IntEnum, StrEnum


class DealStage(StrEnum):
    INTAKE = "INTAKE"
    QUALIFIED = "QUALIFIED"
    DISCOVERY = "DISCOVERY"
    SOLUTION_FIT = "SOLUTION_FIT"
    POV = "POV"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    LEGAL = "LEGAL"
    PROCUREMENT = "PROCUREMENT"
    COMMIT = "COMMIT"

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self)

    def next_stage(self) -> DealStage | None:
        index = self.position + 1
        return STAGE_ORDER[index] if index < len(STAGE_ORDER) else None


STAGE_ORDER: tuple[DealStage, ...] = tuple(DealStage)


class DealStatus(StrEnum):
    OPEN = "OPEN"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


class EnforcementState(StrEnum):
    OPEN = "OPEN"
    FROZEN = "FROZEN"


class EvidenceCategory(StrEnum):
    METRICS = "METRICS"
    ECONOMIC_BUYER = "ECONOMIC_BUYER"
    DECISION_CRITERIA = "DECISION_CRITERIA"
    DECISION_PROCESS = "DECISION_PROCESS"
    PAPER_PROCESS = "PAPER_PROCESS"
    IDENTIFY_PAIN = "IDENTIFY_PAIN"
    CHAMPION = "CHAMPION"
    COMPETITION = "COMPETITION"


class EvidenceStatus(StrEnum):
    """Confidence scale, declared lowest to highest."""

    MISSING = "MISSING"
    CLAIMED = "CLAIMED"
    EVIDENCED = "EVIDENCED"
    CONFIRMED = "CONFIRMED"


class HealthBand(StrEnum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"
    BLACK = "BLACK"


class AuthorityLevel(IntEnum):
    NONE = 0
    ACCOUNT_EXECUTIVE = 1
    SALES_MANAGER = 2
    DEAL_DESK = 3
    CRO = 4
    FOUNDER = 5


class CertificationStatus(StrEnum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    REVOKED = "REVOKED"


class EnforcementAction(StrEnum):
    DEAL_ADVANCE_STAGE = "DEAL_ADVANCE_STAGE"
    DEAL_UPDATE = "DEAL_UPDATE"
    DEAL_CLOSE = "DEAL_CLOSE"
    DEAL_FREEZE = "DEAL_FREEZE"
    DEAL_UNFREEZE = "DEAL_UNFREEZE"
    COMMERCIAL_APPROVE_DISCOUNT = "COMMERCIAL_APPROVE_DISCOUNT"
    COMMERCIAL_APPROVE_PRICING = "COMMERCIAL_APPROVE_PRICING"

    @property
    def is_mutating(self) -> bool:
        return self is not EnforcementAction.DEAL_UNFREEZE


class DecisionOutcome(StrEnum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    REQUIRES_OVERRIDE = "REQUIRES_OVERRIDE"


class OverrideStatus(StrEnum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"


OVERRIDE_TRANSITIONS: dict[OverrideStatus, frozenset[OverrideStatus]] = {
    OverrideStatus.REQUESTED: frozenset({OverrideStatus.APPROVED, OverrideStatus.DENIED}),
    OverrideStatus.APPROVED: frozenset({OverrideStatus.CONSUMED, OverrideStatus.EXPIRED}),
    OverrideStatus.DENIED: frozenset(),
    OverrideStatus.CONSUMED: frozenset(),
    OverrideStatus.EXPIRED: frozenset(),
}


class ReasonCode(StrEnum):
    POLICY_SATISFIED = "POLICY_SATISFIED"
    OVERRIDE_APPLIED = "OVERRIDE_APPLIED"
    DEAL_CLOSED = "DEAL_CLOSED"
    DEAL_FROZEN = "DEAL_FROZEN"
    DEAL_NOT_FROZEN = "DEAL_NOT_FROZEN"
    DRI_BLACK_AUTO_HALT = "DRI_BLACK_AUTO_HALT"
    STAGE_TRANSITION_INVALID = "STAGE_TRANSITION_INVALID"
    POLICY_VIOLATION_HARD = "POLICY_VIOLATION_HARD"
    DRI_RED_REQUIRES_ESCALATION = "DRI_RED_REQUIRES_ESCALATION"
    AUTHORITY_INSUFFICIENT = "AUTHORITY_INSUFFICIENT"
    CERTIFICATION_INVALID = "CERTIFICATION_INVALID"
    DISCOUNT_ABOVE_AUTHORITY = "DISCOUNT_ABOVE_AUTHORITY"
    QUALIFICATION_BELOW_THRESHOLD = "QUALIFICATION_BELOW_THRESHOLD"
    OVERRIDE_INVALID = "OVERRIDE_INVALID"
    UNCLASSIFIED = "UNCLASSIFIED"
    # Deal freeze reason only; never a decision reason.
    MANUAL_HOLD = "MANUAL_HOLD"


HARD_HALT_REASONS: frozenset[ReasonCode] = frozenset(
    {
        ReasonCode.DEAL_CLOSED,
        ReasonCode.DEAL_FROZEN,
        ReasonCode.DEAL_NOT_FROZEN,
        ReasonCode.DRI_BLACK_AUTO_HALT,
        ReasonCode.STAGE_TRANSITION_INVALID,
        ReasonCode.POLICY_VIOLATION_HARD,
    }
)

OVERRIDABLE_REASONS: frozenset[ReasonCode] = frozenset(
    {
        ReasonCode.DRI_RED_REQUIRES_ESCALATION,
        ReasonCode.AUTHORITY_INSUFFICIENT,
        ReasonCode.CERTIFICATION_INVALID,
        ReasonCode.DISCOUNT_ABOVE_AUTHORITY,
        ReasonCode.QUALIFICATION_BELOW_THRESHOLD,
    }
)

REASON_MESSAGES: dict[ReasonCode, str] = {
    ReasonCode.POLICY_SATISFIED: "All enforcement policies are satisfied.",
    ReasonCode.OVERRIDE_APPLIED: "Allowed under an approved override.",
    ReasonCode.DEAL_CLOSED: "The deal is closed and can no longer be changed.",
    ReasonCode.DEAL_FROZEN: "The deal is frozen; only an unfreeze is permitted.",
    ReasonCode.DEAL_NOT_FROZEN: "The deal is not frozen.",
    ReasonCode.DRI_BLACK_AUTO_HALT: "Deal health is BLACK; the deal has been halted for review.",
    ReasonCode.STAGE_TRANSITION_INVALID: "The requested stage is not a later stage than the current one.",
    ReasonCode.POLICY_VIOLATION_HARD: "The request exceeds a hard commercial limit; the deal has been halted for review.",
    ReasonCode.DRI_RED_REQUIRES_ESCALATION: "Deal health is RED; this action needs an approved escalation.",
    ReasonCode.AUTHORITY_INSUFFICIENT: "Your authority level is too low for this action.",
    ReasonCode.CERTIFICATION_INVALID: "Your seller certification is missing or expired.",
    ReasonCode.DISCOUNT_ABOVE_AUTHORITY: "The discount exceeds what your authority level may approve.",
    ReasonCode.QUALIFICATION_BELOW_THRESHOLD: "Qualification evidence is below the threshold for this step.",
    ReasonCode.OVERRIDE_INVALID: "The supplied override could not be applied.",
    ReasonCode.UNCLASSIFIED: "The request could not be evaluated and was denied.",
    ReasonCode.MANUAL_HOLD: "The deal was placed on hold manually.",
}


def reason_message(code: ReasonCode) -> str:
    return REASON_MESSAGES[code]
