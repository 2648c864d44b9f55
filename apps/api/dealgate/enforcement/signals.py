from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealgate.enforcement.config import EnforcementPolicyConfig, get_policy_config
from dealgate.enforcement.enums import (
    AuthorityLevel,
    CertificationStatus,
    DealStage,
    DealStatus,
    EnforcementState,
    EvidenceCategory,
    EvidenceStatus,
    HealthBand,
    ReasonCode,
)
from dealgate.enforcement.errors import NotFoundError
from dealgate.enforcement.models import ActorProfile, Deal, EvidenceItem, HealthScoreRecord, ensure_utc, utcnow


HEALTH_RECORD_MISSING = "HEALTH_RECORD_MISSING"

_SCORE_PLACES = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class SignalSnapshot:
    deal_id: uuid.UUID
    actor_id: str
    stage: DealStage
    deal_status: DealStatus
    freeze_state: EnforcementState
    freeze_reason_code: ReasonCode | None
    row_version: int
    qualification_score: Decimal
    health_total: int
    health_band: HealthBand
    actor_authority_level: AuthorityLevel
    actor_certification_valid: bool
    taken_at: datetime
    deal_amount: Decimal | None = None
    health_blockers: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_frozen(self) -> bool:
        return self.freeze_state is EnforcementState.FROZEN

    @property
    def is_closed(self) -> bool:
        return self.deal_status is not DealStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["deal_id"] = str(self.deal_id)
        payload["stage"] = self.stage.value
        payload["deal_status"] = self.deal_status.value
        payload["freeze_state"] = self.freeze_state.value
        payload["freeze_reason_code"] = self.freeze_reason_code.value if self.freeze_reason_code else None
        payload["qualification_score"] = str(self.qualification_score)
        payload["health_band"] = self.health_band.value
        payload["health_blockers"] = list(self.health_blockers)
        payload["actor_authority_level"] = int(self.actor_authority_level)
        payload["taken_at"] = self.taken_at.isoformat()
        payload["deal_amount"] = None if self.deal_amount is None else str(self.deal_amount)
        return payload


def compute_qualification_score(
    statuses: Mapping[EvidenceCategory, EvidenceStatus],
    config: EnforcementPolicyConfig,
) -> Decimal:
    total = Decimal("0")
    for category, weight in config.category_weights.items():
        status = statuses.get(category, EvidenceStatus.MISSING)
        total += Decimal(weight) * config.confidence_multipliers[status]
    return total.quantize(_SCORE_PLACES)


def latest_evidence_statuses(items: Iterable[EvidenceItem]) -> dict[EvidenceCategory, EvidenceStatus]:
    return {EvidenceCategory(item.category): EvidenceStatus(item.status) for item in items}


def certification_is_valid(profile: ActorProfile | None, now: datetime) -> bool:
    if profile is None or profile.certification_status != CertificationStatus.ACTIVE:
        return False
    expires_at = ensure_utc(profile.certification_expires_at)
    return expires_at is not None and expires_at > now


@dataclass(slots=True)
class SignalProvider:
    clock: Callable[[], datetime] = utcnow

    def load_deal(self, session: Session, deal_id: uuid.UUID) -> Deal:
        deal = session.scalar(select(Deal).where(Deal.id == deal_id).execution_options(populate_existing=True))
        if deal is None:
            raise NotFoundError("deal", deal_id)
        return deal

    def latest_health(self, session: Session, deal_id: uuid.UUID) -> HealthScoreRecord | None:
        return session.scalar(
            select(HealthScoreRecord)
            .where(HealthScoreRecord.deal_id == deal_id)
            .order_by(HealthScoreRecord.seq.desc())
            .limit(1)
        )

    def snapshot(
        self,
        session: Session,
        deal_id: uuid.UUID,
        actor_id: str,
        *,
        config: EnforcementPolicyConfig | None = None,
        now: datetime | None = None,
    ) -> SignalSnapshot:
        config = config or get_policy_config()
        now = now or self.clock()
        deal = self.load_deal(session, deal_id)

        evidence = session.scalars(select(EvidenceItem).where(EvidenceItem.deal_id == deal_id)).all()
        score = compute_qualification_score(latest_evidence_statuses(evidence), config)

        health = self.latest_health(session, deal_id)
        if health is None:
            health_total, health_band, blockers = 0, HealthBand.BLACK, (HEALTH_RECORD_MISSING,)
        else:
            health_total, health_band, blockers = health.total, HealthBand(health.state), tuple(health.blockers or ())

        profile = session.get(ActorProfile, actor_id)
        authority = AuthorityLevel(profile.authority_level) if profile is not None else AuthorityLevel.NONE

        return SignalSnapshot(
            deal_id=deal.id,
            actor_id=actor_id,
            stage=DealStage(deal.stage),
            deal_status=DealStatus(deal.status),
            freeze_state=EnforcementState(deal.enforcement_state),
            freeze_reason_code=ReasonCode(deal.frozen_reason_code) if deal.frozen_reason_code else None,
            row_version=deal.row_version,
            qualification_score=score,
            health_total=health_total,
            health_band=health_band,
            health_blockers=blockers,
            actor_authority_level=authority,
            actor_certification_valid=certification_is_valid(profile, now),
            deal_amount=deal.amount,
            taken_at=now,
        )


signal_provider = SignalProvider()
