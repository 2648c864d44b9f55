from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealgate import events
from dealgate.enforcement.config import EnforcementPolicyConfig, get_policy_config
from dealgate.enforcement.enums import DealStatus, EnforcementState, EvidenceCategory
from dealgate.enforcement.errors import ConcurrentModificationError, NotFoundError
from dealgate.enforcement.models import ActorProfile, Deal, EvidenceItem, HealthScoreRecord, utcnow
from dealgate.enforcement.schemas import (
    ActorProfileRead,
    ActorProfileUpsert,
    DealCreate,
    DealRead,
    EvidenceRead,
    EvidenceUpsert,
    HealthScoreCreate,
    HealthScoreRead,
)


logger = logging.getLogger("dealgate.enforcement.intake")

_CATEGORY_ORDER = {category.value: index for index, category in enumerate(EvidenceCategory)}


@dataclass(slots=True)
class IntakeService:
    clock: Callable[[], datetime] = utcnow

    def create_deal(self, session: Session, actor_id: str, dto: DealCreate) -> DealRead:
        now = self.clock()
        deal = Deal(
            name=dto.name,
            owner_user_id=dto.owner_user_id or actor_id,
            stage=dto.stage.value,
            status=DealStatus.OPEN.value,
            enforcement_state=EnforcementState.OPEN.value,
            amount=dto.amount,
            currency=dto.currency,
            created_at=now,
            updated_at=now,
        )
        session.add(deal)
        session.commit()
        session.refresh(deal)

        logger.info("deal_created", extra={"deal_id": str(deal.id), "actor_id": actor_id})
        self._publish("enforcement.deal_created", actor_id, now, {"deal_id": str(deal.id), "stage": deal.stage})
        return DealRead.model_validate(deal)

    def get_deal(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self._require_deal(session, deal_id))

    def upsert_evidence(self, session: Session, deal_id: uuid.UUID, actor_id: str, dto: EvidenceUpsert) -> EvidenceRead:
        self._require_deal(session, deal_id)
        now = self.clock()
        item = session.scalar(
            select(EvidenceItem).where(
                and_(EvidenceItem.deal_id == deal_id, EvidenceItem.category == dto.category.value)
            )
        )
        if item is None:
            item = EvidenceItem(deal_id=deal_id, category=dto.category.value, created_at=now)
            session.add(item)
        item.status = dto.status.value
        item.notes = dto.notes
        item.evidence_refs = list(dto.evidence_refs)
        item.last_updated_by = actor_id
        item.updated_at = now

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConcurrentModificationError(
                "evidence for this category was written concurrently",
                details={"deal_id": str(deal_id), "category": dto.category.value},
            )
        session.refresh(item)

        logger.info(
            "evidence_recorded",
            extra={"deal_id": str(deal_id), "actor_id": actor_id, "snapshot": {"category": item.category, "status": item.status}},
        )
        self._publish(
            "enforcement.evidence_recorded",
            actor_id,
            now,
            {"deal_id": str(deal_id), "category": item.category, "status": item.status},
        )
        return EvidenceRead.model_validate(item)

    def list_evidence(self, session: Session, deal_id: uuid.UUID) -> list[EvidenceRead]:
        self._require_deal(session, deal_id)
        rows = session.scalars(select(EvidenceItem).where(EvidenceItem.deal_id == deal_id)).all()
        ordered = sorted(rows, key=lambda item: _CATEGORY_ORDER.get(item.category, len(_CATEGORY_ORDER)))
        return [EvidenceRead.model_validate(item) for item in ordered]

    def record_health(
        self,
        session: Session,
        deal_id: uuid.UUID,
        actor_id: str,
        dto: HealthScoreCreate,
        *,
        config: EnforcementPolicyConfig | None = None,
    ) -> HealthScoreRead:
        config = config or get_policy_config()
        self._require_deal(session, deal_id)
        now = self.clock()
        band = config.health_band_floors.band_for(dto.total)
        record = HealthScoreRecord(
            deal_id=deal_id,
            total=dto.total,
            state=band.value,
            component_breakdown=dict(dto.component_breakdown),
            blockers=list(dto.blockers),
            recorded_by=actor_id,
            created_at=now,
        )
        session.add(record)
        session.commit()
        session.refresh(record)

        logger.info(
            "health_recorded",
            extra={"deal_id": str(deal_id), "actor_id": actor_id, "snapshot": {"total": dto.total, "band": band.value}},
        )
        self._publish(
            "enforcement.health_recorded",
            actor_id,
            now,
            {"deal_id": str(deal_id), "total": dto.total, "band": band.value},
        )
        return HealthScoreRead.model_validate(record)

    def upsert_actor_profile(
        self,
        session: Session,
        user_id: str,
        actor_id: str,
        dto: ActorProfileUpsert,
    ) -> ActorProfileRead:
        now = self.clock()
        profile = session.get(ActorProfile, user_id)
        if profile is None:
            profile = ActorProfile(user_id=user_id, created_at=now)
            session.add(profile)
        profile.authority_level = int(dto.authority_level)
        profile.certification_status = dto.certification_status.value
        profile.certification_expires_at = dto.certification_expires_at
        profile.updated_by = actor_id
        profile.updated_at = now

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConcurrentModificationError("actor profile was written concurrently", details={"user_id": user_id})
        session.refresh(profile)

        logger.info(
            "actor_profile_updated",
            extra={
                "actor_id": actor_id,
                "snapshot": {"user_id": user_id, "authority_level": profile.authority_level, "certification": profile.certification_status},
            },
        )
        return ActorProfileRead.model_validate(profile)

    def get_actor_profile(self, session: Session, user_id: str) -> ActorProfileRead:
        profile = session.get(ActorProfile, user_id)
        if profile is None:
            raise NotFoundError("actor_profile", user_id)
        return ActorProfileRead.model_validate(profile)

    def _require_deal(self, session: Session, deal_id: uuid.UUID) -> Deal:
        deal = session.get(Deal, deal_id, populate_existing=True)
        if deal is None:
            raise NotFoundError("deal", deal_id)
        return deal

    def _publish(self, event_type: str, actor_id: str, now: datetime, payload: dict[str, Any]) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": now.isoformat(),
                "actor_user_id": actor_id,
                "payload": payload,
            }
        )


intake_service = IntakeService()
