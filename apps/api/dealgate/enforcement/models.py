from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Mapped, Mapper, ORMExecuteState, Session, mapped_column, relationship

from dealgate.core.database import Base
from dealgate.enforcement.enums import (
    AuthorityLevel,
    CertificationStatus,
    DealStage,
    DealStatus,
    EnforcementState,
    EvidenceStatus,
)
from dealgate.enforcement.errors import LedgerImmutableError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_SequenceKey = BigInteger().with_variant(Integer, "sqlite")


class Deal(Base):
    __tablename__ = "enforcement_deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default=DealStage.INTAKE.value)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=DealStatus.OPEN.value)
    enforcement_state: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=EnforcementState.OPEN.value,
        server_default=EnforcementState.OPEN.value,
    )
    frozen_reason_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="USD", server_default="USD")
    approved_discount_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    approved_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    evidence: Mapped[list[EvidenceItem]] = relationship("EvidenceItem", back_populates="deal")

    __table_args__ = (
        CheckConstraint(
            "(enforcement_state = 'FROZEN') = (frozen_reason_code IS NOT NULL)",
            name="ck_enforcement_deal_frozen_reason",
        ),
        Index("ix_enforcement_deal_owner", "owner_user_id"),
    )


class EvidenceItem(Base):
    __tablename__ = "enforcement_evidence_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("enforcement_deal.id", ondelete="RESTRICT"),
        nullable=False,
    )
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=EvidenceStatus.MISSING.value)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_refs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    last_updated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    deal: Mapped[Deal] = relationship("Deal", back_populates="evidence")

    __table_args__ = (UniqueConstraint("deal_id", "category", name="uq_enforcement_evidence_deal_category"),)


class HealthScoreRecord(Base):
    __tablename__ = "enforcement_health_score"

    seq: Mapped[int] = mapped_column(_SequenceKey, primary_key=True, autoincrement=True)
    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, unique=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("enforcement_deal.id", ondelete="RESTRICT"),
        nullable=False,
    )
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    component_breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    blockers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    recorded_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("total >= 0 AND total <= 100", name="ck_enforcement_health_total_range"),
        Index("ix_enforcement_health_deal_seq", "deal_id", "seq"),
    )


class ActorProfile(Base):
    __tablename__ = "enforcement_actor_profile"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    authority_level: Mapped[int] = mapped_column(Integer, nullable=False, default=AuthorityLevel.NONE.value)
    certification_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=CertificationStatus.SUSPENDED.value,
    )
    certification_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("authority_level >= 0 AND authority_level <= 5", name="ck_enforcement_actor_authority_range"),
    )


class OverrideToken(Base):
    __tablename__ = "enforcement_override_token"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("enforcement_deal.id", ondelete="RESTRICT"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    action_params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    reason_code: Mapped[str] = mapped_column(String(64), nullable=False)
    required_authority_level: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decision_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_decision_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_enforcement_override_deal", "deal_id", "created_at"),
        Index("ix_enforcement_override_status", "status"),
    )


class EnforcementDecision(Base):
    __tablename__ = "enforcement_decision"

    seq: Mapped[int] = mapped_column(_SequenceKey, primary_key=True, autoincrement=True)
    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, unique=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("enforcement_deal.id", ondelete="RESTRICT"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    reason_code: Mapped[str] = mapped_column(String(64), nullable=False)
    signal_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    override_token_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("enforcement_override_token.id", ondelete="RESTRICT"),
        nullable=True,
    )
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_enforcement_decision_deal_seq", "deal_id", "seq"),)


APPEND_ONLY_MODELS: tuple[type[Base], ...] = (EnforcementDecision, HealthScoreRecord)


def _reject(operation: str) -> Callable[[Mapper[Any], Connection, Any], None]:
    def listener(mapper: Mapper[Any], connection: Connection, target: Any) -> None:
        raise LedgerImmutableError(type(target).__name__, operation)

    return listener


for _model in APPEND_ONLY_MODELS:
    event.listen(_model, "before_update", _reject("update"))
    event.listen(_model, "before_delete", _reject("delete"))


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_mutation(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    operation = "update" if orm_execute_state.is_update else "delete"
    mappers = [orm_execute_state.bind_mapper, *orm_execute_state.all_mappers]
    for mapper in mappers:
        if mapper is not None and mapper.class_ in APPEND_ONLY_MODELS:
            raise LedgerImmutableError(mapper.class_.__name__, operation)
