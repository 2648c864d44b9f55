from __future__ import annotations

import time
import uuid
from collections.abc import Generator
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealgate import events
from dealgate.core.database import Base
from dealgate.enforcement.config import EnforcementPolicyConfig
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
    OverrideStatus,
    ReasonCode,
)
from dealgate.enforcement.errors import (
    ConcurrentModificationError,
    DeadlineExceededError,
    EnforcementStorageError,
    NotFoundError,
)
from dealgate.enforcement.gateway import EnforcementGateway, enforcement_gateway
from dealgate.enforcement.intake import IntakeService
from dealgate.enforcement.ledger import DecisionLedger, decision_ledger
from dealgate.enforcement.models import EnforcementDecision, OverrideToken
from dealgate.enforcement.overrides import OverrideService, override_service
from dealgate.enforcement.schemas import (
    ActionRequest,
    ActorProfileUpsert,
    DealCreate,
    EvidenceUpsert,
    HealthScoreCreate,
)
from dealgate.enforcement.signals import SignalProvider, SignalSnapshot, signal_provider
from dealgate.otel import setup_inmemory_otel


CONFIG = EnforcementPolicyConfig()
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture()
def gateway(clock: FrozenClock) -> EnforcementGateway:
    return _gateway(clock)


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("dealgate-tests")
    exporter.clear()
    return exporter


def _gateway(clock: FrozenClock, **parts) -> EnforcementGateway:
    signals = parts.pop("signals", SignalProvider(clock=clock))
    return EnforcementGateway(
        signals=signals,
        overrides=OverrideService(signals=signals, clock=clock),
        clock=clock,
        config_provider=lambda: CONFIG,
        **parts,
    )


def _seed(session: Session, clock: FrozenClock, *, health: int = 82, stage: DealStage = DealStage.NEGOTIATION) -> uuid.UUID:
    intake = IntakeService(clock=clock)
    deal = intake.create_deal(session, "ae-1", DealCreate(name="Acme expansion", stage=stage, amount=Decimal("100000")))
    for category in EvidenceCategory:
        intake.upsert_evidence(session, deal.id, "ae-1", EvidenceUpsert(category=category, status=EvidenceStatus.CONFIRMED))
    intake.record_health(session, deal.id, "ops", HealthScoreCreate(total=health), config=CONFIG)
    for user_id, level in (
        ("ae-1", AuthorityLevel.ACCOUNT_EXECUTIVE),
        ("sm-1", AuthorityLevel.SALES_MANAGER),
        ("dd-1", AuthorityLevel.DEAL_DESK),
    ):
        intake.upsert_actor_profile(
            session,
            user_id,
            "admin",
            ActorProfileUpsert(
                authority_level=level,
                certification_status=CertificationStatus.ACTIVE,
                certification_expires_at=START + timedelta(days=365),
            ),
        )
    return deal.id


def _advance(target: DealStage = DealStage.LEGAL) -> ActionRequest:
    return ActionRequest(action=EnforcementAction.DEAL_ADVANCE_STAGE, target_stage=target)


def _decisions(session: Session, deal_id: uuid.UUID) -> list[EnforcementDecision]:
    return list(
        session.scalars(
            select(EnforcementDecision).where(EnforcementDecision.deal_id == deal_id).order_by(EnforcementDecision.seq)
        ).all()
    )


def _approved_token(session: Session, gateway: EnforcementGateway, deal_id: uuid.UUID) -> uuid.UUID:
    token = gateway.request_override(
        session,
        deal_id=deal_id,
        actor_id="ae-1",
        action_request=_advance(),
        justification="Exec sponsor re-engaged after champion change",
    )
    gateway.approve_override(session, token.id, "dd-1")
    return token.id


def test_default_gateway_shares_module_services() -> None:
    assert enforcement_gateway.signals is signal_provider
    assert enforcement_gateway.overrides is override_service
    assert enforcement_gateway.ledger is decision_ledger
    assert override_service.signals is signal_provider

    custom = EnforcementGateway(ledger=DecisionLedger(max_page_size=5))
    assert custom.signals is signal_provider
    assert custom.ledger is not decision_ledger


def test_green_deal_advance_is_allowed_and_recorded(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock)

    result = gateway.authorize(db_session, _advance(), deal_id, "ae-1")

    assert result.allowed is True
    assert result.decision.outcome is DecisionOutcome.ALLOWED
    assert result.decision.reason_code is ReasonCode.POLICY_SATISFIED
    assert result.deal.stage is DealStage.LEGAL
    assert result.deal.row_version == 2
    entries = _decisions(db_session, deal_id)
    assert len(entries) == 1
    snapshot = entries[0].signal_snapshot
    assert snapshot["stage"] == "NEGOTIATION"
    assert snapshot["qualification_score"] == "100.00"
    assert snapshot["request"] == {"target_stage": "LEGAL"}
    assert snapshot["evaluated"]["rule"] == "default"


def test_black_health_denies_and_freezes_deal(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, health=10)
    events.published_events.clear()

    result = gateway.authorize(db_session, _advance(), deal_id, "ae-1")

    assert result.allowed is False
    assert result.decision.reason_code is ReasonCode.DRI_BLACK_AUTO_HALT
    assert result.deal.enforcement_state is EnforcementState.FROZEN
    assert result.deal.frozen_reason_code is ReasonCode.DRI_BLACK_AUTO_HALT
    assert result.deal.stage is DealStage.NEGOTIATION
    event_types = [item["event_type"] for item in events.published_events]
    assert event_types == ["enforcement.decision_recorded", "enforcement.deal_frozen"]

    follow_up = gateway.authorize(
        db_session,
        ActionRequest(action=EnforcementAction.DEAL_UPDATE, changes={"name": "Renamed"}),
        deal_id,
        "ae-1",
    )

    assert follow_up.decision.reason_code is ReasonCode.DEAL_FROZEN
    assert follow_up.deal.frozen_reason_code is ReasonCode.DRI_BLACK_AUTO_HALT
    assert follow_up.deal.name == "Acme expansion"


def test_deal_desk_can_unfreeze(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, health=10)
    gateway.authorize(db_session, _advance(), deal_id, "ae-1")
    events.published_events.clear()

    result = gateway.authorize(db_session, ActionRequest(action=EnforcementAction.DEAL_UNFREEZE), deal_id, "dd-1")

    assert result.allowed is True
    assert result.deal.enforcement_state is EnforcementState.OPEN
    assert result.deal.frozen_reason_code is None
    assert result.deal.frozen_at is None
    assert [item["event_type"] for item in events.published_events] == [
        "enforcement.decision_recorded",
        "enforcement.deal_unfrozen",
    ]


def test_account_executive_cannot_freeze_without_override(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock)

    result = gateway.authorize(db_session, ActionRequest(action=EnforcementAction.DEAL_FREEZE), deal_id, "ae-1")

    assert result.decision.outcome is DecisionOutcome.REQUIRES_OVERRIDE
    assert result.decision.reason_code is ReasonCode.AUTHORITY_INSUFFICIENT
    assert result.deal.enforcement_state is EnforcementState.OPEN
    assert result.deal.row_version == 1


def test_manual_freeze_uses_manual_hold(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock)

    result = gateway.authorize(db_session, ActionRequest(action=EnforcementAction.DEAL_FREEZE), deal_id, "dd-1")

    assert result.allowed is True
    assert result.decision.reason_code is ReasonCode.POLICY_SATISFIED
    assert result.deal.enforcement_state is EnforcementState.FROZEN
    assert result.deal.frozen_reason_code is ReasonCode.MANUAL_HOLD


def test_update_applies_changes(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock)

    result = gateway.authorize(
        db_session,
        ActionRequest(action=EnforcementAction.DEAL_UPDATE, changes={"name": "Acme global", "amount": "125000"}),
        deal_id,
        "ae-1",
    )

    assert result.allowed is True
    assert result.deal.name == "Acme global"
    assert result.deal.amount == Decimal("125000.00")


def test_closed_deal_rejects_further_changes(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock)

    closed = gateway.authorize(
        db_session,
        ActionRequest(action=EnforcementAction.DEAL_CLOSE, close_status=DealStatus.CLOSED_WON),
        deal_id,
        "ae-1",
    )
    again = gateway.authorize(db_session, _advance(), deal_id, "ae-1")

    assert closed.deal.status is DealStatus.CLOSED_WON
    assert closed.deal.closed_at is not None
    assert again.decision.reason_code is ReasonCode.DEAL_CLOSED
    assert again.deal.stage is DealStage.NEGOTIATION


def test_discount_over_hard_cap_freezes_deal(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock)

    result = gateway.authorize(
        db_session,
        ActionRequest(action=EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT, discount_percent=Decimal("45")),
        deal_id,
        "dd-1",
    )

    assert result.decision.reason_code is ReasonCode.POLICY_VIOLATION_HARD
    assert result.deal.frozen_reason_code is ReasonCode.POLICY_VIOLATION_HARD
    assert result.deal.approved_discount_percent is None


def test_red_deal_advances_with_approved_override(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, health=40)

    escalated = gateway.authorize(db_session, _advance(), deal_id, "ae-1")
    assert escalated.decision.outcome is DecisionOutcome.REQUIRES_OVERRIDE
    assert escalated.decision.reason_code is ReasonCode.DRI_RED_REQUIRES_ESCALATION

    token_id = _approved_token(db_session, gateway, deal_id)
    result = gateway.authorize(db_session, _advance(), deal_id, "ae-1", override_token_id=token_id)

    assert result.allowed is True
    assert result.decision.reason_code is ReasonCode.OVERRIDE_APPLIED
    assert result.decision.override_token_id == token_id
    assert result.deal.stage is DealStage.LEGAL
    token = gateway.get_override(db_session, token_id)
    assert token.status is OverrideStatus.CONSUMED
    assert token.consumed_decision_id == result.decision.id
    assert result.decision.signal_snapshot["override"]["waived_reason_code"] == "DRI_RED_REQUIRES_ESCALATION"
    assert [entry.reason_code for entry in _decisions(db_session, deal_id)] == [
        "DRI_RED_REQUIRES_ESCALATION",
        "OVERRIDE_APPLIED",
    ]


def test_consumed_token_cannot_be_reused(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, health=40, stage=DealStage.PROPOSAL)
    token = gateway.request_override(
        db_session,
        deal_id=deal_id,
        actor_id="ae-1",
        action_request=_advance(DealStage.NEGOTIATION),
        justification="Procurement fast-tracked",
    )
    gateway.approve_override(db_session, token.id, "dd-1")
    gateway.authorize(db_session, _advance(DealStage.NEGOTIATION), deal_id, "ae-1", override_token_id=token.id)

    retry = gateway.authorize(db_session, _advance(DealStage.LEGAL), deal_id, "ae-1", override_token_id=token.id)

    assert retry.decision.outcome is DecisionOutcome.DENIED
    assert retry.decision.reason_code is ReasonCode.OVERRIDE_INVALID
    assert retry.deal.stage is DealStage.NEGOTIATION


def test_expired_override_is_denied(db_session: Session, gateway: EnforcementGateway, clock: FrozenClock) -> None:
    deal_id = _seed(db_session, clock, health=40)
    token_id = _approved_token(db_session, gateway, deal_id)

    clock.advance(hours=73)
    result = gateway.authorize(db_session, _advance(), deal_id, "ae-1", override_token_id=token_id)

    assert result.allowed is False
    assert result.decision.reason_code is ReasonCode.OVERRIDE_INVALID
    assert result.decision.signal_snapshot["override"]["error"] == "token_expired"
    assert result.deal.stage is DealStage.NEGOTIATION
    assert gateway.get_override(db_session, token_id).status is OverrideStatus.EXPIRED
    assert all(entry.outcome != DecisionOutcome.ALLOWED.value for entry in _decisions(db_session, deal_id))


def test_token_on_allowed_request_is_left_unused(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, health=40)
    token_id = _approved_token(db_session, gateway, deal_id)

    result = gateway.authorize(
        db_session,
        ActionRequest(action=EnforcementAction.DEAL_UPDATE, changes={"currency": "EUR"}),
        deal_id,
        "ae-1",
        override_token_id=token_id,
    )

    assert result.decision.reason_code is ReasonCode.POLICY_SATISFIED
    assert result.decision.override_token_id is None
    assert result.decision.signal_snapshot["override"]["error"] == "not_applicable"
    assert gateway.get_override(db_session, token_id).status is OverrideStatus.APPROVED


def test_unknown_token_writes_nothing(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, health=40)

    with pytest.raises(NotFoundError):
        gateway.authorize(db_session, _advance(), deal_id, "ae-1", override_token_id=uuid.uuid4())

    assert _decisions(db_session, deal_id) == []


def test_unknown_deal_is_not_found(db_session: Session, gateway: EnforcementGateway) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        gateway.authorize(db_session, _advance(), uuid.uuid4(), "ae-1")

    assert exc_info.value.resource == "deal"


class StaleSignalProvider(SignalProvider):
    def snapshot(self, session: Session, deal_id: uuid.UUID, actor_id: str, **kwargs) -> SignalSnapshot:
        fresh = super().snapshot(session, deal_id, actor_id, **kwargs)
        return replace(fresh, row_version=fresh.row_version - 1)


def test_stale_snapshot_raises_concurrent_modification(db_session: Session, clock: FrozenClock) -> None:
    deal_id = _seed(db_session, clock)
    gateway = _gateway(clock, signals=StaleSignalProvider(clock=clock))
    before = REGISTRY.get_sample_value(
        "enforcement_authorize_failures_total", {"reason": "concurrent_modification"}
    ) or 0.0

    with pytest.raises(ConcurrentModificationError) as exc_info:
        gateway.authorize(db_session, _advance(), deal_id, "ae-1")

    assert exc_info.value.retryable is True
    assert _decisions(db_session, deal_id) == []
    assert gateway.signals.load_deal(db_session, deal_id).stage == DealStage.NEGOTIATION.value
    assert REGISTRY.get_sample_value(
        "enforcement_authorize_failures_total", {"reason": "concurrent_modification"}
    ) == before + 1


def test_deadline_passed_writes_nothing(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, health=40)
    token_id = _approved_token(db_session, gateway, deal_id)

    with pytest.raises(DeadlineExceededError):
        gateway.authorize(
            db_session,
            _advance(),
            deal_id,
            "ae-1",
            override_token_id=token_id,
            deadline=time.monotonic() - 1,
        )

    assert _decisions(db_session, deal_id) == []
    assert gateway.get_override(db_session, token_id).status is OverrideStatus.APPROVED


class BrokenLedger(DecisionLedger):
    def append(self, session: Session, **kwargs) -> EnforcementDecision:
        raise OperationalError("INSERT INTO enforcement_decision", {}, Exception("disk I/O error"))


def test_ledger_failure_rolls_back_every_write(db_session: Session, clock: FrozenClock) -> None:
    deal_id = _seed(db_session, clock, health=40)
    gateway = _gateway(clock, ledger=BrokenLedger())
    token_id = _approved_token(db_session, gateway, deal_id)

    with pytest.raises(EnforcementStorageError) as exc_info:
        gateway.authorize(db_session, _advance(), deal_id, "ae-1", override_token_id=token_id)

    assert exc_info.value.public_message == "internal enforcement error"
    assert gateway.signals.load_deal(db_session, deal_id).stage == DealStage.NEGOTIATION.value
    stored = db_session.scalar(
        select(OverrideToken).where(OverrideToken.id == token_id).execution_options(populate_existing=True)
    )
    assert stored.status == OverrideStatus.APPROVED.value
    assert stored.consumed_decision_id is None


def test_decisions_are_counted_and_traced(
    db_session: Session,
    gateway: EnforcementGateway,
    span_exporter: InMemorySpanExporter,
) -> None:
    deal_id = _seed(db_session, gateway.clock)
    labels = {"action": "DEAL_ADVANCE_STAGE", "outcome": "ALLOWED", "reason_code": "POLICY_SATISFIED"}
    before = REGISTRY.get_sample_value("enforcement_decisions_total", labels) or 0.0

    result = gateway.authorize(db_session, _advance(), deal_id, "ae-1")

    assert REGISTRY.get_sample_value("enforcement_decisions_total", labels) == before + 1
    spans = [span for span in span_exporter.get_finished_spans() if span.name == "enforcement.authorize"]
    assert spans
    attributes = spans[-1].attributes
    assert attributes["enforcement.outcome"] == "ALLOWED"
    assert attributes["decision_id"] == str(result.decision.id)
    assert attributes["deal_id"] == str(deal_id)


def test_decision_history_is_newest_first(db_session: Session, gateway: EnforcementGateway) -> None:
    deal_id = _seed(db_session, gateway.clock, stage=DealStage.QUALIFIED)
    for target in (DealStage.DISCOVERY, DealStage.SOLUTION_FIT, DealStage.POV):
        gateway.authorize(db_session, _advance(target), deal_id, "ae-1")

    page = gateway.list_decisions(db_session, deal_id, limit=2)
    rest = gateway.list_decisions(db_session, deal_id, cursor=page.next_cursor, limit=2)

    assert [item.signal_snapshot["request"]["target_stage"] for item in page.items] == ["POV", "SOLUTION_FIT"]
    assert [item.signal_snapshot["request"]["target_stage"] for item in rest.items] == ["DISCOVERY"]
    assert rest.next_cursor is None
    assert gateway.get_decision(db_session, page.items[0].id).id == page.items[0].id
