from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry.trace import Span
from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dealgate import events
from dealgate.context import get_correlation_id
from dealgate.enforcement.config import EnforcementPolicyConfig, get_policy_config
from dealgate.enforcement.enums import (
    DecisionOutcome,
    EnforcementAction,
    EnforcementState,
    ReasonCode,
)
from dealgate.enforcement.errors import (
    ConcurrentModificationError,
    DeadlineExceededError,
    EnforcementError,
    EnforcementStorageError,
    InvalidTransitionError,
    OverrideInvalidError,
    UnclassifiedDecisionError,
)
from dealgate.enforcement.ledger import DecisionLedger, decision_ledger
from dealgate.enforcement.models import Deal, EnforcementDecision, utcnow
from dealgate.enforcement.overrides import OverrideService, override_service
from dealgate.enforcement.policy import PolicyDecision, PolicyEngine, policy_engine, resolve_target_stage
from dealgate.enforcement.schemas import (
    ActionRequest,
    AuthorizationResult,
    DealRead,
    DecisionPage,
    DecisionRead,
    OverrideRead,
)
from dealgate.enforcement.signals import SignalProvider, SignalSnapshot, signal_provider
from dealgate.metrics import (
    observe_authorize_duration,
    observe_authorize_failure,
    observe_deal_frozen,
    observe_enforcement_decision,
)
from dealgate.otel import enforcement_span


logger = logging.getLogger("dealgate.enforcement.gateway")


@dataclass(slots=True)
class _Resolution:
    """What the gateway will persist for one authorize call."""

    outcome: DecisionOutcome
    reason_code: ReasonCode
    deal_values: dict[str, Any] | None = None
    override_token_id: uuid.UUID | None = None
    notes: dict[str, Any] = field(default_factory=dict)

    @property
    def freezes(self) -> bool:
        return bool(self.deal_values) and self.deal_values.get("enforcement_state") == EnforcementState.FROZEN.value

    @property
    def unfreezes(self) -> bool:
        return bool(self.deal_values) and self.deal_values.get("enforcement_state") == EnforcementState.OPEN.value


def deadline_after(seconds: float) -> float:
    return time.monotonic() + seconds


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise DeadlineExceededError("authorization deadline passed before any change was written")


def action_side_effects(request: ActionRequest, snapshot: SignalSnapshot, now: datetime) -> dict[str, Any]:
    """Column values an allowed action writes to the deal."""
    match request.action:
        case EnforcementAction.DEAL_ADVANCE_STAGE:
            target = resolve_target_stage(request, snapshot)
            if target is None:
                raise UnclassifiedDecisionError("stage advance allowed without a target stage")
            return {"stage": target.value}
        case EnforcementAction.DEAL_UPDATE:
            if request.changes is None:
                raise UnclassifiedDecisionError("deal update allowed without changes")
            return request.changes.model_dump(exclude_none=True)
        case EnforcementAction.DEAL_CLOSE:
            if request.close_status is None:
                raise UnclassifiedDecisionError("deal close allowed without a close status")
            return {"status": request.close_status.value, "closed_at": now}
        case EnforcementAction.DEAL_FREEZE:
            return _freeze_values(ReasonCode.MANUAL_HOLD, now)
        case EnforcementAction.DEAL_UNFREEZE:
            return {"enforcement_state": EnforcementState.OPEN.value, "frozen_reason_code": None, "frozen_at": None}
        case EnforcementAction.COMMERCIAL_APPROVE_DISCOUNT:
            return {"approved_discount_percent": request.discount_percent}
        case EnforcementAction.COMMERCIAL_APPROVE_PRICING:
            return {"approved_price": request.price}
        case _:
            raise UnclassifiedDecisionError(f"no side effects defined for {request.action}")


def _freeze_values(reason: ReasonCode, now: datetime) -> dict[str, Any]:
    return {"enforcement_state": EnforcementState.FROZEN.value, "frozen_reason_code": reason.value, "frozen_at": now}


@dataclass(slots=True)
class EnforcementGateway:
    signals: SignalProvider = field(default_factory=lambda: signal_provider)
    engine: PolicyEngine = policy_engine
    overrides: OverrideService = field(default_factory=lambda: override_service)
    ledger: DecisionLedger = field(default_factory=lambda: decision_ledger)
    clock: Callable[[], datetime] = utcnow
    config_provider: Callable[[], EnforcementPolicyConfig] = get_policy_config

    def authorize(
        self,
        session: Session,
        request: ActionRequest,
        deal_id: uuid.UUID,
        actor_id: str,
        *,
        override_token_id: uuid.UUID | None = None,
        deadline: float | None = None,
    ) -> AuthorizationResult:
        started = time.perf_counter()
        correlation_id = get_correlation_id()
        span_attributes = {"deal_id": str(deal_id), "actor_id": actor_id, "enforcement.action": request.action.value}
        with enforcement_span("enforcement.authorize", span_attributes) as span:
            try:
                record, resolution = self._authorize(
                    session, request, deal_id, actor_id, override_token_id, deadline, correlation_id
                )
            except EnforcementError as exc:
                session.rollback()
                self._record_failure(exc, request, deal_id, actor_id, span)
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                error = EnforcementStorageError("enforcement decision could not be persisted")
                self._record_failure(error, request, deal_id, actor_id, span)
                raise error from exc
            finally:
                observe_authorize_duration(request.action.value, time.perf_counter() - started)

            span.set_attribute("enforcement.outcome", resolution.outcome.value)
            span.set_attribute("enforcement.reason_code", resolution.reason_code.value)
            span.set_attribute("decision_id", str(record.id))

        decision = DecisionRead.from_record(record)
        deal = self.signals.load_deal(session, deal_id)
        self._after_commit(decision, resolution)
        return AuthorizationResult(
            allowed=decision.outcome is DecisionOutcome.ALLOWED,
            decision=decision,
            deal=DealRead.model_validate(deal),
        )

    def _authorize(
        self,
        session: Session,
        request: ActionRequest,
        deal_id: uuid.UUID,
        actor_id: str,
        override_token_id: uuid.UUID | None,
        deadline: float | None,
        correlation_id: str | None,
    ) -> tuple[EnforcementDecision, _Resolution]:
        config = self.config_provider()
        now = self.clock()
        snapshot = self.signals.snapshot(session, deal_id, actor_id, config=config, now=now)
        evaluated = self.engine.evaluate(request, snapshot, config)
        if override_token_id is not None:
            # Unknown tokens are rejected before anything is written.
            self.overrides.load(session, override_token_id)

        _check_deadline(deadline)

        decision_id = uuid.uuid4()
        resolution = self._resolve(session, request, snapshot, evaluated, config, override_token_id, decision_id, actor_id, now)
        if resolution.deal_values:
            self._write_deal(session, snapshot, resolution.deal_values, now)

        payload = {
            **snapshot.to_dict(),
            "request": request.action_params(),
            "evaluated": {
                "outcome": evaluated.outcome.value,
                "reason_code": evaluated.reason_code.value,
                "rule": evaluated.rule,
            },
            **resolution.notes,
        }
        record = self.ledger.append(
            session,
            decision_id=decision_id,
            deal_id=deal_id,
            actor_id=actor_id,
            action=request.action,
            outcome=resolution.outcome,
            reason_code=resolution.reason_code,
            signal_snapshot=payload,
            override_token_id=resolution.override_token_id,
            correlation_id=correlation_id,
            now=now,
        )
        session.commit()
        return record, resolution

    def _resolve(
        self,
        session: Session,
        request: ActionRequest,
        snapshot: SignalSnapshot,
        evaluated: PolicyDecision,
        config: EnforcementPolicyConfig,
        override_token_id: uuid.UUID | None,
        decision_id: uuid.UUID,
        actor_id: str,
        now: datetime,
    ) -> _Resolution:
        match evaluated.outcome:
            case DecisionOutcome.ALLOWED:
                return _Resolution(
                    outcome=DecisionOutcome.ALLOWED,
                    reason_code=evaluated.reason_code,
                    deal_values=action_side_effects(request, snapshot, now),
                    notes=self._unused_token_note(override_token_id),
                )
            case DecisionOutcome.DENIED:
                deal_values = None
                if evaluated.reason_code in config.auto_freeze_reason_codes and not snapshot.is_frozen:
                    deal_values = _freeze_values(evaluated.reason_code, now)
                return _Resolution(
                    outcome=DecisionOutcome.DENIED,
                    reason_code=evaluated.reason_code,
                    deal_values=deal_values,
                    notes=self._unused_token_note(override_token_id),
                )
            case DecisionOutcome.REQUIRES_OVERRIDE:
                if override_token_id is None:
                    return _Resolution(outcome=DecisionOutcome.REQUIRES_OVERRIDE, reason_code=evaluated.reason_code)
                try:
                    token = self.overrides.consume(
                        session,
                        override_token_id,
                        deal_id=snapshot.deal_id,
                        action_request=request,
                        actor_id=actor_id,
                        evaluated_reason=evaluated.reason_code,
                        decision_id=decision_id,
                        now=now,
                    )
                except (OverrideInvalidError, InvalidTransitionError) as exc:
                    logger.warning(
                        "override_rejected",
                        extra={
                            "deal_id": str(snapshot.deal_id),
                            "actor_id": actor_id,
                            "action": request.action.value,
                            "token_id": str(override_token_id),
                            "error_code": exc.code,
                        },
                    )
                    return _Resolution(
                        outcome=DecisionOutcome.DENIED,
                        reason_code=ReasonCode.OVERRIDE_INVALID,
                        notes={"override": {"token_id": str(override_token_id), "error": exc.code, "message": exc.message}},
                    )
                return _Resolution(
                    outcome=DecisionOutcome.ALLOWED,
                    reason_code=ReasonCode.OVERRIDE_APPLIED,
                    deal_values=action_side_effects(request, snapshot, now),
                    override_token_id=token.id,
                    notes={"override": {"token_id": str(token.id), "waived_reason_code": token.reason_code}},
                )
            case _:
                raise UnclassifiedDecisionError(f"unhandled policy outcome {evaluated.outcome}")

    @staticmethod
    def _unused_token_note(override_token_id: uuid.UUID | None) -> dict[str, Any]:
        if override_token_id is None:
            return {}
        return {"override": {"token_id": str(override_token_id), "error": "not_applicable"}}

    def _write_deal(self, session: Session, snapshot: SignalSnapshot, values: dict[str, Any], now: datetime) -> None:
        result = session.execute(
            update(Deal)
            .where(and_(Deal.id == snapshot.deal_id, Deal.row_version == snapshot.row_version))
            .values(**values, updated_at=now, row_version=Deal.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(
                "deal changed while the decision was being made",
                details={"deal_id": str(snapshot.deal_id), "row_version": snapshot.row_version},
            )

    def _record_failure(
        self,
        exc: EnforcementError,
        request: ActionRequest,
        deal_id: uuid.UUID,
        actor_id: str,
        span: Span,
    ) -> None:
        observe_authorize_failure(exc.code)
        span.set_attribute("enforcement.error", exc.code)
        fields = {
            "deal_id": str(deal_id),
            "actor_id": actor_id,
            "action": request.action.value,
            "error_code": exc.code,
            "error": exc.message,
        }
        if exc.internal:
            logger.error("authorize_failed", exc_info=True, extra=fields)
        else:
            logger.warning("authorize_failed", extra=fields)

    def _after_commit(self, decision: DecisionRead, resolution: _Resolution) -> None:
        observe_enforcement_decision(decision.action.value, decision.outcome.value, decision.reason_code.value)
        logger.info(
            "enforcement_decision",
            extra={
                "deal_id": str(decision.entity_id),
                "actor_id": decision.actor_id,
                "action": decision.action.value,
                "outcome": decision.outcome.value,
                "reason_code": decision.reason_code.value,
                "decision_id": str(decision.id),
                "token_id": str(decision.override_token_id) if decision.override_token_id else None,
            },
        )
        occurred_at = decision.created_at.isoformat()
        self._publish(
            "enforcement.decision_recorded",
            decision,
            occurred_at,
            {
                "decision_id": str(decision.id),
                "deal_id": str(decision.entity_id),
                "action": decision.action.value,
                "outcome": decision.outcome.value,
                "reason_code": decision.reason_code.value,
                "override_token_id": str(decision.override_token_id) if decision.override_token_id else None,
            },
        )
        if resolution.freezes:
            frozen_reason = resolution.deal_values["frozen_reason_code"] if resolution.deal_values else None
            observe_deal_frozen(str(frozen_reason))
            self._publish(
                "enforcement.deal_frozen",
                decision,
                occurred_at,
                {"deal_id": str(decision.entity_id), "reason_code": frozen_reason, "decision_id": str(decision.id)},
            )
        elif resolution.unfreezes:
            self._publish(
                "enforcement.deal_unfrozen",
                decision,
                occurred_at,
                {"deal_id": str(decision.entity_id), "decision_id": str(decision.id)},
            )

    @staticmethod
    def _publish(event_type: str, decision: DecisionRead, occurred_at: str, payload: dict[str, Any]) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": occurred_at,
                "actor_user_id": decision.actor_id,
                "correlation_id": decision.correlation_id,
                "payload": payload,
            }
        )

    def request_override(
        self,
        session: Session,
        *,
        deal_id: uuid.UUID,
        actor_id: str,
        action_request: ActionRequest,
        justification: str,
    ) -> OverrideRead:
        return self.overrides.request(
            session,
            deal_id=deal_id,
            actor_id=actor_id,
            action_request=action_request,
            justification=justification,
            config=self.config_provider(),
            now=self.clock(),
        )

    def approve_override(
        self,
        session: Session,
        token_id: uuid.UUID,
        approver_id: str,
        *,
        note: str | None = None,
    ) -> OverrideRead:
        return self.overrides.approve(session, token_id, approver_id, note=note, config=self.config_provider(), now=self.clock())

    def deny_override(
        self,
        session: Session,
        token_id: uuid.UUID,
        approver_id: str,
        *,
        note: str | None = None,
    ) -> OverrideRead:
        return self.overrides.deny(session, token_id, approver_id, note=note, now=self.clock())

    def get_override(self, session: Session, token_id: uuid.UUID) -> OverrideRead:
        return self.overrides.get(session, token_id, now=self.clock())

    def list_overrides(self, session: Session, deal_id: uuid.UUID) -> list[OverrideRead]:
        self.signals.load_deal(session, deal_id)
        return self.overrides.list_for_deal(session, deal_id, now=self.clock())

    def list_decisions(
        self,
        session: Session,
        deal_id: uuid.UUID,
        *,
        cursor: str | None = None,
        limit: int = 50,
    ) -> DecisionPage:
        self.signals.load_deal(session, deal_id)
        return self.ledger.list_for_deal(session, deal_id, cursor=cursor, limit=limit)

    def get_decision(self, session: Session, decision_id: uuid.UUID) -> DecisionRead:
        return self.ledger.get(session, decision_id)

    def signal_snapshot(self, session: Session, deal_id: uuid.UUID, actor_id: str) -> SignalSnapshot:
        return self.signals.snapshot(session, deal_id, actor_id, config=self.config_provider(), now=self.clock())


enforcement_gateway = EnforcementGateway()
