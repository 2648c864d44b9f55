from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from dealgate import events
from dealgate.enforcement.config import EnforcementPolicyConfig, get_policy_config
from dealgate.enforcement.enums import (
    OVERRIDE_TRANSITIONS,
    AuthorityLevel,
    DecisionOutcome,
    EnforcementAction,
    OverrideStatus,
    ReasonCode,
)
from dealgate.enforcement.errors import (
    ConcurrentModificationError,
    EnforcementValidationError,
    InvalidTransitionError,
    NotFoundError,
    OverrideInvalidError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
)
from dealgate.enforcement.models import ActorProfile, OverrideToken, ensure_utc, utcnow
from dealgate.enforcement.policy import PolicyEngine, policy_engine
from dealgate.enforcement.schemas import ActionRequest, OverrideRead
from dealgate.enforcement.signals import SignalProvider, signal_provider
from dealgate.metrics import observe_override_transition


logger = logging.getLogger("dealgate.enforcement.overrides")


def effective_status(token: OverrideToken, now: datetime) -> OverrideStatus:
    """Stored status with lazy expiry applied; nothing sweeps stale approvals."""
    status = OverrideStatus(token.status)
    if status is OverrideStatus.APPROVED:
        expires_at = ensure_utc(token.expires_at)
        if expires_at is None or expires_at <= now:
            return OverrideStatus.EXPIRED
    return status


def required_approver_floor(
    config: EnforcementPolicyConfig,
    reason: ReasonCode,
    action: EnforcementAction,
    requester_level: AuthorityLevel,
) -> AuthorityLevel:
    """Level an approver must strictly exceed to waive ``reason``."""
    level = config.override_authority[reason]
    # Waiving an authority gate needs an approver who holds that authority.
    if reason is ReasonCode.AUTHORITY_INSUFFICIENT:
        level = max(level, config.action_authority[action] - 1)
    elif reason is ReasonCode.DISCOUNT_ABOVE_AUTHORITY:
        level = max(level, config.discount_escalation_level - 1)
    return AuthorityLevel(max(level, requester_level))


def _ensure_transition(current: OverrideStatus, target: OverrideStatus) -> None:
    if target not in OVERRIDE_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"override cannot move from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value},
        )


@dataclass(slots=True)
class OverrideService:
    engine: PolicyEngine = policy_engine
    signals: SignalProvider = field(default_factory=lambda: signal_provider)
    clock: Callable[[], datetime] = utcnow

    def to_read(self, token: OverrideToken, now: datetime | None = None) -> OverrideRead:
        return OverrideRead(
            id=token.id,
            deal_id=token.deal_id,
            action=EnforcementAction(token.action),
            action_params=dict(token.action_params or {}),
            requested_by=token.requested_by,
            justification=token.justification,
            reason_code=ReasonCode(token.reason_code),
            required_authority_level=AuthorityLevel(token.required_authority_level),
            status=effective_status(token, now or self.clock()),
            decided_by=token.decided_by,
            decided_at=token.decided_at,
            decision_note=token.decision_note,
            expires_at=token.expires_at,
            consumed_at=token.consumed_at,
            consumed_decision_id=token.consumed_decision_id,
            created_at=token.created_at,
        )

    def load(self, session: Session, token_id: uuid.UUID) -> OverrideToken:
        token = session.scalar(
            select(OverrideToken).where(OverrideToken.id == token_id).execution_options(populate_existing=True)
        )
        if token is None:
            raise NotFoundError("override", token_id)
        return token

    def get(self, session: Session, token_id: uuid.UUID, *, now: datetime | None = None) -> OverrideRead:
        return self.to_read(self.load(session, token_id), now)

    def list_for_deal(self, session: Session, deal_id: uuid.UUID, *, now: datetime | None = None) -> list[OverrideRead]:
        now = now or self.clock()
        rows = session.scalars(
            select(OverrideToken)
            .where(OverrideToken.deal_id == deal_id)
            .order_by(OverrideToken.created_at.desc(), OverrideToken.id.asc())
        ).all()
        return [self.to_read(item, now) for item in rows]

    def request(
        self,
        session: Session,
        *,
        deal_id: uuid.UUID,
        actor_id: str,
        action_request: ActionRequest,
        justification: str,
        config: EnforcementPolicyConfig | None = None,
        now: datetime | None = None,
    ) -> OverrideRead:
        config = config or get_policy_config()
        now = now or self.clock()
        justification = (justification or "").strip()
        if not justification:
            raise EnforcementValidationError("override justification must not be empty")

        snapshot = self.signals.snapshot(session, deal_id, actor_id, config=config, now=now)
        decision = self.engine.evaluate(action_request, snapshot, config)
        if decision.outcome is not DecisionOutcome.REQUIRES_OVERRIDE:
            raise InvalidTransitionError(
                f"{action_request.action.value} is {decision.outcome.value} ({decision.reason_code.value}); "
                "only REQUIRES_OVERRIDE decisions can be overridden",
                details={"outcome": decision.outcome.value, "reason_code": decision.reason_code.value},
            )

        token = OverrideToken(
            deal_id=deal_id,
            action=action_request.action.value,
            action_params=action_request.action_params(),
            requested_by=actor_id,
            justification=justification,
            reason_code=decision.reason_code.value,
            required_authority_level=int(
                required_approver_floor(config, decision.reason_code, action_request.action, snapshot.actor_authority_level)
            ),
            status=OverrideStatus.REQUESTED.value,
            created_at=now,
            updated_at=now,
        )
        session.add(token)
        session.commit()
        session.refresh(token)

        observe_override_transition(OverrideStatus.REQUESTED.value)
        logger.info(
            "override_requested",
            extra={
                "deal_id": str(deal_id),
                "actor_id": actor_id,
                "action": action_request.action.value,
                "reason_code": decision.reason_code.value,
                "token_id": str(token.id),
            },
        )
        self._publish(token, "enforcement.override_requested", actor_id, now)
        return self.to_read(token, now)

    def approve(
        self,
        session: Session,
        token_id: uuid.UUID,
        approver_id: str,
        *,
        note: str | None = None,
        config: EnforcementPolicyConfig | None = None,
        now: datetime | None = None,
    ) -> OverrideRead:
        config = config or get_policy_config()
        now = now or self.clock()
        expires_at = now + timedelta(hours=config.override_window_hours)
        return self._decide(session, token_id, approver_id, OverrideStatus.APPROVED, note, expires_at, now)

    def deny(
        self,
        session: Session,
        token_id: uuid.UUID,
        approver_id: str,
        *,
        note: str | None = None,
        now: datetime | None = None,
    ) -> OverrideRead:
        now = now or self.clock()
        return self._decide(session, token_id, approver_id, OverrideStatus.DENIED, note, None, now)

    def _decide(
        self,
        session: Session,
        token_id: uuid.UUID,
        approver_id: str,
        target: OverrideStatus,
        note: str | None,
        expires_at: datetime | None,
        now: datetime,
    ) -> OverrideRead:
        token = self.load(session, token_id)
        _ensure_transition(effective_status(token, now), target)

        if approver_id == token.requested_by:
            raise InvalidTransitionError("an override cannot be decided by its requester")
        approver = session.get(ActorProfile, approver_id)
        approver_level = AuthorityLevel(approver.authority_level) if approver is not None else AuthorityLevel.NONE
        if approver_level <= token.required_authority_level:
            raise InvalidTransitionError(
                "approver authority is insufficient for this override",
                details={
                    "approver_level": int(approver_level),
                    "required_above": token.required_authority_level,
                },
            )

        result = session.execute(
            update(OverrideToken)
            .where(
                and_(
                    OverrideToken.id == token.id,
                    OverrideToken.status == OverrideStatus.REQUESTED.value,
                    OverrideToken.row_version == token.row_version,
                )
            )
            .values(
                status=target.value,
                decided_by=approver_id,
                decided_at=now,
                decision_note=note,
                expires_at=expires_at,
                updated_at=now,
                row_version=OverrideToken.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConcurrentModificationError("override was decided concurrently", details={"token_id": str(token_id)})
        session.commit()

        token = self.load(session, token_id)
        observe_override_transition(target.value)
        logger.info(
            "override_decided",
            extra={
                "deal_id": str(token.deal_id),
                "actor_id": approver_id,
                "token_id": str(token.id),
                "token_status": target.value,
            },
        )
        event_type = "enforcement.override_approved" if target is OverrideStatus.APPROVED else "enforcement.override_denied"
        self._publish(token, event_type, approver_id, now)
        return self.to_read(token, now)

    def consume(
        self,
        session: Session,
        token_id: uuid.UUID,
        *,
        deal_id: uuid.UUID,
        action_request: ActionRequest,
        actor_id: str,
        evaluated_reason: ReasonCode,
        decision_id: uuid.UUID,
        now: datetime | None = None,
    ) -> OverrideToken:
        """Mark an approved token consumed inside the caller's transaction.

        Exactly one caller can win: the update is conditional on the token still
        being APPROVED, unexpired and at the row_version that was read.
        """
        now = now or self.clock()
        token = self.load(session, token_id)

        mismatches = []
        if token.deal_id != deal_id:
            mismatches.append("deal_id")
        if token.action != action_request.action.value:
            mismatches.append("action")
        if dict(token.action_params or {}) != action_request.action_params():
            mismatches.append("action_params")
        if token.requested_by != actor_id:
            mismatches.append("requested_by")
        if token.reason_code != evaluated_reason.value:
            mismatches.append("reason_code")
        if mismatches:
            raise OverrideInvalidError(
                "override does not cover this request",
                details={"token_id": str(token_id), "mismatched": mismatches},
            )

        self._raise_unless_consumable(token, now)

        result = session.execute(
            update(OverrideToken)
            .where(
                and_(
                    OverrideToken.id == token.id,
                    OverrideToken.status == OverrideStatus.APPROVED.value,
                    OverrideToken.expires_at > now,
                    OverrideToken.row_version == token.row_version,
                )
            )
            .values(
                status=OverrideStatus.CONSUMED.value,
                consumed_at=now,
                consumed_decision_id=decision_id,
                updated_at=now,
                row_version=OverrideToken.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Lost the race; report what the winner left behind.
            self._raise_unless_consumable(self.load(session, token_id), now)
            raise TokenAlreadyConsumedError("override token was consumed concurrently", details={"token_id": str(token_id)})

        token = self.load(session, token_id)
        observe_override_transition(OverrideStatus.CONSUMED.value)
        return token

    def _raise_unless_consumable(self, token: OverrideToken, now: datetime) -> None:
        status = effective_status(token, now)
        if status is OverrideStatus.EXPIRED:
            raise TokenExpiredError("override token has expired", details={"token_id": str(token.id)})
        if status is OverrideStatus.CONSUMED:
            raise TokenAlreadyConsumedError("override token was already consumed", details={"token_id": str(token.id)})
        if status is not OverrideStatus.APPROVED:
            raise InvalidTransitionError(
                f"override is {status.value}, not APPROVED",
                details={"token_id": str(token.id), "status": status.value},
            )

    def _publish(self, token: OverrideToken, event_type: str, actor_id: str, now: datetime) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": now.isoformat(),
                "actor_user_id": actor_id,
                "payload": {
                    "token_id": str(token.id),
                    "deal_id": str(token.deal_id),
                    "action": token.action,
                    "reason_code": token.reason_code,
                    "status": token.status,
                },
            }
        )


override_service = OverrideService()
