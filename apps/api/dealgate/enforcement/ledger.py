from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from dealgate.core.config import get_settings
from dealgate.enforcement.enums import DecisionOutcome, EnforcementAction, ReasonCode
from dealgate.enforcement.errors import EnforcementValidationError, NotFoundError
from dealgate.enforcement.models import EnforcementDecision, utcnow
from dealgate.enforcement.schemas import DecisionPage, DecisionRead


DEFAULT_PAGE_SIZE = 50
MAX_SEQ = 2**63 - 1


def _parse_cursor(cursor: str) -> int:
    # Cursors are ledger seq values, so anything outside BIGINT never came from here.
    if not (cursor.isascii() and cursor.isdecimal()) or len(cursor) > 19 or int(cursor) > MAX_SEQ:
        raise EnforcementValidationError("cursor is not valid", details={"cursor": cursor})
    return int(cursor)


@dataclass(slots=True)
class DecisionLedger:
    max_page_size: int = 200

    def append(
        self,
        session: Session,
        *,
        deal_id: uuid.UUID,
        actor_id: str,
        action: EnforcementAction,
        outcome: DecisionOutcome,
        reason_code: ReasonCode,
        signal_snapshot: dict[str, Any],
        override_token_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
        decision_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> EnforcementDecision:
        """Stage a decision in the caller's unit of work; the caller commits."""
        if reason_code is ReasonCode.MANUAL_HOLD:
            raise EnforcementValidationError("MANUAL_HOLD is a freeze reason, not a decision reason")
        record = EnforcementDecision(
            id=decision_id or uuid.uuid4(),
            deal_id=deal_id,
            actor_id=actor_id,
            action=action.value,
            outcome=outcome.value,
            reason_code=reason_code.value,
            signal_snapshot=signal_snapshot,
            override_token_id=override_token_id,
            correlation_id=correlation_id,
            created_at=now or utcnow(),
        )
        session.add(record)
        session.flush()
        return record

    def get(self, session: Session, decision_id: uuid.UUID) -> DecisionRead:
        record = session.scalar(select(EnforcementDecision).where(EnforcementDecision.id == decision_id))
        if record is None:
            raise NotFoundError("decision", decision_id)
        return DecisionRead.from_record(record)

    def list_for_deal(
        self,
        session: Session,
        deal_id: uuid.UUID,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> DecisionPage:
        """Most recent first. ``next_cursor`` resumes strictly after the last item."""
        if limit < 1 or limit > self.max_page_size:
            raise EnforcementValidationError(
                f"limit must be between 1 and {self.max_page_size}",
                details={"limit": limit},
            )

        conditions = [EnforcementDecision.deal_id == deal_id]
        if cursor is not None:
            conditions.append(EnforcementDecision.seq < _parse_cursor(cursor))

        rows = session.scalars(
            select(EnforcementDecision)
            .where(and_(*conditions))
            .order_by(EnforcementDecision.seq.desc())
            .limit(limit + 1)
        ).all()

        page = rows[:limit]
        next_cursor = str(page[-1].seq) if len(rows) > limit else None
        return DecisionPage(items=[DecisionRead.from_record(item) for item in page], next_cursor=next_cursor)


decision_ledger = DecisionLedger(max_page_size=get_settings().decisions_page_size_max)
