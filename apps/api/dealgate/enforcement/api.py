from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealgate.context import get_correlation_id
from dealgate.core.auth import AuthUser, get_current_user
from dealgate.core.config import get_settings
from dealgate.core.database import get_db
from dealgate.enforcement.errors import EnforcementError
from dealgate.enforcement.gateway import deadline_after, enforcement_gateway
from dealgate.enforcement.intake import intake_service
from dealgate.enforcement.schemas import (
    ActorProfileRead,
    ActorProfileUpsert,
    AuthorizationResult,
    AuthorizeRequest,
    DealCreate,
    DealRead,
    DecisionPage,
    DecisionRead,
    EvidenceRead,
    EvidenceUpsert,
    HealthScoreCreate,
    HealthScoreRead,
    OverrideCreate,
    OverrideDecisionRequest,
    OverrideRead,
    SignalSnapshotRead,
)


logger = logging.getLogger("dealgate.enforcement.api")

router = APIRouter(prefix="/api/enforcement", tags=["enforcement"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: Exception, fallback_code: str) -> JSONResponse:
    if isinstance(exc, EnforcementError):
        if exc.internal:
            logger.error(
                "enforcement_internal_error",
                exc_info=exc,
                extra={"path": request.url.path, "error_code": exc.code, "error": exc.message},
            )
        return error_response(
            request,
            status_code=exc.http_status,
            code=exc.code,
            message=exc.public_message,
            details=None if exc.internal else exc.details,
        )
    if isinstance(exc, HTTPException):
        code = "forbidden" if exc.status_code == status.HTTP_403_FORBIDDEN else fallback_code
        return error_response(request, status_code=exc.status_code, code=code, message=str(exc.detail), details=exc.detail)
    raise exc


def require_permission(user: AuthUser, permission: str) -> None:
    if permission not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "enforcement.deals.write")
        return intake_service.create_deal(db, user.sub, dto)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "deal_create_failed")


@router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "enforcement.deals.read")
        return intake_service.get_deal(db, deal_id)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "deal_read_failed")


@router.put("/deals/{deal_id}/evidence", response_model=EvidenceRead)
def upsert_evidence(
    request: Request,
    deal_id: uuid.UUID,
    dto: EvidenceUpsert,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EvidenceRead | JSONResponse:
    try:
        require_permission(user, "enforcement.evidence.write")
        return intake_service.upsert_evidence(db, deal_id, user.sub, dto)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "evidence_write_failed")


@router.get("/deals/{deal_id}/evidence", response_model=list[EvidenceRead])
def list_evidence(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[EvidenceRead] | JSONResponse:
    try:
        require_permission(user, "enforcement.deals.read")
        return intake_service.list_evidence(db, deal_id)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "evidence_read_failed")


@router.post("/deals/{deal_id}/health-scores", response_model=HealthScoreRead, status_code=status.HTTP_201_CREATED)
def record_health_score(
    request: Request,
    deal_id: uuid.UUID,
    dto: HealthScoreCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> HealthScoreRead | JSONResponse:
    try:
        require_permission(user, "enforcement.health.write")
        return intake_service.record_health(db, deal_id, user.sub, dto)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "health_write_failed")


@router.get("/deals/{deal_id}/signals", response_model=SignalSnapshotRead)
def read_signals(
    request: Request,
    deal_id: uuid.UUID,
    actor_id: str | None = Query(default=None, min_length=1),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> SignalSnapshotRead | JSONResponse:
    try:
        require_permission(user, "enforcement.deals.read")
        snapshot = enforcement_gateway.signal_snapshot(db, deal_id, actor_id or user.sub)
        return SignalSnapshotRead.model_validate(asdict(snapshot))
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "signals_read_failed")


@router.post("/deals/{deal_id}/authorize", response_model=AuthorizationResult)
def authorize_action(
    request: Request,
    deal_id: uuid.UUID,
    dto: AuthorizeRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AuthorizationResult | JSONResponse:
    try:
        require_permission(user, "enforcement.authorize")
        return enforcement_gateway.authorize(
            db,
            dto,
            deal_id,
            user.sub,
            override_token_id=dto.override_token_id,
            deadline=deadline_after(get_settings().authorize_timeout_seconds),
        )
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "authorize_failed")


@router.get("/deals/{deal_id}/decisions", response_model=DecisionPage)
def list_decisions(
    request: Request,
    deal_id: uuid.UUID,
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DecisionPage | JSONResponse:
    try:
        require_permission(user, "enforcement.decisions.read")
        return enforcement_gateway.list_decisions(db, deal_id, cursor=cursor, limit=limit)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "decision_list_failed")


@router.get("/deals/{deal_id}/overrides", response_model=list[OverrideRead])
def list_deal_overrides(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[OverrideRead] | JSONResponse:
    try:
        require_permission(user, "enforcement.overrides.read")
        return enforcement_gateway.list_overrides(db, deal_id)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "override_list_failed")


@router.get("/decisions/{decision_id}", response_model=DecisionRead)
def get_decision(
    request: Request,
    decision_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DecisionRead | JSONResponse:
    try:
        require_permission(user, "enforcement.decisions.read")
        return enforcement_gateway.get_decision(db, decision_id)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "decision_read_failed")


@router.post("/overrides", response_model=OverrideRead, status_code=status.HTTP_201_CREATED)
def request_override(
    request: Request,
    dto: OverrideCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OverrideRead | JSONResponse:
    try:
        require_permission(user, "enforcement.overrides.request")
        return enforcement_gateway.request_override(
            db,
            deal_id=dto.deal_id,
            actor_id=user.sub,
            action_request=dto,
            justification=dto.justification,
        )
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "override_request_failed")


@router.get("/overrides/{token_id}", response_model=OverrideRead)
def get_override(
    request: Request,
    token_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OverrideRead | JSONResponse:
    try:
        require_permission(user, "enforcement.overrides.read")
        return enforcement_gateway.get_override(db, token_id)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "override_read_failed")


@router.post("/overrides/{token_id}/approve", response_model=OverrideRead)
def approve_override(
    request: Request,
    token_id: uuid.UUID,
    dto: OverrideDecisionRequest | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OverrideRead | JSONResponse:
    try:
        require_permission(user, "enforcement.overrides.approve")
        return enforcement_gateway.approve_override(db, token_id, user.sub, note=dto.note if dto else None)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "override_approve_failed")


@router.post("/overrides/{token_id}/deny", response_model=OverrideRead)
def deny_override(
    request: Request,
    token_id: uuid.UUID,
    dto: OverrideDecisionRequest | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OverrideRead | JSONResponse:
    try:
        require_permission(user, "enforcement.overrides.approve")
        return enforcement_gateway.deny_override(db, token_id, user.sub, note=dto.note if dto else None)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "override_deny_failed")


@router.put("/actors/{user_id}", response_model=ActorProfileRead)
def upsert_actor_profile(
    request: Request,
    user_id: str,
    dto: ActorProfileUpsert,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ActorProfileRead | JSONResponse:
    try:
        require_permission(user, "enforcement.actors.manage")
        return intake_service.upsert_actor_profile(db, user_id, user.sub, dto)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "actor_write_failed")


@router.get("/actors/{user_id}", response_model=ActorProfileRead)
def get_actor_profile(
    request: Request,
    user_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ActorProfileRead | JSONResponse:
    try:
        require_permission(user, "enforcement.actors.manage")
        return intake_service.get_actor_profile(db, user_id)
    except (EnforcementError, HTTPException) as exc:
        return _failure(request, exc, "actor_read_failed")
