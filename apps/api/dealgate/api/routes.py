from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from dealgate.core.auth import AuthUser, get_current_user
from dealgate.core.config import get_settings
from dealgate.enforcement.api import router as enforcement_router
from dealgate.enforcement.config import get_policy_config
from dealgate.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(enforcement_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    policy = get_policy_config()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "override_window_hours": str(policy.override_window_hours),
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
