from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealgate.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("dealgate.request")


def _request_fields(request: Request, path: str) -> dict[str, Any]:
    fields: dict[str, Any] = {"method": request.method, "path": path}
    deal_id = request.path_params.get("deal_id") if request.path_params else None
    if deal_id is not None:
        fields["deal_id"] = str(deal_id)
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=request.method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**_request_fields(request, path), "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # The route is only resolved once the router has run.
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.info(
            "http.request",
            extra={**_request_fields(request, path), "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response
