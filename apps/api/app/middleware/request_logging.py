from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_fields(request: Request) -> dict[str, str | None]:
    # get_current_user fills context.user_id once the bearer token is accepted
    context = getattr(request.state, "context", None)
    return {
        "user_id": getattr(context, "user_id", None),
        "client_ip": getattr(context, "ip_address", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line and one metrics sample per request."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms, **_request_fields(request)},
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **_request_fields(request),
            },
        )
        return response
