from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from salesops.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("salesops.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line and one metric sample per request.

    Rejected domain operations are logged at WARNING with the error kind the
    exception handler left on ``request.state``.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        company_id = request.headers.get("x-company-id")
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - started
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": round(duration * 1000, 2),
                    "company_id": company_id,
                },
            )
            raise

        duration = time.perf_counter() - started
        # Route is only resolved once the router has run.
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration)

        extra = {
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(duration * 1000, 2),
            "company_id": company_id,
        }
        error_kind = getattr(request.state, "error_kind", None)
        if error_kind is not None:
            logger.warning("http.rejected", extra={**extra, "kind": error_kind})
        else:
            logger.info("http.request", extra=extra)
        return response
