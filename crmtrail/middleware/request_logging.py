from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmtrail.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crmtrail.request")

# Health and metrics endpoints are polled constantly; they only show up at DEBUG.
_POLLED_PATHS = frozenset({"/health", "/metrics"})


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.WARNING
    if path in _POLLED_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500, started, failed=True)
            raise
        self._record(request, response.status_code, started)
        return response

    @staticmethod
    def _record(request: Request, status_code: int, started: float, *, failed: bool = False) -> None:
        # The route is only resolved once the router has run, so the label is computed afterwards.
        path = resolve_http_path_label(request)
        elapsed = time.perf_counter() - started
        observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
        extra = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(elapsed * 1000, 2),
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=extra)
        else:
            logger.log(_level_for(path, status_code), "http.request", extra=extra)
