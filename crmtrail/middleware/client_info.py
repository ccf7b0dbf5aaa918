from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmtrail.context import reset_client_info, set_client_info


class ClientInfoMiddleware(BaseHTTPMiddleware):
    """Exposes the caller's address and user agent to SystemEvent writers."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        forwarded = request.headers.get("x-forwarded-for", "")
        ip_address = forwarded.split(",")[0].strip() or (request.client.host if request.client else None)
        token = set_client_info(ip_address, request.headers.get("user-agent"))
        try:
            return await call_next(request)
        finally:
            reset_client_info(token)
