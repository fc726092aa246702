from __future__ import annotations

import secrets
import time
import uuid
from collections.abc import Callable

from fastapi import Header, HTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .config import Settings
from .errors import ErrorCode, new_error, status_for
from .logging import log_event, request_id_var


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Binds X-Request-ID (or a fresh uuid4) to the request and logs its latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_var.set(rid)
        t0 = time.perf_counter()
        try:
            response = await call_next(request)
            log_event(
                "request_finished",
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                },
            )
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response


def api_key_dependency(settings: Settings) -> Callable[[str | None], None]:
    required_key = settings.security.api_key.strip()

    def _check(x_api_key: str | None = Header(default=None, convert_underscores=True)) -> None:
        if required_key == "":
            return
        if x_api_key is None or not secrets.compare_digest(x_api_key, required_key):
            body = new_error(ErrorCode.unauthorized, request_id_var.get())
            raise HTTPException(
                status_code=status_for(ErrorCode.unauthorized), detail=body.to_dict()
            )

    return _check
