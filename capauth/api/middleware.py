from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("capauth.api")

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate requests and log lines through X-Request-ID.

    Security notes:
    - A client-supplied id is echoed only if it is short and made of
      [A-Za-z0-9._-]; anything else is replaced to keep log lines clean.
    """

    def __init__(self, app, *, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get(self._header_name) or ""
        if not _SAFE_REQUEST_ID.match(rid):
            rid = uuid4().hex
        request.state.request_id = rid
        response: Response = await call_next(request)
        response.headers[self._header_name] = rid
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One structured log line per request.

    Capability names appear in paths and are logged; request bodies and API
    keys never are.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.monotonic()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            return response
        finally:
            status_code = getattr(response, "status_code", 500)
            level = logging.WARNING if status_code >= 500 else logging.INFO
            log.log(
                level,
                "api_request",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "actor_id": getattr(request.state, "actor_id", None),
                    "master": getattr(request.state, "master", False),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
