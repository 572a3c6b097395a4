# src/tbw/api/structured_logging.py
from __future__ import annotations

import logging
import os
import time
import uuid
from typing import FrozenSet, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from tbw.log_events import log_event

# Polled by supervisors; logged at DEBUG only.
_QUIET_PATHS: FrozenSet[str] = frozenset({"/health", "/metrics"})


def _enabled(raw: Optional[str]) -> bool:
    return (raw or "1").strip().lower() not in {"0", "false", "no", "n", "off"}


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One `operator_request` event per request on the operator socket.

    Operator calls log at INFO, health and metrics polls at DEBUG, and any
    5xx response at WARNING. Every response carries `x-request-id` and
    `x-response-time-ms`.

    TBW_LOG_REQUESTS=0 disables the events; the headers are always set.
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        self._enabled = _enabled(os.environ.get("TBW_LOG_REQUESTS"))
        self._logger = logging.getLogger("tbw.http")

    def _level(self, path: str, status: int) -> int:
        if status >= 500:
            return logging.WARNING
        if path in _QUIET_PATHS:
            return logging.DEBUG
        return logging.INFO

    async def dispatch(self, request: Request, call_next):
        started = time.monotonic()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        path = str(request.url.path or "")

        status = 500
        err: Optional[str] = None
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            status = int(response.status_code)
            return response
        except Exception as e:
            err = f"{type(e).__name__}: {e}"
            raise
        finally:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            if response is not None:
                response.headers.setdefault("x-request-id", request_id)
                response.headers["x-response-time-ms"] = str(elapsed_ms)
            if self._enabled:
                log_event(
                    self._logger,
                    "operator_request",
                    level=self._level(path, status),
                    request_id=request_id,
                    method=request.method,
                    path=path,
                    status=status,
                    duration_ms=elapsed_ms,
                    error=err,
                )
