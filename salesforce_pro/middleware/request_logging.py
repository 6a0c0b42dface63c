from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from salesforce_pro.metrics import observe_http_request, resolve_http_path_label

logger = logging.getLogger("salesforce_pro.request")


def _request_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": resolve_http_path_label(request),
        "status_code": status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` record and one metrics sample per call, labelled by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields = _request_fields(request, 500, started)
            self._observe(fields)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        fields = _request_fields(request, response.status_code, started)
        self._observe(fields)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "http.request", extra=fields)
        return response

    @staticmethod
    def _observe(fields: dict[str, Any]) -> None:
        observe_http_request(
            method=fields["method"],
            path=fields["path"],
            status=fields["status_code"],
            duration=fields["duration_ms"] / 1000,
        )
