from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from starlette.requests import Request

from salesforce_pro.context import get_correlation_id

_VALUE_ERROR_PREFIX = "Value error, "
_SKIPPED_LOC_PARTS = {"body", "query", "path", "header", "cookie"}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__, headers=headers)


def _clean_message(message: str) -> str:
    if message.startswith(_VALUE_ERROR_PREFIX):
        return message[len(_VALUE_ERROR_PREFIX) :]
    return message


def validation_details(errors: Sequence[Any]) -> list[dict[str, str]]:
    details = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if str(part) not in _SKIPPED_LOC_PARTS]
        details.append({"field": ".".join(loc), "message": _clean_message(str(error.get("msg", "")))})
    return details


def first_error_message(errors: Sequence[Any], default: str = "Invalid payload") -> str:
    details = validation_details(errors)
    if not details:
        return default
    first = details[0]
    return f"{first['field']}: {first['message']}" if first["field"] else first["message"]
