"""
api/responses.py -- Builders for the {"head", "data"} response envelope.

Route handlers return ok(...) on success and raise api_error(...) on failure.
api_error() produces an HTTPException whose detail is {"code", "message"};
the HTTPException handler in api/main.py turns that detail into the envelope
head, so success and error bodies share one shape.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from api.models import ApiResponse, ResponseHead
from core.models import ResponseCode

# Used when an HTTPException carries a plain string detail (framework 404/405,
# or code that did not go through api_error()).
_STATUS_CODES: dict[int, ResponseCode] = {
    400: ResponseCode.VALIDATION_ERROR,
    401: ResponseCode.UNAUTHORIZED,
    403: ResponseCode.FORBIDDEN,
    404: ResponseCode.NOT_FOUND,
    405: ResponseCode.NOT_FOUND,
    409: ResponseCode.CONFLICT,
    422: ResponseCode.VALIDATION_ERROR,
    429: ResponseCode.RATE_LIMITED,
}


def code_for_status(status_code: int) -> ResponseCode:
    return _STATUS_CODES.get(status_code, ResponseCode.INTERNAL_ERROR)


def envelope(
    data: Any = None,
    code: int = ResponseCode.OK,
    message: str = "OK",
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ApiResponse(head=ResponseHead(code=int(code), message=message), data=data)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def ok(data: Any = None, status_code: int = 200, message: str = "OK") -> JSONResponse:
    return envelope(data=data, status_code=status_code, message=message)


def api_error(
    status_code: int,
    code: ResponseCode,
    message: str,
    headers: dict[str, str] | None = None,
) -> HTTPException:
    """Build (not raise) an HTTPException carrying an envelope code.

    Usage:
        raise api_error(404, ResponseCode.NOT_FOUND, "User not found.")
    """
    return HTTPException(
        status_code=status_code,
        detail={"code": int(code), "message": message},
        headers=headers,
    )
