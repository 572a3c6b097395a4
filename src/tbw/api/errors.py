from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from tbw.errors import (
    ConfigurationError,
    InsufficientBalanceError,
    NotFoundError,
    SignatureMismatchError,
    TbwError,
)

_STATUS_BY_ERROR = (
    (ConfigurationError, 400),
    (SignatureMismatchError, 400),
    (InsufficientBalanceError, 409),
    (NotFoundError, 404),
)


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    @staticmethod
    def from_tbw_error(e: TbwError) -> "ApiError":
        for cls, status in _STATUS_BY_ERROR:
            if isinstance(e, cls):
                return ApiError(status, e.kind, e.message, dict(e.details))
        return ApiError(500, e.kind, e.message, dict(e.details))

    def body(self) -> Dict[str, Any]:
        err: Dict[str, Any] = {"kind": self.code, "message": self.message}
        if self.details:
            err["details"] = self.details
        return {"success": False, "error": err}


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.body())


async def tbw_error_handler(request: Request, exc: TbwError) -> JSONResponse:
    return await api_error_handler(request, ApiError.from_tbw_error(exc))
