"""
Error type and handlers for the `{state: false, message}` response shape.
"""
import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised by routers and services; rendered as `{state: false, message}`."""

    def __init__(self, status_code: int, message: str, **payload: Any):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload: Dict[str, Any] = payload


def _failure(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"state": False, "message": message, **extra})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return _failure(exc.status_code, exc.message, **exc.payload)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return _failure(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            errors.append({"field": loc, "message": err.get("msg", "")})
        message = errors[0]["message"] if errors else "Invalid request"
        return _failure(422, message, errors=errors)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _failure(500, "Internal server error")
