"""
Error taxonomy for the Kirana API.

Every error is an HTTPException so services can raise them directly and
FastAPI turns them into responses. The handlers registered here render all
failures as ``{"success": false, "message": ...}``.
"""
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger(__name__)


class AppError(HTTPException):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, headers: dict | None = None):
        super().__init__(status_code=self.status_code, detail=message or self.default_message, headers=headers)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class InvalidQuantity(ValidationError):
    default_message = "Quantity cannot be negative"


class InvalidStatus(ValidationError):
    default_message = "Invalid status"


class IllegalTransition(ValidationError):
    default_message = "Illegal status transition"


class AlreadyTerminal(ValidationError):
    default_message = "Order can no longer be changed"


class ConflictError(AppError):
    status_code = 400
    default_message = "Resource already exists"


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Invalid or expired token"

    def __init__(self, message: str | None = None):
        super().__init__(message, headers={"WWW-Authenticate": "Bearer"})


class InvalidCredentials(AuthenticationError):
    default_message = "Invalid credentials"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class CartNotFound(NotFoundError):
    default_message = "Cart not found"


class ItemNotFound(NotFoundError):
    default_message = "Item not found in cart"


class InternalError(AppError):
    status_code = 500
    default_message = "Internal server error"


def error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message}, headers=headers)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors or any(e.get("type") == "missing" for e in errors):
        return "Missing required fields"
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    return f"{field}: {first.get('msg')}" if field else str(first.get("msg"))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(400, _validation_message(exc))

    @app.exception_handler(PyMongoError)
    async def database_error_handler(request: Request, exc: PyMongoError):
        logger.error("database_error", path=request.url.path, error=str(exc))
        return error_response(500, "Database error")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return error_response(500, InternalError.default_message)
