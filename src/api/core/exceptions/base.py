"""Global exception handlers for the FastAPI application."""

import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..messages import MessageCode, get_default_message
from src.utils.logger import get_logger

logger = get_logger(__name__)


class UpscalerException(Exception):
    """Base exception for the billing API with unified message codes."""

    def __init__(
        self,
        message_code: MessageCode,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict | None = None,
        headers: dict | None = None,
    ):
        self.message_code = message_code
        self.status_code = status_code
        self.message: str = get_default_message(message_code)
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)

    def to_response_dict(self) -> dict:
        return {
            "message_code": self.message_code,
            "message": self.message,
            "details": self.details,
        }


def _serializable_errors(errors: list) -> list[dict]:
    serializable = []
    for error in errors:
        error_dict = dict(error)
        if "input" in error_dict and hasattr(error_dict["input"], "isoformat"):
            error_dict["input"] = error_dict["input"].isoformat()
        # ctx may carry exception instances
        if "ctx" in error_dict:
            error_dict["ctx"] = {k: str(v) for k, v in error_dict["ctx"].items()}
        serializable.append(error_dict)
    return serializable


def _error_response(
    status_code: int,
    message_code: MessageCode,
    details: dict,
    message: str | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "message_code": message_code,
            "message": message or get_default_message(message_code),
            "details": details,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Every handler answers with the ``message_code``/``message``/``details``
    envelope so clients can branch on the code alone.
    """

    @app.exception_handler(UpscalerException)
    async def upscaler_exception_handler(
        request: Request, exc: UpscalerException
    ) -> JSONResponse:
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "upscaler_exception",
            message_code=exc.message_code.value,
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            details=exc.details,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response_dict(),
            headers=exc.headers,
        )

    @app.exception_handler(HTTPException)
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
            method=request.method,
        )
        code = (
            MessageCode.INTERNAL_ERROR
            if exc.status_code >= 500
            else MessageCode.BAD_REQUEST
        )
        return _error_response(
            exc.status_code,
            code,
            {"description": "HTTP exception occurred"},
            message=str(exc.detail),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning("request_validation_failed", path=request.url.path)
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            MessageCode.INVALID_INPUT,
            {
                "description": "Request validation failed",
                "validation_errors": _serializable_errors(exc.errors()),
            },
        )

    @app.exception_handler(ValidationError)
    async def pydantic_validation_exception_handler(
        request: Request, exc: ValidationError
    ) -> JSONResponse:
        logger.warning("model_validation_failed", path=request.url.path)
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            MessageCode.VALIDATION_ERROR,
            {"validation_errors": _serializable_errors(exc.errors())},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(
        request: Request, exc: SQLAlchemyError
    ) -> JSONResponse:
        logger.error(
            "database_error",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exception_type=type(exc).__name__,
        )
        if isinstance(exc, IntegrityError):
            return _error_response(
                status.HTTP_409_CONFLICT,
                MessageCode.BAD_REQUEST,
                {"database_error": "Constraint violation"},
                message="Data integrity constraint violated",
            )
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            MessageCode.INTERNAL_ERROR,
            {"database_error": "Internal database error"},
            message="Database error occurred",
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        if isinstance(exc, UpscalerException):
            return await upscaler_exception_handler(request, exc)

        logger.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exception_type=type(exc).__name__,
            traceback=traceback.format_exc(),
        )
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            MessageCode.INTERNAL_ERROR,
            {"error_type": type(exc).__name__},
        )
