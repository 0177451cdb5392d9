from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthenticatedError(AppError):
    def __init__(self, message: str = "Must be signed in"):
        super().__init__(message, code="UNAUTHENTICATED", status_code=status.HTTP_401_UNAUTHORIZED)


class InvalidArgumentError(AppError):
    def __init__(self, message: str = "Invalid argument", details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_ARGUMENT", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class PermissionDeniedError(AppError):
    def __init__(self, message: str = "Permission denied"):
        super().__init__(message, code="PERMISSION_DENIED", status_code=status.HTTP_403_FORBIDDEN)


class FailedPreconditionError(AppError):
    def __init__(self, message: str = "Failed precondition", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="FAILED_PRECONDITION",
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            details=details,
        )


class ResourceExhaustedError(AppError):
    def __init__(self, message: str = "Insufficient credits", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="RESOURCE_EXHAUSTED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details=details,
        )


class AbortedError(AppError):
    def __init__(self, message: str = "Aborted, retry later"):
        super().__init__(message, code="ABORTED", status_code=status.HTTP_409_CONFLICT)


class InternalError(AppError):
    def __init__(self, message: str = "Internal error"):
        super().__init__(message, code="INTERNAL", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_body(exc: AppError) -> dict[str, Any]:
    return {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = error_body(exc)
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from creditmeter.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
