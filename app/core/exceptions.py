"""
Error taxonomy for the lending core and its HTTP mapping.

Services raise these; routers let them propagate and the handlers
registered in ``register_exception_handlers`` turn them into JSON responses.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LendingError(Exception):
    """Base class for errors surfaced to API callers"""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be processed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"detail": self.detail, "error": type(self).__name__}


class ValidationError(LendingError, ValueError):
    """Input outside its allowed bounds"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Invalid input"

    def __init__(self, detail: Optional[str] = None, field: Optional[str] = None):
        super().__init__(detail)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class ConflictError(LendingError):
    """Operation conflicts with the current state of a resource"""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Loan is no longer available"


class InvalidTransitionError(ConflictError):
    """Loan status change not allowed by the lifecycle"""
    default_detail = "Invalid loan status transition"


class NotFoundError(LendingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class PermissionDeniedError(LendingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not allowed"


class AuthenticationError(LendingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Could not validate credentials"


class InternalError(LendingError):
    """Unexpected store/ledger failure; details are logged, never returned"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal error, please try again later"


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path,
                    type(exc).__name__, exc.detail)

    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=InternalError().to_dict()
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the lending error handlers to the application"""
    app.add_exception_handler(LendingError, lending_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
