"""Global error handling middleware for consistent error responses."""

import logging
import traceback
from typing import Any, Callable

from fastapi import HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.schemas.common import ErrorResponse
from src.services.errors import (
    InvalidTierError,
    OrderNotCompletableError,
    OrderNotFoundError,
    PaymentError,
    ProviderConfigurationError,
    ProviderError,
    SignatureInvalidError,
    UnsupportedProviderError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 30


class APIError(Exception):
    """Error returned to the client with a specific status code and error type."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type: str = "api_error",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code to return.
            error_type: Error category/type for client handling.
            details: Optional additional error details.
        """
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.details = details
        super().__init__(message)


class BadRequestError(APIError):
    """Request rejected by business rules."""

    def __init__(
        self,
        message: str = "Bad request",
        error_type: str = "bad_request",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type=error_type,
            details=details,
        )


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, message: str = "Resource not found", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_type="not_found",
            details=details,
        )


class ConflictError(APIError):
    """Resource state does not allow the operation."""

    def __init__(self, message: str = "Conflict", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_type="conflict",
            details=details,
        )


class ServiceUnavailableError(APIError):
    """Dependency unavailable or not configured; the request may be retried."""

    def __init__(
        self,
        message: str = "Service temporarily unavailable",
        error_type: str = "service_unavailable",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_type=error_type,
            details=details,
        )


def to_api_error(error: PaymentError) -> APIError:
    """Map a payment domain error to its HTTP representation.

    Transient failures become a plain 500 here. The webhook route answers
    503 for them instead, so providers redeliver.

    Args:
        error: Domain error raised by a service.

    Returns:
        APIError: Error carrying the status code and error type for clients.
    """
    if isinstance(error, (UnsupportedProviderError, OrderNotFoundError)):
        return NotFoundError(str(error))
    if isinstance(error, InvalidTierError):
        return BadRequestError(str(error), error_type="invalid_tier")
    if isinstance(error, SignatureInvalidError):
        return BadRequestError(str(error), error_type="invalid_signature")
    if isinstance(error, ProviderError):
        return BadRequestError(str(error), error_type="provider_rejected")
    if isinstance(error, OrderNotCompletableError):
        return ConflictError(str(error))
    if isinstance(error, ProviderConfigurationError):
        return ServiceUnavailableError("Payment provider is not configured", error_type="provider_not_configured")
    return APIError("Payment service temporarily unavailable, please retry", error_type="transient_error")


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: list[dict[str, Any]] | None = None,
    request_id: str | None = None,
) -> JSONResponse:
    """Create a standardized JSON error response.

    503 responses carry a Retry-After header.

    Args:
        error_type: Error category for client handling.
        message: Human-readable error description.
        status_code: HTTP status code.
        details: Optional error details.
        request_id: Optional request ID for tracing.

    Returns:
        JSONResponse: Formatted error response.
    """
    error_response = ErrorResponse.from_exception(
        error_type=error_type,
        message=message,
        details=details,
        request_id=request_id,
    )
    response = JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True),
    )
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        response.headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Answer request validation failures in the standard error format."""
    request_id = request.headers.get("X-Request-ID")
    logger.warning(
        "Validation failed on %s %s: %d error(s)",
        request.method,
        request.url.path,
        len(exc.errors()),
        extra={"request_id": request_id},
    )
    return create_error_response(
        error_type="validation_error",
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details=list(exc.errors()),
        request_id=request_id,
    )


def _api_error_response(error: APIError, request_id: str | None) -> JSONResponse:
    log = logger.error if error.status_code >= 500 else logger.warning
    log(
        "API error: %s - %s",
        error.error_type,
        error.message,
        extra={"request_id": request_id, "status_code": error.status_code},
    )
    return create_error_response(
        error_type=error.error_type,
        message=error.message,
        status_code=error.status_code,
        details=error.details,
        request_id=request_id,
    )


async def error_handler_middleware(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Middleware to catch and format all exceptions.

    Payment domain errors escaping a route are translated with
    to_api_error(). Unexpected exceptions are logged with their stack trace
    and answered with a generic 500.

    Args:
        request: The incoming request.
        call_next: Next middleware or route handler.

    Returns:
        Response: Either the successful response or formatted error response.
    """
    # Set by the load balancer when present
    request_id = request.headers.get("X-Request-ID")

    try:
        return await call_next(request)

    except APIError as e:
        return _api_error_response(e, request_id)

    except PaymentError as e:
        return _api_error_response(to_api_error(e), request_id)

    except HTTPException as e:
        logger.warning(
            "HTTP exception: %s - %s",
            e.status_code,
            e.detail,
            extra={"request_id": request_id},
        )
        return create_error_response(
            error_type="http_error",
            message=str(e.detail),
            status_code=e.status_code,
            request_id=request_id,
        )

    except Exception as e:
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            str(e),
            traceback.format_exc(),
            extra={"request_id": request_id},
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        )
