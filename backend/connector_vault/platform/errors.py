"""
Consistent error handling for the connector API.

Routes raise AppError subclasses; ErrorHandlerMiddleware turns them (and any
unhandled exception) into the standard JSON error shape:

    {"error": {"code": "...", "message": "...", "details": {...}}}

Stack traces and provider error bodies are NEVER returned to clients.

Status codes used:
- 400: Validation error (unsupported or unconfigured provider, bad input)
- 401: No tenant context on the request
- 500: Internal Server Error
- 503: Dependency unavailable (database, nonce registry, provider)
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All API-facing errors inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class AuthenticationError(AppError):
    """Missing or invalid tenant session (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            code="AUTHENTICATION_ERROR",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class ServiceUnavailableError(AppError):
    """Dependency unavailable (503)."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


def get_correlation_id(request: Request) -> str:
    """Use the upstream X-Correlation-ID header if present, else a new UUID."""
    return request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())


def _error_response(status_code: int, content: dict, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={CORRELATION_HEADER: correlation_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Catches all exceptions and returns consistent error responses.

    IMPORTANT: Stack traces are NEVER returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id
        log_context = {
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
        }

        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response

        except AppError as e:
            logger.warning(
                "Application error",
                extra={**log_context, "error_code": e.code, "status_code": e.status_code},
            )
            return _error_response(e.status_code, e.to_dict(), correlation_id)

        except HTTPException as e:
            logger.warning(
                "HTTP exception",
                extra={**log_context, "status_code": e.status_code},
            )
            return _error_response(
                e.status_code,
                {"error": {"code": "HTTP_ERROR", "message": str(e.detail), "details": {}}},
                correlation_id,
            )

        except Exception as e:
            # Full traceback stays server-side
            logger.exception(
                "Unhandled exception",
                extra={**log_context, "error_type": type(e).__name__},
            )
            return _error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                {
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                correlation_id,
            )
