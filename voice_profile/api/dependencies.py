"""
Request dependencies and error responses shared by the API routers.
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Type

import structlog
from fastapi import Header, HTTPException, Request
from fastapi.responses import JSONResponse

from voice_profile.clients.capture_client import CaptureError, MicrophonePermissionError
from voice_profile.models.api_models import ErrorResponse
from voice_profile.services.enrollment_session import (
    EnrollmentIncompleteError,
    EnrollmentPersistenceError,
    InvalidTransitionError,
    SampleExtractionError,
)
from voice_profile.services.voice_profile_service import ProfileNotFoundError, VerificationError

logger = structlog.get_logger()

# Checked in order, so subclasses come before their bases
ERROR_STATUS_CODES: Dict[Type[Exception], int] = {
    MicrophonePermissionError: 403,
    CaptureError: 400,
    SampleExtractionError: 422,
    VerificationError: 422,
    InvalidTransitionError: 409,
    EnrollmentIncompleteError: 400,
    ProfileNotFoundError: 404,
    EnrollmentPersistenceError: 500,
    ValueError: 400,
}


def get_correlation_id(request: Request) -> str:
    return request.headers.get("X-Call-ID", "unknown")


async def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    """Resolve the authenticated user from the X-User-ID header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    return x_user_id.strip()


def create_error_response(
    error_type: str,
    message: str,
    correlation_id: str,
    status_code: int = 500
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=error_type,
        message=message,
        correlation_id=correlation_id,
        timestamp=datetime.now(timezone.utc)
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json")
    )


def error_response_for(error: Exception, correlation_id: str) -> JSONResponse:
    """Map a service exception onto its HTTP status and standard error body."""
    for error_class, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_class):
            logger.warning(
                "Request failed",
                error_type=type(error).__name__,
                error=str(error),
                status_code=status_code,
                correlation_id=correlation_id
            )
            return create_error_response(type(error).__name__, str(error), correlation_id, status_code)

    logger.error(
        "Unexpected error",
        error_type=type(error).__name__,
        error=str(error),
        correlation_id=correlation_id
    )
    return create_error_response(
        "InternalServerError",
        "An unexpected error occurred",
        correlation_id,
        500
    )
