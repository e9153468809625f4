"""Data models for the voice profile service."""

from .api_models import (
    EnrollmentCompleteResponse,
    EnrollmentStartRequest,
    EnrollmentStatusResponse,
    ErrorResponse,
    HealthResponse,
    PhrasesResponse,
    ThresholdUpdateRequest,
    VerifyVoiceRequest,
    VerifyVoiceResponse,
    VoiceProfileResponse
)
from .enrollment_config import (
    ENROLLMENT_CONFIGS,
    ENROLLMENT_PHRASES,
    EnrollmentConfig,
    EnrollmentLevel,
    get_phrases_for_level
)
from .internal_models import (
    EnrollmentSample,
    VerificationDetails,
    VerificationResult,
    VoiceFeatures,
    VoiceProfile
)

__all__ = [
    "EnrollmentCompleteResponse",
    "EnrollmentStartRequest",
    "EnrollmentStatusResponse",
    "ErrorResponse",
    "HealthResponse",
    "PhrasesResponse",
    "ThresholdUpdateRequest",
    "VerifyVoiceRequest",
    "VerifyVoiceResponse",
    "VoiceProfileResponse",
    "ENROLLMENT_CONFIGS",
    "ENROLLMENT_PHRASES",
    "EnrollmentConfig",
    "EnrollmentLevel",
    "get_phrases_for_level",
    "EnrollmentSample",
    "VerificationDetails",
    "VerificationResult",
    "VoiceFeatures",
    "VoiceProfile"
]
