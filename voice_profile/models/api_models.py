"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from voice_profile.models.enrollment_config import DEFAULT_LANGUAGE, EnrollmentLevel
from voice_profile.models.internal_models import (
    EnrollmentSample,
    VerificationResult,
    VoiceProfile,
)


class ThresholdUpdateRequest(BaseModel):
    """Request model for changing a profile's noise threshold."""

    noiseThreshold: float = Field(..., ge=0.4, le=0.9, description="Minimum match score accepted")

    model_config = ConfigDict(json_schema_extra={"example": {"noiseThreshold": 0.7}})


class VerifyVoiceRequest(BaseModel):
    """Request model for verifying an utterance fetched by URL."""

    audioUrl: str = Field(..., description="URL to download the utterance from")

    @field_validator('audioUrl')
    @classmethod
    def validate_audio_url(cls, v):
        """Validate audio URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Audio URL must be a valid HTTP/HTTPS URL')
        return v


class EnrollmentStartRequest(BaseModel):
    """Request model for starting an enrollment session."""

    level: EnrollmentLevel = Field(EnrollmentLevel.STANDARD, description="Enrollment level")
    language: str = Field(DEFAULT_LANGUAGE, description="Language of the phrases to read")
    listenUrl: str = Field(..., description="WebSocket URL streaming the user's microphone")

    @field_validator('listenUrl')
    @classmethod
    def validate_listen_url(cls, v):
        """Validate WebSocket URL format."""
        if not v.startswith(('ws://', 'wss://')):
            raise ValueError('Listen URL must be a valid WebSocket URL (ws:// or wss://)')
        return v

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "level": "standard",
            "language": "pt-BR",
            "listenUrl": "wss://audio.example.com/stream/abc123"
        }
    })


class VoiceProfileResponse(BaseModel):
    """A user's voice profile, without the raw reference features."""

    id: Optional[str] = None
    userId: str
    profileName: str
    enrollmentLevel: str
    enrollmentPhrasesCount: int
    noiseThreshold: float
    isEnabled: bool
    enrolledAt: Optional[datetime] = None
    hasVoiceFeatures: bool

    @classmethod
    def from_profile(cls, profile: VoiceProfile) -> "VoiceProfileResponse":
        return cls(
            id=profile.id,
            userId=profile.user_id,
            profileName=profile.profile_name,
            enrollmentLevel=profile.enrollment_level,
            enrollmentPhrasesCount=profile.enrollment_phrases_count,
            noiseThreshold=profile.noise_threshold,
            isEnabled=profile.is_enabled,
            enrolledAt=profile.enrolled_at,
            hasVoiceFeatures=profile.voice_features is not None,
        )


class VerificationDetailsModel(BaseModel):
    mfccSimilarity: float
    pitchSimilarity: float
    energySimilarity: float
    spectralSimilarity: float


class VerifyVoiceResponse(BaseModel):
    """Response model for voice verification."""

    gatingActive: bool = Field(..., description="False when the user has no usable voice profile")
    isMatch: Optional[bool] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    matchScore: Optional[float] = Field(None, ge=0.0, le=1.0)
    threshold: Optional[float] = None
    details: Optional[VerificationDetailsModel] = None

    @classmethod
    def from_result(cls, result: Optional[VerificationResult]) -> "VerifyVoiceResponse":
        if result is None:
            return cls(gatingActive=False)

        details = None
        if result.details is not None:
            details = VerificationDetailsModel(
                mfccSimilarity=result.details.mfcc_similarity,
                pitchSimilarity=result.details.pitch_similarity,
                energySimilarity=result.details.energy_similarity,
                spectralSimilarity=result.details.spectral_similarity,
            )
        return cls(
            gatingActive=True,
            isMatch=result.is_match,
            confidence=result.confidence,
            matchScore=result.match_score,
            threshold=result.threshold,
            details=details,
        )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "gatingActive": True,
            "isMatch": True,
            "confidence": 0.81,
            "matchScore": 0.86,
            "threshold": 0.65,
            "details": {
                "mfccSimilarity": 0.97,
                "pitchSimilarity": 0.74,
                "energySimilarity": 0.88,
                "spectralSimilarity": 0.71
            }
        }
    })


class EnrollmentLevelInfo(BaseModel):
    level: EnrollmentLevel
    phrasesCount: int
    description: str
    benefits: List[str]
    estimatedTime: str
    phrases: List[str]


class PhrasesResponse(BaseModel):
    """Phrase lists for every enrollment level in one language."""

    language: str
    levels: List[EnrollmentLevelInfo]


class EnrollmentSampleModel(BaseModel):
    phraseIndex: int
    phraseText: str
    durationMs: int
    sampleRate: int
    qualityScore: float

    @classmethod
    def from_sample(cls, sample: EnrollmentSample) -> "EnrollmentSampleModel":
        return cls(
            phraseIndex=sample.phrase_index,
            phraseText=sample.phrase_text,
            durationMs=sample.duration_ms,
            sampleRate=sample.sample_rate,
            qualityScore=sample.quality_score,
        )


class EnrollmentStatusResponse(BaseModel):
    """Snapshot of a user's enrollment session."""

    state: str
    level: EnrollmentLevel
    language: str
    currentPhraseIndex: int
    currentPhrase: str
    requiredPhrases: int
    minimumSamples: int
    samples: List[EnrollmentSampleModel]
    progress: float = Field(..., ge=0.0, le=1.0)
    canComplete: bool
    isRecording: bool
    isProcessing: bool
    lastError: Optional[str] = None
    audioLevels: List[float]


class EnrollmentCompleteResponse(BaseModel):
    status: str = Field(..., description="Enrollment status")
    profile: VoiceProfileResponse


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "InvalidTransitionError",
            "message": "Cannot handle 'capture_started' while recording",
            "correlation_id": "req_123456789",
            "timestamp": "2024-01-01T12:00:00Z"
        }
    })
