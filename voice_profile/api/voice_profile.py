"""
Voice profile API endpoints: profile management and verification.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, Response

from voice_profile.api.dependencies import (
    create_error_response,
    error_response_for,
    get_correlation_id,
    get_user_id,
)
from voice_profile.config import settings
from voice_profile.models.api_models import (
    EnrollmentLevelInfo,
    PhrasesResponse,
    ThresholdUpdateRequest,
    VerifyVoiceRequest,
    VerifyVoiceResponse,
    VoiceProfileResponse,
)
from voice_profile.models.enrollment_config import (
    ENROLLMENT_CONFIGS,
    ENROLLMENT_PHRASES,
    get_phrases_for_level,
)
from voice_profile.services.voice_profile_service import (
    VoiceProfileError,
    VoiceProfileService,
    get_voice_profile_service,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/voice-profile", tags=["voice-profile"])


@router.get("", response_model=VoiceProfileResponse)
async def get_profile(
    request: Request,
    user_id: str = Depends(get_user_id),
    service: VoiceProfileService = Depends(get_voice_profile_service)
):
    """Return the caller's voice profile."""
    correlation_id = get_correlation_id(request)
    profile = await service.get_profile(user_id)
    if profile is None:
        return create_error_response(
            "ProfileNotFoundError",
            f"No voice profile for user {user_id}",
            correlation_id,
            404
        )
    return VoiceProfileResponse.from_profile(profile)


@router.delete("", status_code=204)
async def delete_profile(
    request: Request,
    user_id: str = Depends(get_user_id),
    service: VoiceProfileService = Depends(get_voice_profile_service)
):
    """Delete the caller's voice profile and its enrollment samples."""
    correlation_id = get_correlation_id(request)
    try:
        await service.delete_profile(user_id)
    except VoiceProfileError as e:
        return error_response_for(e, correlation_id)

    logger.info("Voice profile deleted", user_id=user_id, correlation_id=correlation_id)
    return Response(status_code=204)


@router.patch("/threshold", response_model=VoiceProfileResponse)
async def update_threshold(
    body: ThresholdUpdateRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    service: VoiceProfileService = Depends(get_voice_profile_service)
):
    """Change the match threshold applied to the caller's verifications."""
    correlation_id = get_correlation_id(request)
    try:
        profile = await service.update_noise_threshold(user_id, body.noiseThreshold)
    except (VoiceProfileError, ValueError) as e:
        return error_response_for(e, correlation_id)

    logger.info(
        "Noise threshold updated",
        user_id=user_id,
        noise_threshold=body.noiseThreshold,
        correlation_id=correlation_id
    )
    return VoiceProfileResponse.from_profile(profile)


@router.post("/toggle", response_model=VoiceProfileResponse)
async def toggle_profile(
    request: Request,
    user_id: str = Depends(get_user_id),
    service: VoiceProfileService = Depends(get_voice_profile_service)
):
    """Enable or disable voice gating for the caller."""
    correlation_id = get_correlation_id(request)
    try:
        profile = await service.toggle_profile_enabled(user_id)
    except VoiceProfileError as e:
        return error_response_for(e, correlation_id)

    logger.info(
        "Voice gating toggled",
        user_id=user_id,
        is_enabled=profile.is_enabled,
        correlation_id=correlation_id
    )
    return VoiceProfileResponse.from_profile(profile)


@router.post("/verify", response_model=VerifyVoiceResponse)
async def verify_voice(
    body: VerifyVoiceRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    service: VoiceProfileService = Depends(get_voice_profile_service)
):
    """
    Verify an utterance against the caller's enrolled voice.

    Responds with ``gatingActive: false`` when the caller has no usable
    profile; callers should then let the speech through.
    """
    correlation_id = get_correlation_id(request)
    logger.info(
        "Verification request received",
        user_id=user_id,
        audio_url=body.audioUrl,
        correlation_id=correlation_id
    )

    try:
        result = await service.verify_voice_from_url(user_id, body.audioUrl)
    except VoiceProfileError as e:
        return error_response_for(e, correlation_id)

    return VerifyVoiceResponse.from_result(result)


@router.get("/phrases", response_model=PhrasesResponse)
async def get_phrases(language: Optional[str] = None) -> PhrasesResponse:
    """List the enrollment levels and their phrases for a language."""
    language = language if language in ENROLLMENT_PHRASES else settings.default_language
    return PhrasesResponse(
        language=language,
        levels=[
            EnrollmentLevelInfo(
                level=config.level,
                phrasesCount=config.phrases_count,
                description=config.description,
                benefits=list(config.benefits),
                estimatedTime=config.estimated_time,
                phrases=get_phrases_for_level(config.level, language),
            )
            for config in ENROLLMENT_CONFIGS.values()
        ]
    )
