"""
Enrollment API endpoints.

Each user has at most one enrollment session held in memory by this process.
``POST /record`` blocks until the phrase recording ends, so clients stop a
recording early by calling ``POST /stop`` on a separate request.
"""

import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request

from voice_profile.api.dependencies import (
    create_error_response,
    error_response_for,
    get_correlation_id,
    get_user_id,
)
from voice_profile.clients.capture_client import CaptureError
from voice_profile.models.api_models import (
    EnrollmentCompleteResponse,
    EnrollmentSampleModel,
    EnrollmentStartRequest,
    EnrollmentStatusResponse,
    VoiceProfileResponse,
)
from voice_profile.observability import (
    record_enrollment_metrics,
    record_sample_metrics,
    trace_function,
)
from voice_profile.services.enrollment_session import (
    EnrollmentError,
    EnrollmentPersistenceError,
    EnrollmentSession,
    EnrollmentSessionRegistry,
)
from voice_profile.services.voice_profile_service import (
    VoiceProfileService,
    get_voice_profile_service,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/enrollment", tags=["enrollment"])

_session_registry: Optional[EnrollmentSessionRegistry] = None


def get_session_registry() -> EnrollmentSessionRegistry:
    """Get the process-wide enrollment session registry."""
    global _session_registry
    if _session_registry is None:
        _session_registry = EnrollmentSessionRegistry()
    return _session_registry


def build_status(session: EnrollmentSession) -> EnrollmentStatusResponse:
    return EnrollmentStatusResponse(
        state=session.state.value,
        level=session.level,
        language=session.language,
        currentPhraseIndex=session.current_phrase_index,
        currentPhrase=session.current_phrase,
        requiredPhrases=session.required_phrases,
        minimumSamples=session.minimum_samples,
        samples=[EnrollmentSampleModel.from_sample(s) for s in session.samples],
        progress=session.progress,
        canComplete=session.can_complete,
        isRecording=session.is_recording,
        isProcessing=session.is_processing,
        lastError=session.last_error,
        audioLevels=session.audio_levels,
    )


def no_session_response(user_id: str, correlation_id: str):
    return create_error_response(
        "EnrollmentNotStartedError",
        f"No enrollment session for user {user_id}",
        correlation_id,
        404
    )


@router.post("/start", response_model=EnrollmentStatusResponse)
async def start_enrollment(
    body: EnrollmentStartRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    service: VoiceProfileService = Depends(get_voice_profile_service),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
):
    """Start a fresh enrollment, replacing any session the caller already had."""
    correlation_id = get_correlation_id(request)

    await registry.discard(user_id)
    session = service.create_session(user_id, body.listenUrl)
    registry.replace(user_id, session)

    try:
        session.start_enrollment(body.level, body.language)
    except EnrollmentError as e:
        return error_response_for(e, correlation_id)

    logger.info(
        "Enrollment started",
        user_id=user_id,
        level=body.level.value,
        language=body.language,
        correlation_id=correlation_id
    )
    return build_status(session)


@router.get("", response_model=EnrollmentStatusResponse)
async def get_enrollment_status(
    request: Request,
    user_id: str = Depends(get_user_id),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
):
    session = registry.get(user_id)
    if session is None:
        return no_session_response(user_id, get_correlation_id(request))
    return build_status(session)


@router.post("/record", response_model=EnrollmentStatusResponse)
@trace_function("enrollment_record_endpoint")
async def record_phrase(
    request: Request,
    user_id: str = Depends(get_user_id),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
):
    """Record the current phrase; returns once the recording has been processed."""
    correlation_id = get_correlation_id(request)
    session = registry.get(user_id)
    if session is None:
        return no_session_response(user_id, correlation_id)

    try:
        sample = await session.record_phrase()
    except (EnrollmentError, CaptureError) as e:
        return error_response_for(e, correlation_id)

    if sample is not None:
        record_sample_metrics(sample.quality_score, sample.duration_ms)
        logger.info(
            "Enrollment phrase recorded",
            user_id=user_id,
            phrase_index=sample.phrase_index,
            quality_score=sample.quality_score,
            correlation_id=correlation_id
        )
    return build_status(session)


@router.post("/stop", response_model=EnrollmentStatusResponse)
async def stop_recording(
    request: Request,
    user_id: str = Depends(get_user_id),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
):
    session = registry.get(user_id)
    if session is None:
        return no_session_response(user_id, get_correlation_id(request))
    session.stop_recording()
    return build_status(session)


@router.post("/retry", response_model=EnrollmentStatusResponse)
async def retry_phrase(
    request: Request,
    user_id: str = Depends(get_user_id),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
):
    session = registry.get(user_id)
    if session is None:
        return no_session_response(user_id, get_correlation_id(request))
    session.retry_phrase()
    return build_status(session)


@router.post("/skip", response_model=EnrollmentStatusResponse)
async def skip_phrase(
    request: Request,
    user_id: str = Depends(get_user_id),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
):
    session = registry.get(user_id)
    if session is None:
        return no_session_response(user_id, get_correlation_id(request))
    session.skip_phrase()
    return build_status(session)


@router.post("/complete", response_model=EnrollmentCompleteResponse)
@trace_function("enrollment_complete_endpoint")
async def complete_enrollment(
    request: Request,
    user_id: str = Depends(get_user_id),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
):
    """Aggregate the recorded phrases into the caller's voice profile."""
    correlation_id = get_correlation_id(request)
    session = registry.get(user_id)
    if session is None:
        return no_session_response(user_id, correlation_id)

    start_time = time.time()
    samples = len(session.samples)
    try:
        profile = await session.complete_enrollment()
    except EnrollmentError as e:
        if isinstance(e, EnrollmentPersistenceError):
            record_enrollment_metrics(False, time.time() - start_time, session.level.value, samples)
        return error_response_for(e, correlation_id)

    record_enrollment_metrics(True, time.time() - start_time, session.level.value, samples)
    await registry.discard(user_id)

    logger.info(
        "Enrollment completed",
        user_id=user_id,
        samples=samples,
        correlation_id=correlation_id
    )
    return EnrollmentCompleteResponse(
        status="enrolled",
        profile=VoiceProfileResponse.from_profile(profile)
    )


@router.post("/cancel", status_code=204)
async def cancel_enrollment(
    user_id: str = Depends(get_user_id),
    registry: EnrollmentSessionRegistry = Depends(get_session_registry)
) -> None:
    """Cancel and forget the caller's enrollment session, if any."""
    await registry.discard(user_id)
    logger.info("Enrollment cancelled", user_id=user_id)
