"""
Voice profile service: profile management and live verification.

This module provides the business logic for:
- Reading, enabling/disabling, re-thresholding and deleting a user's profile
- Verifying an utterance against the enrolled reference features
- Creating enrollment sessions bound to a streaming microphone
"""

import logging
import time
from typing import Optional

from voice_profile.clients.capture_client import WebSocketMicrophone
from voice_profile.clients.supabase_client import DatabaseManager
from voice_profile.config import settings
from voice_profile.models.internal_models import (
    MAX_NOISE_THRESHOLD,
    MIN_NOISE_THRESHOLD,
    VerificationResult,
    VoiceProfile,
)
from voice_profile.observability import record_verification_metrics, trace_function
from voice_profile.services.enrollment_session import EnrollmentSession
from voice_profile.services.extraction_worker import AudioFeatureExtractor
from voice_profile.services.speaker_verifier import SpeakerVerifier
from voice_profile.utils.audio_utils import (
    AudioDownloadError,
    AudioProcessingError,
    download_audio_file,
)

logger = logging.getLogger(__name__)


class VoiceProfileError(Exception):
    """Base exception for voice profile service errors."""
    pass


class ProfileNotFoundError(VoiceProfileError):
    """Raised when a user has no voice profile."""
    pass


class VerificationError(VoiceProfileError):
    """Raised when an utterance cannot be verified."""
    pass


class VoiceProfileService:
    """
    Core service for a user's voice profile.

    Voice gating is opt-in: when a user has no profile, has disabled it, or
    never completed enrollment, verification reports gating as inactive
    (``None``) instead of rejecting the speaker.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        extractor: Optional[AudioFeatureExtractor] = None,
        verifier: Optional[SpeakerVerifier] = None
    ):
        """
        Initialize the service.

        Args:
            db_manager: Database manager instance. If None, creates a new one.
            extractor: Feature extractor. If None, one is created from settings.
            verifier: Speaker verifier. If None, uses the default weights.
        """
        self.db = db_manager or DatabaseManager()
        self.extractor = extractor or AudioFeatureExtractor()
        self.verifier = verifier or SpeakerVerifier()

        logger.info("Voice profile service initialized")

    async def get_profile(self, user_id: str) -> Optional[VoiceProfile]:
        return await self.db.profiles.get_profile_by_user(user_id)

    async def _require_profile(self, user_id: str) -> VoiceProfile:
        profile = await self.get_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"No voice profile for user {user_id}")
        return profile

    async def delete_profile(self, user_id: str) -> None:
        """
        Delete the user's profile and its stored samples.

        Raises:
            ProfileNotFoundError: If the user has no profile
        """
        deleted = await self.db.profiles.delete_profile(user_id)
        if not deleted:
            raise ProfileNotFoundError(f"No voice profile for user {user_id}")
        logger.info(f"Deleted voice profile for user {user_id}")

    async def toggle_profile_enabled(self, user_id: str) -> VoiceProfile:
        """Flip whether voice gating is applied for the user."""
        profile = await self._require_profile(user_id)
        updated = await self.db.profiles.update_profile(
            user_id, {"is_enabled": not profile.is_enabled}
        )
        if updated is None:
            raise ProfileNotFoundError(f"No voice profile for user {user_id}")

        logger.info(f"Voice gating {'enabled' if updated.is_enabled else 'disabled'} for user {user_id}")
        return updated

    async def update_noise_threshold(self, user_id: str, threshold: float) -> VoiceProfile:
        """
        Change the match threshold used when verifying the user.

        Raises:
            ValueError: If the threshold is outside [0.4, 0.9]
            ProfileNotFoundError: If the user has no profile
        """
        if not MIN_NOISE_THRESHOLD <= threshold <= MAX_NOISE_THRESHOLD:
            raise ValueError(
                f"Noise threshold must be between {MIN_NOISE_THRESHOLD} and "
                f"{MAX_NOISE_THRESHOLD}, got {threshold}"
            )

        updated = await self.db.profiles.update_profile(user_id, {"noise_threshold": threshold})
        if updated is None:
            raise ProfileNotFoundError(f"No voice profile for user {user_id}")

        logger.info(f"Updated noise threshold for user {user_id} to {threshold}")
        return updated

    @trace_function("voice_profile.verify_voice")
    async def verify_voice(self, user_id: str, audio_data: bytes) -> Optional[VerificationResult]:
        """
        Verify an utterance against the user's enrolled voice.

        Args:
            user_id: User whose profile is consulted
            audio_data: Encoded utterance (WAV, or any container ffmpeg reads)

        Returns:
            VerificationResult, or None when voice gating is inactive for the
            user (no profile, disabled, or never enrolled)

        Raises:
            VerificationError: If the utterance cannot be decoded or analysed
        """
        start_time = time.time()
        profile = await self.get_profile(user_id)

        if profile is None or not profile.can_verify:
            logger.info(f"Voice gating inactive for user {user_id}")
            record_verification_metrics(None, time.time() - start_time, None)
            return None

        try:
            extraction = await self.extractor.extract_features_from_bytes(audio_data)
        except (AudioProcessingError, ValueError) as e:
            logger.error(f"Could not analyse verification audio for user {user_id}: {e}")
            raise VerificationError(f"Could not analyse audio: {e}") from e

        result = self.verifier.verify(
            extraction.features,
            profile.voice_features,
            threshold=profile.noise_threshold
        )

        record_verification_metrics(result.is_match, time.time() - start_time, result.match_score)
        logger.info(
            f"Voice verification for user {user_id}: match={result.is_match}, "
            f"score={result.match_score:.4f}, threshold={result.threshold}"
        )
        return result

    async def verify_voice_from_url(self, user_id: str, audio_url: str) -> Optional[VerificationResult]:
        """
        Download an utterance and verify it.

        Raises:
            VerificationError: If the download fails or the audio cannot be analysed
        """
        try:
            audio_data = await download_audio_file(audio_url)
        except AudioDownloadError as e:
            logger.error(f"Failed to download verification audio for user {user_id}: {e}")
            raise VerificationError(f"Failed to download audio: {e}") from e

        return await self.verify_voice(user_id, audio_data)

    def create_session(self, user_id: str, listen_url: str) -> EnrollmentSession:
        """Build an idle enrollment session recording from ``listen_url``."""
        return EnrollmentSession(
            user_id=user_id,
            extractor=self.extractor,
            verifier=self.verifier,
            profile_store=self.db,
            microphone_factory=lambda: WebSocketMicrophone(listen_url),
            max_recording_seconds=settings.max_recording_seconds,
            min_completion_ratio=settings.min_completion_ratio,
        )

    def close(self) -> None:
        self.extractor.close()


# Global service instance
_voice_profile_service: Optional[VoiceProfileService] = None


def get_voice_profile_service() -> VoiceProfileService:
    """
    Get the global voice profile service instance.

    Returns:
        VoiceProfileService: The global voice profile service instance
    """
    global _voice_profile_service
    if _voice_profile_service is None:
        _voice_profile_service = VoiceProfileService()
    return _voice_profile_service
