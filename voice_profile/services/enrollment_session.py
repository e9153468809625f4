"""
Enrollment session state machine.

A session walks one user through reading the phrases of an enrollment level:

    idle -> enrolling -> recording -> processing -> enrolling ... -> completing -> idle

Every state change goes through the TRANSITIONS table; ``cancel`` returns to
idle from anywhere. The session owns all of its mutable resources (the active
microphone, the auto-stop timer, the stop event) and releases them through
``cancel_enrollment`` or ``teardown``.
"""

import asyncio
import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from voice_profile.clients.capture_client import CaptureError, WebSocketMicrophone
from voice_profile.config import settings
from voice_profile.models.enrollment_config import (
    DEFAULT_LANGUAGE,
    ENROLLMENT_CONFIGS,
    EnrollmentLevel,
    get_phrases_for_level,
)
from voice_profile.models.internal_models import EnrollmentSample, VoiceProfile
from voice_profile.services.extraction_worker import AudioFeatureExtractor
from voice_profile.services.speaker_verifier import SpeakerVerifier
from voice_profile.utils.audio_utils import AudioProcessingError

logger = logging.getLogger(__name__)

AUDIO_LEVEL_BANDS = 12
AUDIO_LEVEL_GAIN = 1.5
AUDIO_LEVEL_FLOOR = 0.1

MicrophoneFactory = Callable[[], WebSocketMicrophone]


class EnrollmentState(str, Enum):
    IDLE = "idle"
    ENROLLING = "enrolling"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETING = "completing"


class EnrollmentEvent(str, Enum):
    START = "start"
    CAPTURE_STARTED = "capture_started"
    CAPTURE_STOPPED = "capture_stopped"
    CAPTURE_FAILED = "capture_failed"
    EXTRACTION_SUCCEEDED = "extraction_succeeded"
    EXTRACTION_FAILED = "extraction_failed"
    COMPLETE_REQUESTED = "complete_requested"
    COMPLETION_SUCCEEDED = "completion_succeeded"
    COMPLETION_FAILED = "completion_failed"
    CANCEL = "cancel"


TRANSITIONS: Dict[Tuple[EnrollmentState, EnrollmentEvent], EnrollmentState] = {
    (EnrollmentState.IDLE, EnrollmentEvent.START): EnrollmentState.ENROLLING,
    (EnrollmentState.ENROLLING, EnrollmentEvent.CAPTURE_STARTED): EnrollmentState.RECORDING,
    (EnrollmentState.RECORDING, EnrollmentEvent.CAPTURE_STOPPED): EnrollmentState.PROCESSING,
    (EnrollmentState.RECORDING, EnrollmentEvent.CAPTURE_FAILED): EnrollmentState.ENROLLING,
    (EnrollmentState.PROCESSING, EnrollmentEvent.EXTRACTION_SUCCEEDED): EnrollmentState.ENROLLING,
    (EnrollmentState.PROCESSING, EnrollmentEvent.EXTRACTION_FAILED): EnrollmentState.ENROLLING,
    (EnrollmentState.ENROLLING, EnrollmentEvent.COMPLETE_REQUESTED): EnrollmentState.COMPLETING,
    (EnrollmentState.COMPLETING, EnrollmentEvent.COMPLETION_SUCCEEDED): EnrollmentState.IDLE,
    (EnrollmentState.COMPLETING, EnrollmentEvent.COMPLETION_FAILED): EnrollmentState.ENROLLING,
}
TRANSITIONS.update({(state, EnrollmentEvent.CANCEL): EnrollmentState.IDLE for state in EnrollmentState})


class EnrollmentError(Exception):
    """Base exception for enrollment session failures."""
    pass


class InvalidTransitionError(EnrollmentError):
    """Raised when an operation is not allowed in the current state."""

    def __init__(self, state: EnrollmentState, event: EnrollmentEvent):
        self.state = state
        self.event = event
        super().__init__(f"Cannot handle '{event.value}' while {state.value}")


class EnrollmentIncompleteError(EnrollmentError):
    """Raised when completion is requested without enough samples."""
    pass


class EnrollmentPersistenceError(EnrollmentError):
    """Raised when a completed enrollment cannot be stored."""
    pass


class SampleExtractionError(EnrollmentError):
    """Raised when a finished recording cannot be turned into a sample."""
    pass


def compute_audio_levels(window: np.ndarray, bands: int = AUDIO_LEVEL_BANDS) -> List[float]:
    """
    Amplitude meter levels for the UI.

    Splits the analysis window into equal bands and maps each band's mean
    absolute amplitude to ``min(1, avg * 1.5 + 0.1)``. An empty window reads
    as silence (all zeros).
    """
    if window.size == 0:
        return [0.0] * bands

    band_size = max(1, window.size // bands)
    magnitudes = np.abs(window)
    levels = []
    for i in range(bands):
        band = magnitudes[i * band_size:(i + 1) * band_size]
        avg = float(np.mean(band)) if band.size else 0.0
        levels.append(min(1.0, avg * AUDIO_LEVEL_GAIN + AUDIO_LEVEL_FLOOR))
    return levels


class EnrollmentSession:
    """
    One user's enrollment, from the first phrase to the stored profile.

    The session is driven by its caller; it never records or completes on its
    own. Only one recording can be active at a time and a recording that is
    cancelled never produces a sample.
    """

    def __init__(
        self,
        user_id: str,
        extractor: AudioFeatureExtractor,
        verifier: SpeakerVerifier,
        profile_store,
        microphone_factory: MicrophoneFactory,
        max_recording_seconds: Optional[float] = None,
        min_completion_ratio: Optional[float] = None
    ):
        """
        Initialize an idle session.

        Args:
            user_id: Owner of the enrollment
            extractor: Feature extractor used for each recording
            verifier: Verifier used to aggregate samples on completion
            profile_store: Persistence with ``get_profile`` and ``save_enrollment``
            microphone_factory: Returns a fresh, unconnected microphone
            max_recording_seconds: Hard auto-stop for each recording
            min_completion_ratio: Share of phrases required before completion
        """
        self.user_id = user_id
        self.extractor = extractor
        self.verifier = verifier
        self.profile_store = profile_store
        self.microphone_factory = microphone_factory
        self.max_recording_seconds = max_recording_seconds or settings.max_recording_seconds
        self.min_completion_ratio = (
            settings.min_completion_ratio if min_completion_ratio is None else min_completion_ratio
        )

        self._state = EnrollmentState.IDLE
        self._level = EnrollmentLevel.STANDARD
        self._language = DEFAULT_LANGUAGE
        self._phrases: List[str] = []
        self._current_phrase_index = 0
        self._samples: List[EnrollmentSample] = []
        self._last_error: Optional[str] = None

        # Bumped on cancel; recordings started under an older generation are discarded
        self._generation = 0
        self._microphone: Optional[WebSocketMicrophone] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._auto_stop: Optional[asyncio.TimerHandle] = None

    # Views

    @property
    def state(self) -> EnrollmentState:
        return self._state

    @property
    def level(self) -> EnrollmentLevel:
        return self._level

    @property
    def language(self) -> str:
        return self._language

    @property
    def phrases(self) -> Tuple[str, ...]:
        return tuple(self._phrases)

    @property
    def current_phrase_index(self) -> int:
        return self._current_phrase_index

    @property
    def current_phrase(self) -> str:
        if 0 <= self._current_phrase_index < len(self._phrases):
            return self._phrases[self._current_phrase_index]
        return ""

    @property
    def required_phrases(self) -> int:
        return ENROLLMENT_CONFIGS[self._level].phrases_count

    @property
    def samples(self) -> Tuple[EnrollmentSample, ...]:
        return tuple(self._samples)

    @property
    def minimum_samples(self) -> int:
        """Samples needed before completion is accepted (never fewer than one)."""
        return max(1, math.floor(self.required_phrases * self.min_completion_ratio))

    @property
    def has_recorded_current_phrase(self) -> bool:
        return any(s.phrase_index == self._current_phrase_index for s in self._samples)

    @property
    def progress(self) -> float:
        """Fraction of the phrase list covered, counting the current phrase once recorded."""
        if self._state == EnrollmentState.IDLE or not self._phrases:
            return 0.0
        done = self._current_phrase_index + (1 if self.has_recorded_current_phrase else 0)
        return min(1.0, done / self.required_phrases)

    @property
    def can_complete(self) -> bool:
        return self._state == EnrollmentState.ENROLLING and len(self._samples) >= self.minimum_samples

    @property
    def is_recording(self) -> bool:
        return self._state == EnrollmentState.RECORDING

    @property
    def is_processing(self) -> bool:
        return self._state == EnrollmentState.PROCESSING

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def audio_levels(self) -> List[float]:
        if self._state != EnrollmentState.RECORDING or self._microphone is None:
            return [0.0] * AUDIO_LEVEL_BANDS
        return compute_audio_levels(self._microphone.latest_samples)

    # Transitions

    def _fire(self, event: EnrollmentEvent) -> EnrollmentState:
        next_state = TRANSITIONS.get((self._state, event))
        if next_state is None:
            raise InvalidTransitionError(self._state, event)

        logger.debug(f"Enrollment {self.user_id}: {self._state.value} --{event.value}--> {next_state.value}")
        self._state = next_state
        return next_state

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _reset(self) -> None:
        self._phrases = []
        self._current_phrase_index = 0
        self._samples = []

    def start_enrollment(
        self,
        level: EnrollmentLevel = EnrollmentLevel.STANDARD,
        language: str = DEFAULT_LANGUAGE
    ) -> None:
        """Begin a fresh enrollment at phrase 0 with no samples."""
        level = EnrollmentLevel(level)
        self._fire(EnrollmentEvent.START)

        self._level = level
        self._language = language
        self._phrases = get_phrases_for_level(level, language)
        self._current_phrase_index = 0
        self._samples = []
        self._last_error = None

        logger.info(
            f"Started {level.value} enrollment for user {self.user_id} "
            f"({len(self._phrases)} phrases, {language})"
        )

    async def record_phrase(self) -> Optional[EnrollmentSample]:
        """
        Record the current phrase and append its sample.

        The microphone is acquired for this recording only and released when
        it ends, whether by ``stop_recording``, the auto-stop timer,
        cancellation or an error.

        Returns:
            The new sample, or None when the enrollment was cancelled while
            recording or processing

        Raises:
            InvalidTransitionError: If not enrolling (including while a
                previous recording is still recording or processing)
            MicrophonePermissionError: If microphone access was denied
            CaptureError: If the audio stream failed
            SampleExtractionError: If the recording could not be analysed
        """
        loop = asyncio.get_running_loop()
        microphone = self.microphone_factory()
        self._fire(EnrollmentEvent.CAPTURE_STARTED)

        generation = self._generation
        phrase_index = self._current_phrase_index
        phrase_text = self.current_phrase
        self._last_error = None

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._microphone = microphone
        auto_stop = loop.call_later(self.max_recording_seconds, stop_event.set)
        self._auto_stop = auto_stop

        try:
            await microphone.connect()
            audio = await microphone.capture_audio(stop_event)
        except CaptureError as e:
            if self._is_stale(generation):
                return None
            self._last_error = str(e)
            self._fire(EnrollmentEvent.CAPTURE_FAILED)
            logger.warning(f"Recording phrase {phrase_index} failed for user {self.user_id}: {e}")
            raise
        except Exception as e:
            if self._is_stale(generation):
                return None
            self._last_error = f"Recording failed: {e}"
            self._fire(EnrollmentEvent.CAPTURE_FAILED)
            logger.error(f"Unexpected error recording phrase {phrase_index} for user {self.user_id}: {e}")
            raise CaptureError(self._last_error) from e
        except asyncio.CancelledError:
            if not self._is_stale(generation):
                self._fire(EnrollmentEvent.CAPTURE_FAILED)
            raise
        finally:
            auto_stop.cancel()
            if self._microphone is microphone:
                self._auto_stop = None
                self._stop_event = None
                self._microphone = None
            await microphone.disconnect()

        if self._is_stale(generation):
            logger.info(f"Discarding recording of phrase {phrase_index}: enrollment was cancelled")
            return None

        self._fire(EnrollmentEvent.CAPTURE_STOPPED)

        try:
            extraction = await self.extractor.extract_features_from_bytes(audio)
            quality = self.extractor.calculate_quality_score(extraction.features, extraction.duration_ms)
            sample = EnrollmentSample(
                phrase_index=phrase_index,
                phrase_text=phrase_text,
                audio_features=extraction.features,
                duration_ms=extraction.duration_ms,
                sample_rate=extraction.sample_rate,
                quality_score=quality,
                recorded_at=datetime.now(timezone.utc),
            )
        except (AudioProcessingError, ValueError) as e:
            if self._is_stale(generation):
                return None
            self._last_error = f"Could not process recording: {e}"
            self._fire(EnrollmentEvent.EXTRACTION_FAILED)
            logger.warning(f"Feature extraction failed for phrase {phrase_index}: {e}")
            raise SampleExtractionError(self._last_error) from e
        except Exception as e:
            if self._is_stale(generation):
                return None
            self._last_error = f"Could not process recording: {e}"
            self._fire(EnrollmentEvent.EXTRACTION_FAILED)
            logger.error(f"Unexpected error extracting features for phrase {phrase_index}: {e}")
            raise SampleExtractionError(self._last_error) from e
        except asyncio.CancelledError:
            if not self._is_stale(generation):
                self._fire(EnrollmentEvent.EXTRACTION_FAILED)
            raise

        if self._is_stale(generation):
            logger.info(f"Discarding sample for phrase {phrase_index}: enrollment was cancelled")
            return None

        self._samples.append(sample)
        self._fire(EnrollmentEvent.EXTRACTION_SUCCEEDED)

        logger.info(
            f"Recorded phrase {phrase_index} for user {self.user_id}: "
            f"{sample.duration_ms}ms, quality={sample.quality_score:.2f}"
        )
        return sample

    def stop_recording(self) -> bool:
        """Stop the active recording; returns False when nothing was recording."""
        if self._state != EnrollmentState.RECORDING or self._stop_event is None:
            return False
        self._stop_event.set()
        return True

    def retry_phrase(self) -> int:
        """Drop any sample recorded for the current phrase; returns how many were removed."""
        before = len(self._samples)
        self._samples = [s for s in self._samples if s.phrase_index != self._current_phrase_index]
        return before - len(self._samples)

    def skip_phrase(self) -> bool:
        """Advance to the next phrase unless already at the last one."""
        if self._current_phrase_index < len(self._phrases) - 1:
            self._current_phrase_index += 1
            return True
        return False

    async def complete_enrollment(self) -> VoiceProfile:
        """
        Aggregate the collected samples and store the enrolled profile.

        Re-enrolling keeps the user's existing noise threshold and profile
        name. Stored samples are replaced by the ones used here.

        Returns:
            The stored, enabled VoiceProfile

        Raises:
            InvalidTransitionError: If not enrolling
            EnrollmentIncompleteError: If too few samples were recorded
            EnrollmentPersistenceError: If the profile could not be stored
        """
        if self._state != EnrollmentState.ENROLLING:
            raise InvalidTransitionError(self._state, EnrollmentEvent.COMPLETE_REQUESTED)

        samples = list(self._samples)
        if len(samples) < self.minimum_samples:
            self._last_error = (
                f"At least {self.minimum_samples} of {self.required_phrases} phrases are "
                f"required, {len(samples)} recorded"
            )
            raise EnrollmentIncompleteError(self._last_error)

        self._fire(EnrollmentEvent.COMPLETE_REQUESTED)
        generation = self._generation

        try:
            features = self.verifier.aggregate_features([s.audio_features for s in samples])
            existing = await self.profile_store.get_profile(self.user_id)

            profile = VoiceProfile(
                user_id=self.user_id,
                profile_name=existing.profile_name if existing else "My Voice Profile",
                enrollment_level=self._level.value,
                enrollment_phrases_count=len(samples),
                voice_features=features,
                noise_threshold=(
                    existing.noise_threshold if existing else settings.default_noise_threshold
                ),
                is_enabled=True,
                enrolled_at=datetime.now(timezone.utc),
            )
            saved = await self.profile_store.save_enrollment(profile, samples)

        except Exception as e:
            logger.error(f"Failed to store enrollment for user {self.user_id}: {e}")
            if not self._is_stale(generation):
                self._last_error = f"Failed to save voice profile: {e}"
                self._fire(EnrollmentEvent.COMPLETION_FAILED)
            raise EnrollmentPersistenceError(f"Failed to save voice profile: {e}") from e

        if not self._is_stale(generation):
            self._fire(EnrollmentEvent.COMPLETION_SUCCEEDED)
            self._reset()

        logger.info(
            f"Completed {self._level.value} enrollment for user {self.user_id} "
            f"with {len(samples)} samples"
        )
        return saved

    def cancel_enrollment(self) -> None:
        """Return to idle from any state, discarding samples and any active recording."""
        self._generation += 1
        if self._stop_event is not None:
            self._stop_event.set()
        if self._auto_stop is not None:
            self._auto_stop.cancel()

        previous = self._state
        self._fire(EnrollmentEvent.CANCEL)
        self._reset()
        self._last_error = None

        if previous != EnrollmentState.IDLE:
            logger.info(f"Cancelled enrollment for user {self.user_id} (was {previous.value})")

    async def teardown(self) -> None:
        """Cancel the session and release the microphone immediately."""
        microphone = self._microphone
        self.cancel_enrollment()
        if microphone is not None:
            await microphone.disconnect()


class EnrollmentSessionRegistry:
    """Keeps at most one live enrollment session per user."""

    def __init__(self):
        self._sessions: Dict[str, EnrollmentSession] = {}

    def get(self, user_id: str) -> Optional[EnrollmentSession]:
        return self._sessions.get(user_id)

    def get_or_create(self, user_id: str, factory: Callable[[], EnrollmentSession]) -> EnrollmentSession:
        session = self._sessions.get(user_id)
        if session is None:
            session = factory()
            self._sessions[user_id] = session
        return session

    def replace(self, user_id: str, session: EnrollmentSession) -> Optional[EnrollmentSession]:
        """Register a new session for the user, returning the one it displaced."""
        previous = self._sessions.get(user_id)
        self._sessions[user_id] = session
        return previous

    async def discard(self, user_id: str) -> None:
        session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.teardown()

    async def close(self) -> None:
        for user_id in list(self._sessions):
            await self.discard(user_id)

    def __len__(self) -> int:
        return len(self._sessions)
