"""
Tests for the enrollment session state machine.
"""

import asyncio
from unittest.mock import AsyncMock

import numpy as np
import pytest

from voice_profile.clients.capture_client import CaptureError, MicrophonePermissionError
from voice_profile.models.enrollment_config import EnrollmentLevel, ENROLLMENT_PHRASES
from voice_profile.models.internal_models import VoiceProfile
from voice_profile.services.enrollment_session import (
    AUDIO_LEVEL_BANDS,
    TRANSITIONS,
    EnrollmentEvent,
    EnrollmentIncompleteError,
    EnrollmentPersistenceError,
    EnrollmentSession,
    EnrollmentSessionRegistry,
    EnrollmentState,
    InvalidTransitionError,
    SampleExtractionError,
    compute_audio_levels,
)
from voice_profile.services.extraction_worker import AudioFeatureExtractor
from voice_profile.services.speaker_verifier import SpeakerVerifier

from conftest import GENUINE_PITCH_HZ, FakeMicrophone, make_voice, to_wav

USER_ID = "user-123"


class SlowExtractor(AudioFeatureExtractor):
    """Holds every extraction until ``release`` is set."""

    def __init__(self):
        super().__init__(use_worker=False)
        self.release = asyncio.Event()

    async def extract_features_from_bytes(self, audio_data):
        await self.release.wait()
        return await super().extract_features_from_bytes(audio_data)


@pytest.fixture
def short_wav():
    return to_wav(make_voice(GENUINE_PITCH_HZ, seconds=1.0))


@pytest.fixture
def microphones():
    """Microphones handed out by the session, most recent last."""
    return []


@pytest.fixture
def make_session(profile_store, microphones, short_wav):
    def factory(extractor=None, max_recording_seconds=None, **mic_options):
        mic_options.setdefault("audio", short_wav)

        def microphone_factory():
            microphone = FakeMicrophone(**mic_options)
            microphones.append(microphone)
            return microphone

        return EnrollmentSession(
            user_id=USER_ID,
            extractor=extractor or AudioFeatureExtractor(use_worker=False),
            verifier=SpeakerVerifier(),
            profile_store=profile_store,
            microphone_factory=microphone_factory,
            max_recording_seconds=max_recording_seconds,
        )
    return factory


async def wait_for_state(session, state, attempts=100):
    for _ in range(attempts):
        if session.state == state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"session never reached {state.value}, still {session.state.value}")


async def record_phrases(session, count):
    for _ in range(count):
        await session.record_phrase()
        session.skip_phrase()


class TestTransitions:
    """Test cases for the transition table."""

    def test_cancel_from_every_state(self):
        for state in EnrollmentState:
            assert TRANSITIONS[(state, EnrollmentEvent.CANCEL)] == EnrollmentState.IDLE

    def test_happy_path(self):
        path = [
            (EnrollmentState.IDLE, EnrollmentEvent.START, EnrollmentState.ENROLLING),
            (EnrollmentState.ENROLLING, EnrollmentEvent.CAPTURE_STARTED, EnrollmentState.RECORDING),
            (EnrollmentState.RECORDING, EnrollmentEvent.CAPTURE_STOPPED, EnrollmentState.PROCESSING),
            (EnrollmentState.PROCESSING, EnrollmentEvent.EXTRACTION_SUCCEEDED, EnrollmentState.ENROLLING),
            (EnrollmentState.ENROLLING, EnrollmentEvent.COMPLETE_REQUESTED, EnrollmentState.COMPLETING),
            (EnrollmentState.COMPLETING, EnrollmentEvent.COMPLETION_SUCCEEDED, EnrollmentState.IDLE),
        ]
        for state, event, expected in path:
            assert TRANSITIONS[(state, event)] == expected

    def test_no_recording_while_processing(self):
        assert (EnrollmentState.PROCESSING, EnrollmentEvent.CAPTURE_STARTED) not in TRANSITIONS
        assert (EnrollmentState.RECORDING, EnrollmentEvent.CAPTURE_STARTED) not in TRANSITIONS


class TestStartEnrollment:
    """Test cases for starting a session."""

    def test_new_session_is_idle(self, make_session):
        session = make_session()

        assert session.state == EnrollmentState.IDLE
        assert session.progress == 0.0
        assert session.current_phrase == ""
        assert session.can_complete is False

    def test_start_loads_phrases(self, make_session):
        session = make_session()

        session.start_enrollment(EnrollmentLevel.STANDARD, "en-US")

        assert session.state == EnrollmentState.ENROLLING
        assert session.phrases == tuple(ENROLLMENT_PHRASES["en-US"][:6])
        assert session.current_phrase_index == 0
        assert session.current_phrase == ENROLLMENT_PHRASES["en-US"][0]
        assert session.required_phrases == 6
        assert session.minimum_samples == 4

    def test_advanced_level(self, make_session):
        session = make_session()

        session.start_enrollment(EnrollmentLevel.ADVANCED, "es-ES")

        assert len(session.phrases) == 12
        assert session.minimum_samples == 8

    def test_unknown_language_uses_default_phrases(self, make_session):
        session = make_session()

        session.start_enrollment(EnrollmentLevel.STANDARD, "fr-FR")

        assert session.phrases == tuple(ENROLLMENT_PHRASES["pt-BR"][:6])

    def test_start_twice_is_rejected(self, make_session):
        session = make_session()
        session.start_enrollment()

        with pytest.raises(InvalidTransitionError):
            session.start_enrollment()

    @pytest.mark.asyncio
    async def test_restart_after_cancel_is_clean(self, make_session):
        session = make_session()
        session.start_enrollment()
        await session.record_phrase()
        session.skip_phrase()

        session.cancel_enrollment()
        session.start_enrollment(EnrollmentLevel.ADVANCED)

        assert session.current_phrase_index == 0
        assert session.samples == ()
        assert session.level == EnrollmentLevel.ADVANCED


class TestRecordPhrase:
    """Test cases for recording samples."""

    @pytest.mark.asyncio
    async def test_record_appends_sample(self, make_session, microphones):
        session = make_session()
        session.start_enrollment(EnrollmentLevel.STANDARD, "en-US")

        sample = await session.record_phrase()

        assert session.state == EnrollmentState.ENROLLING
        assert session.samples == (sample,)
        assert sample.phrase_index == 0
        assert sample.phrase_text == ENROLLMENT_PHRASES["en-US"][0]
        assert sample.duration_ms == 1000
        assert sample.sample_rate == 16000
        assert 0.0 <= sample.quality_score <= 1.0
        assert sample.recorded_at is not None
        assert sample.audio_features.pitch_mean == pytest.approx(GENUINE_PITCH_HZ, rel=1e-3)

        # Index stays on the recorded phrase until the caller moves on
        assert session.current_phrase_index == 0
        assert session.has_recorded_current_phrase is True
        assert session.progress == pytest.approx(1 / 6)

        assert microphones[0].disconnect_calls == 1
        assert microphones[0].is_connected is False

    @pytest.mark.asyncio
    async def test_record_before_start_is_rejected(self, make_session, microphones):
        session = make_session()

        with pytest.raises(InvalidTransitionError):
            await session.record_phrase()

        assert session.state == EnrollmentState.IDLE
        assert all(m.is_connected is False for m in microphones)

    @pytest.mark.asyncio
    async def test_stop_recording_ends_capture(self, make_session):
        session = make_session(wait_for_stop=True)
        session.start_enrollment()

        task = asyncio.create_task(session.record_phrase())
        await wait_for_state(session, EnrollmentState.RECORDING)
        assert session.is_recording is True

        assert session.stop_recording() is True
        sample = await task

        assert sample is not None
        assert session.state == EnrollmentState.ENROLLING

    def test_stop_without_recording(self, make_session):
        session = make_session()
        session.start_enrollment()

        assert session.stop_recording() is False

    @pytest.mark.asyncio
    async def test_auto_stop(self, make_session, microphones):
        session = make_session(max_recording_seconds=0.05, wait_for_stop=True)
        session.start_enrollment()

        sample = await asyncio.wait_for(session.record_phrase(), timeout=5)

        assert sample is not None
        assert microphones[0].disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_while_recording_discards_audio(self, make_session, microphones):
        session = make_session(wait_for_stop=True)
        session.start_enrollment()

        task = asyncio.create_task(session.record_phrase())
        await wait_for_state(session, EnrollmentState.RECORDING)

        session.cancel_enrollment()
        result = await task

        assert result is None
        assert session.state == EnrollmentState.IDLE
        assert session.samples == ()
        assert microphones[0].disconnect_calls >= 1

    @pytest.mark.asyncio
    async def test_cancel_while_processing_discards_sample(self, make_session):
        extractor = SlowExtractor()
        session = make_session(extractor=extractor)
        session.start_enrollment()

        task = asyncio.create_task(session.record_phrase())
        await wait_for_state(session, EnrollmentState.PROCESSING)

        session.cancel_enrollment()
        extractor.release.set()

        assert await task is None
        assert session.state == EnrollmentState.IDLE
        assert session.samples == ()

    @pytest.mark.asyncio
    async def test_no_second_recording_while_processing(self, make_session):
        extractor = SlowExtractor()
        session = make_session(extractor=extractor)
        session.start_enrollment()

        task = asyncio.create_task(session.record_phrase())
        await wait_for_state(session, EnrollmentState.PROCESSING)
        assert session.is_processing is True

        with pytest.raises(InvalidTransitionError):
            await session.record_phrase()

        extractor.release.set()
        await task
        assert len(session.samples) == 1

    @pytest.mark.asyncio
    async def test_permission_denied(self, make_session, microphones):
        session = make_session(connect_error=MicrophonePermissionError("Microphone access denied"))
        session.start_enrollment()

        with pytest.raises(MicrophonePermissionError):
            await session.record_phrase()

        assert session.state == EnrollmentState.ENROLLING
        assert session.last_error == "Microphone access denied"
        assert session.samples == ()
        assert microphones[0].disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_capture_failure_allows_retry(self, make_session):
        session = make_session(capture_error=CaptureError("stream dropped"))
        session.start_enrollment()

        with pytest.raises(CaptureError):
            await session.record_phrase()

        assert session.state == EnrollmentState.ENROLLING
        assert session.last_error == "stream dropped"

    @pytest.mark.asyncio
    async def test_undecodable_recording(self, make_session):
        session = make_session(audio=b"")
        session.start_enrollment()

        with pytest.raises(SampleExtractionError):
            await session.record_phrase()

        assert session.state == EnrollmentState.ENROLLING
        assert session.last_error.startswith("Could not process recording")
        assert session.samples == ()

    @pytest.mark.asyncio
    async def test_unexpected_stream_error_returns_to_enrolling(self, make_session, microphones, short_wav):
        session = make_session(connect_error=RuntimeError("boom"))
        session.start_enrollment()

        with pytest.raises(CaptureError, match="boom"):
            await session.record_phrase()

        assert session.state == EnrollmentState.ENROLLING
        assert session.last_error == "Recording failed: boom"
        assert session.stop_recording() is False
        assert microphones[0].disconnect_calls == 1

        # The session stays usable for the next attempt
        session.microphone_factory = lambda: FakeMicrophone(audio=short_wav)
        assert await session.record_phrase() is not None

    @pytest.mark.asyncio
    async def test_unexpected_extraction_error_returns_to_enrolling(self, make_session):
        extractor = AudioFeatureExtractor(use_worker=False)
        extractor.extract_features_from_bytes = AsyncMock(side_effect=RuntimeError("worker crashed"))
        session = make_session(extractor=extractor)
        session.start_enrollment()

        with pytest.raises(SampleExtractionError, match="worker crashed"):
            await session.record_phrase()

        assert session.state == EnrollmentState.ENROLLING
        assert session.last_error == "Could not process recording: worker crashed"
        assert session.samples == ()

    @pytest.mark.asyncio
    async def test_audio_levels_while_recording(self, make_session, microphones):
        session = make_session(wait_for_stop=True)
        session.start_enrollment()

        assert session.audio_levels == [0.0] * AUDIO_LEVEL_BANDS

        task = asyncio.create_task(session.record_phrase())
        await wait_for_state(session, EnrollmentState.RECORDING)
        microphones[0].latest_samples = np.full(1024, -0.4)

        assert session.audio_levels == pytest.approx([0.7] * AUDIO_LEVEL_BANDS)

        session.stop_recording()
        await task
        assert session.audio_levels == [0.0] * AUDIO_LEVEL_BANDS


class TestPhraseNavigation:
    """Test cases for retry and skip."""

    @pytest.mark.asyncio
    async def test_retry_removes_current_phrase_samples(self, make_session):
        session = make_session()
        session.start_enrollment()
        await session.record_phrase()
        await session.record_phrase()

        assert session.retry_phrase() == 2
        assert session.samples == ()
        assert session.retry_phrase() == 0

    @pytest.mark.asyncio
    async def test_retry_keeps_other_phrases(self, make_session):
        session = make_session()
        session.start_enrollment()
        await session.record_phrase()
        session.skip_phrase()
        await session.record_phrase()

        assert session.retry_phrase() == 1
        assert [s.phrase_index for s in session.samples] == [0]

    def test_skip_stops_at_last_phrase(self, make_session):
        session = make_session()
        session.start_enrollment()

        for _ in range(5):
            assert session.skip_phrase() is True

        assert session.current_phrase_index == 5
        assert session.skip_phrase() is False
        assert session.current_phrase_index == 5

    def test_progress_counts_skipped_phrases(self, make_session):
        session = make_session()
        session.start_enrollment()
        session.skip_phrase()
        session.skip_phrase()

        assert session.progress == pytest.approx(2 / 6)


class TestCompleteEnrollment:
    """Test cases for completing an enrollment."""

    @pytest.mark.asyncio
    async def test_too_few_samples(self, make_session, profile_store):
        session = make_session()
        session.start_enrollment()
        await record_phrases(session, 3)

        with pytest.raises(EnrollmentIncompleteError):
            await session.complete_enrollment()

        assert session.state == EnrollmentState.ENROLLING
        assert len(session.samples) == 3
        assert "At least 4 of 6" in session.last_error
        profile_store.save_enrollment.assert_not_called()

    @pytest.mark.asyncio
    async def test_complete_from_idle_is_rejected(self, make_session):
        session = make_session()

        with pytest.raises(InvalidTransitionError):
            await session.complete_enrollment()

    @pytest.mark.asyncio
    async def test_complete_stores_enabled_profile(self, make_session, profile_store):
        session = make_session()
        session.start_enrollment(EnrollmentLevel.STANDARD, "en-US")
        await record_phrases(session, 4)
        assert session.can_complete is True

        profile = await session.complete_enrollment()

        assert profile.id == "profile-1"
        assert profile.user_id == USER_ID
        assert profile.is_enabled is True
        assert profile.enrolled_at is not None
        assert profile.enrollment_level == "standard"
        assert profile.enrollment_phrases_count == 4
        assert profile.noise_threshold == 0.65
        assert profile.voice_features.pitch_mean == pytest.approx(GENUINE_PITCH_HZ, rel=1e-3)

        saved_profile, saved_samples = profile_store.save_enrollment.call_args.args
        assert saved_profile is profile
        assert [s.phrase_index for s in saved_samples] == [0, 1, 2, 3]

        assert session.state == EnrollmentState.IDLE
        assert session.samples == ()

    @pytest.mark.asyncio
    async def test_reenrollment_keeps_threshold_and_name(self, make_session, profile_store):
        profile_store.get_profile.return_value = VoiceProfile(
            user_id=USER_ID, noise_threshold=0.8, profile_name="Office voice", id="profile-1"
        )
        session = make_session()
        session.start_enrollment()
        await record_phrases(session, 4)

        profile = await session.complete_enrollment()

        assert profile.noise_threshold == 0.8
        assert profile.profile_name == "Office voice"

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_samples(self, make_session, profile_store):
        profile_store.save_enrollment.side_effect = RuntimeError("database unavailable")
        session = make_session()
        session.start_enrollment()
        await record_phrases(session, 4)

        with pytest.raises(EnrollmentPersistenceError, match="database unavailable"):
            await session.complete_enrollment()

        assert session.state == EnrollmentState.ENROLLING
        assert len(session.samples) == 4
        assert session.last_error.startswith("Failed to save voice profile")

    @pytest.mark.asyncio
    async def test_enrolled_profile_verifies_speaker(self, make_session, profile_store, genuine_wav, impostor_wav):
        session = make_session()
        session.start_enrollment()
        for seed in range(4):
            microphone_audio = genuine_wav(seed)
            session.microphone_factory = lambda audio=microphone_audio: FakeMicrophone(audio=audio)
            await session.record_phrase()
            session.skip_phrase()

        profile = await session.complete_enrollment()

        extractor = AudioFeatureExtractor(use_worker=False)
        verifier = SpeakerVerifier()
        genuine = await extractor.extract_features_from_bytes(genuine_wav(99))
        impostor = await extractor.extract_features_from_bytes(impostor_wav())

        genuine_result = verifier.verify(genuine.features, profile.voice_features, profile.noise_threshold)
        impostor_result = verifier.verify(impostor.features, profile.voice_features, profile.noise_threshold)

        assert genuine_result.is_match is True
        assert impostor_result.match_score < genuine_result.match_score

    @pytest.mark.asyncio
    async def test_mixed_pitch_enrollment_scores_other_voice_lower(self, make_session):
        session = make_session()
        session.start_enrollment()
        for index in range(6):
            frequency = 150.0 if index % 2 == 0 else 220.0
            audio = to_wav(make_voice(frequency, seed=index))
            session.microphone_factory = lambda audio=audio: FakeMicrophone(audio=audio)
            await session.record_phrase()
            session.skip_phrase()

        profile = await session.complete_enrollment()

        extractor = AudioFeatureExtractor(use_worker=False)
        verifier = SpeakerVerifier()
        same_voice = await extractor.extract_features_from_bytes(to_wav(make_voice(150.0, seed=50)))
        other_voice = await extractor.extract_features_from_bytes(
            to_wav(make_voice(280.0, amplitude=0.3, seed=51))
        )

        genuine_result = verifier.verify(same_voice.features, profile.voice_features, threshold=0.65)
        impostor_result = verifier.verify(other_voice.features, profile.voice_features, threshold=0.65)

        assert profile.enrollment_phrases_count == 6
        assert genuine_result.is_match is True
        assert genuine_result.match_score - impostor_result.match_score > 0.01


class TestAudioLevels:
    """Test cases for compute_audio_levels."""

    def test_empty_window_is_silent(self):
        assert compute_audio_levels(np.zeros(0)) == [0.0] * AUDIO_LEVEL_BANDS

    def test_silence_reads_floor(self):
        assert compute_audio_levels(np.zeros(1024)) == pytest.approx([0.1] * AUDIO_LEVEL_BANDS)

    def test_loud_bands_clip_at_one(self):
        window = np.concatenate([np.full(512, 0.9), np.zeros(512)])

        levels = compute_audio_levels(window)

        assert levels[0] == 1.0
        assert levels[-1] == pytest.approx(0.1)
        assert all(0.0 <= level <= 1.0 for level in levels)


class TestSessionRegistry:
    """Test cases for EnrollmentSessionRegistry."""

    def test_get_or_create_reuses_session(self, make_session):
        registry = EnrollmentSessionRegistry()

        first = registry.get_or_create(USER_ID, make_session)
        second = registry.get_or_create(USER_ID, make_session)

        assert first is second
        assert len(registry) == 1

    def test_replace_returns_previous(self, make_session):
        registry = EnrollmentSessionRegistry()
        old = make_session()
        new = make_session()
        registry.replace(USER_ID, old)

        assert registry.replace(USER_ID, new) is old
        assert registry.get(USER_ID) is new

    @pytest.mark.asyncio
    async def test_discard_tears_session_down(self, make_session, microphones):
        registry = EnrollmentSessionRegistry()
        session = make_session(wait_for_stop=True)
        registry.replace(USER_ID, session)
        session.start_enrollment()

        task = asyncio.create_task(session.record_phrase())
        await wait_for_state(session, EnrollmentState.RECORDING)

        await registry.discard(USER_ID)

        assert await task is None
        assert registry.get(USER_ID) is None
        assert session.state == EnrollmentState.IDLE
        assert microphones[0].is_connected is False

    @pytest.mark.asyncio
    async def test_close_discards_all(self, make_session):
        registry = EnrollmentSessionRegistry()
        registry.replace("a", make_session())
        registry.replace("b", make_session())

        await registry.close()

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_discard_unknown_user(self):
        registry = EnrollmentSessionRegistry()

        await registry.discard("missing")

        assert len(registry) == 0
