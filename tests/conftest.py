"""
Shared fixtures: synthetic voices and helpers for the enrollment tests.
"""

import asyncio
from typing import Optional
from unittest.mock import AsyncMock

import numpy as np
import pytest

from voice_profile.models.internal_models import VoiceFeatures, VoiceProfile
from voice_profile.utils.audio_utils import pcm_to_wav

SAMPLE_RATE = 16000

# Pitch periods are even and longer than half the 50 Hz lag limit, so the
# autocorrelation search has exactly one best lag per frame.
GENUINE_PITCH_HZ = SAMPLE_RATE / 166
IMPOSTOR_PITCH_HZ = SAMPLE_RATE / 290


def make_voice(
    frequency: float,
    seconds: float = 2.5,
    amplitude: float = 0.5,
    noise: float = 0.0002,
    seed: int = 0,
    sample_rate: int = SAMPLE_RATE
) -> np.ndarray:
    """A steady sine 'voice' with a little seeded noise."""
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    rng = np.random.default_rng(seed)
    signal = amplitude * np.sin(2 * np.pi * frequency * t) + rng.normal(0.0, noise, t.size)
    return np.clip(signal, -1.0, 1.0)


def to_wav(samples: np.ndarray, sample_rate: int = SAMPLE_RATE) -> bytes:
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype('<i2').tobytes()
    return pcm_to_wav(pcm, sample_rate=sample_rate)


def make_features(**overrides) -> VoiceFeatures:
    values = dict(
        mfcc=[0.1 * (i + 1) for i in range(13)],
        spectral_centroid=1500.0,
        spectral_rolloff=3000.0,
        zero_crossing_rate=0.1,
        rms_energy=0.2,
        pitch_mean=150.0,
        pitch_std=10.0,
        speaking_rate=4.0,
    )
    values.update(overrides)
    return VoiceFeatures(**values)


class FakeMicrophone:
    """Stands in for WebSocketMicrophone; returns canned WAV bytes."""

    def __init__(
        self,
        audio: Optional[bytes] = None,
        connect_error: Optional[Exception] = None,
        capture_error: Optional[Exception] = None,
        wait_for_stop: bool = False
    ):
        self.audio = audio
        self.connect_error = connect_error
        self.capture_error = capture_error
        self.wait_for_stop = wait_for_stop
        self.is_connected = False
        self.disconnect_calls = 0
        self.latest_samples = np.zeros(0)

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.is_connected = True

    async def capture_audio(self, stop_event: asyncio.Event) -> bytes:
        if self.capture_error is not None:
            raise self.capture_error
        if self.wait_for_stop:
            await stop_event.wait()
        return self.audio

    async def disconnect(self):
        self.disconnect_calls += 1
        self.is_connected = False


@pytest.fixture
def genuine_wav():
    """Factory for recordings of the enrolled speaker."""
    def factory(seed: int = 0) -> bytes:
        return to_wav(make_voice(GENUINE_PITCH_HZ, seed=seed))
    return factory


@pytest.fixture
def impostor_wav():
    """Factory for recordings of a different speaker."""
    def factory(seed: int = 100) -> bytes:
        return to_wav(make_voice(IMPOSTOR_PITCH_HZ, amplitude=0.3, seed=seed))
    return factory


@pytest.fixture
def profile_store():
    """Async persistence double storing whatever the session saves."""
    store = AsyncMock()
    store.get_profile.return_value = None

    async def save_enrollment(profile: VoiceProfile, samples):
        profile.id = "profile-1"
        return profile

    store.save_enrollment.side_effect = save_enrollment
    return store
