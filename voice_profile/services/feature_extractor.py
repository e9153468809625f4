"""
Voice feature extraction for speaker enrollment and verification.

Turns a mono PCM buffer into a fixed-size VoiceFeatures fingerprint:
- Band coefficients (a cheap MFCC surrogate, no FFT/DCT)
- Zero-crossing rate and RMS energy
- Spectral centroid and rolloff estimates
- Autocorrelation pitch statistics
- Speaking rate from frame energy onsets

Every function here is pure: the same buffer and sample rate always give the
same features, whether called in-process or inside the extraction worker.
"""

import logging
import math
from typing import Sequence, Tuple, Union

import numpy as np

from voice_profile.models.internal_models import MFCC_COEFFICIENTS, VoiceFeatures

logger = logging.getLogger(__name__)

SampleBuffer = Union[Sequence[float], np.ndarray]

# Band coefficient blend
BAND_MEAN_WEIGHT = 0.4
BAND_STD_WEIGHT = 0.4
BAND_PEAK_WEIGHT = 0.2

ROLLOFF_ENERGY_RATIO = 0.85

# Pitch tracking
PITCH_FRAME_SIZE = 1024
PITCH_HOP_SIZE = 512
PITCH_MAX_FRAMES = 20
PITCH_MIN_HZ = 50
PITCH_MAX_HZ = 500
PITCH_LAG_STEP = 2
PITCH_CORRELATION_WINDOW = 256

# Speaking rate
RATE_FRAME_SECONDS = 0.025
RATE_HOP_SECONDS = 0.015
RATE_MAX_FRAMES = 200
RATE_ENERGY_RATIO = 0.3

# Quality score penalties
QUALITY_VERY_SHORT_MS = 1000
QUALITY_SHORT_MS = 2000
QUALITY_VERY_SHORT_PENALTY = 0.5
QUALITY_SHORT_PENALTY = 0.8
QUALITY_MIN_RMS = 0.01
QUALITY_QUIET_PENALTY = 0.6
QUALITY_NO_PITCH_PENALTY = 0.5
QUALITY_MAX_ZCR = 0.3
QUALITY_NOISY_PENALTY = 0.7


def _as_buffer(samples: SampleBuffer) -> np.ndarray:
    """Copy samples into a 1-D float64 array without touching the caller's data."""
    buffer = np.array(samples, dtype=np.float64, copy=True)
    if buffer.ndim != 1:
        raise ValueError(f"Expected a 1-D mono sample buffer, got shape {buffer.shape}")
    return buffer


def calculate_band_coefficients(samples: np.ndarray) -> list:
    """
    Compute 13 band coefficients from contiguous, equal-length sample bands.

    Each band blends the mean, standard deviation and peak of the absolute
    amplitude. Band ``i`` always covers the same region of the buffer, so
    coefficients stay comparable across recordings.

    Args:
        samples: Mono sample buffer

    Returns:
        List of 13 floats (all zero for an empty buffer)
    """
    coeffs = [0.0] * MFCC_COEFFICIENTS
    n = samples.size
    if n == 0:
        return coeffs

    band_size = n // MFCC_COEFFICIENTS
    magnitudes = np.abs(samples)

    for i in range(MFCC_COEFFICIENTS):
        start = i * band_size
        end = min(start + band_size, n)
        band = magnitudes[start:end]
        if band.size == 0:
            continue

        mean = float(np.mean(band))
        variance = float(np.mean(band * band)) - mean * mean
        peak = float(np.max(band))

        coeffs[i] = (
            mean * BAND_MEAN_WEIGHT
            + math.sqrt(max(0.0, variance)) * BAND_STD_WEIGHT
            + peak * BAND_PEAK_WEIGHT
        )

    return coeffs


def calculate_zero_crossing_rate(samples: np.ndarray) -> float:
    """Fraction of adjacent-sample sign changes over the whole buffer."""
    n = samples.size
    if n < 2:
        return 0.0

    non_negative = samples >= 0
    crossings = np.count_nonzero(non_negative[1:] != non_negative[:-1])
    return crossings / n


def calculate_rms_energy(samples: np.ndarray) -> float:
    """Root-mean-square amplitude of the buffer."""
    if samples.size == 0:
        return 0.0
    return math.sqrt(float(np.mean(samples * samples)))


def estimate_spectral_centroid(samples: np.ndarray, sample_rate: int) -> float:
    """Brightness estimate derived from the zero-crossing rate."""
    return calculate_zero_crossing_rate(samples) * sample_rate * 0.5


def estimate_spectral_rolloff(samples: np.ndarray, sample_rate: int) -> float:
    """
    Estimate where 85% of the cumulative energy has been reached.

    The buffer is scanned from the start; the first index whose cumulative
    squared amplitude reaches the threshold is mapped onto [0, sample_rate/2].
    """
    n = samples.size
    if n == 0:
        return sample_rate / 4

    cumulative = np.cumsum(samples * samples)
    threshold = cumulative[-1] * ROLLOFF_ENERGY_RATIO
    index = int(np.searchsorted(cumulative, threshold, side="left"))
    if index >= n:
        return sample_rate / 2

    return (index / n) * (sample_rate / 2)


def detect_pitch(frame: np.ndarray, sample_rate: int) -> float:
    """
    Autocorrelation pitch estimate for a single frame.

    Scans every second lag between the 500 Hz and 50 Hz periods and keeps
    the lag with the strictly highest correlation.

    Args:
        frame: Frame of samples (normally 1024 long)
        sample_rate: Sample rate in Hz

    Returns:
        Pitch in Hz, or 0.0 when no positive correlation was found
    """
    min_period = max(1, sample_rate // PITCH_MAX_HZ)
    max_period = sample_rate // PITCH_MIN_HZ
    half = frame.size / 2
    window = int(min(frame.size // 2, PITCH_CORRELATION_WINDOW))
    head = frame[:window]

    best_corr = 0.0
    best_period = 0

    for period in range(min_period, max_period, PITCH_LAG_STEP):
        if period >= half:
            break
        corr = float(np.dot(head, frame[period:period + window]))
        if corr > best_corr:
            best_corr = corr
            best_period = period

    return sample_rate / best_period if best_period > 0 else 0.0


def calculate_pitch_stats(samples: np.ndarray, sample_rate: int) -> Tuple[float, float]:
    """
    Mean and standard deviation of pitch over the leading frames.

    Returns:
        Tuple of (pitch_mean, pitch_std); (0.0, 0.0) when no frame yields a
        pitch strictly inside the 50-500 Hz band
    """
    frame_count = min(PITCH_MAX_FRAMES, (samples.size - PITCH_FRAME_SIZE) // PITCH_HOP_SIZE)
    pitches = []

    for f in range(max(0, frame_count)):
        start = f * PITCH_HOP_SIZE
        pitch = detect_pitch(samples[start:start + PITCH_FRAME_SIZE], sample_rate)
        if PITCH_MIN_HZ < pitch < PITCH_MAX_HZ:
            pitches.append(pitch)

    if not pitches:
        return 0.0, 0.0

    values = np.array(pitches, dtype=np.float64)
    return float(np.mean(values)), float(np.std(values))


def estimate_speaking_rate(samples: np.ndarray, sample_rate: int) -> float:
    """
    Estimate syllables per second from frame energy onsets.

    Frames of 25 ms with a 15 ms hop are thresholded at 30% of the loudest
    frame; every silence-to-voiced transition counts as one syllable.
    """
    frame_size = int(sample_rate * RATE_FRAME_SECONDS)
    hop_size = int(sample_rate * RATE_HOP_SECONDS)
    if frame_size <= 0 or hop_size <= 0:
        return 0.0

    frame_count = min(RATE_MAX_FRAMES, (samples.size - frame_size) // hop_size)
    if frame_count <= 0:
        return 0.0

    energies = np.empty(frame_count, dtype=np.float64)
    for f in range(frame_count):
        start = f * hop_size
        frame = samples[start:start + frame_size]
        energies[f] = math.sqrt(float(np.sum(frame * frame)) / frame_size)

    threshold = float(np.max(energies)) * RATE_ENERGY_RATIO
    voiced = energies > threshold
    syllables = int(voiced[0]) + int(np.count_nonzero(voiced[1:] & ~voiced[:-1]))

    duration_seconds = samples.size / sample_rate
    return syllables / duration_seconds if duration_seconds > 0 else 0.0


def extract_features(samples: SampleBuffer, sample_rate: int) -> VoiceFeatures:
    """
    Extract a voice fingerprint from a mono PCM buffer.

    Args:
        samples: Mono samples in [-1, 1]; never modified
        sample_rate: Sample rate in Hz

    Returns:
        VoiceFeatures for the buffer. An empty buffer yields the neutral
        (all-zero) fingerprint rather than an error.

    Raises:
        ValueError: If sample_rate is not positive or the buffer is not 1-D
    """
    if sample_rate <= 0:
        raise ValueError(f"Sample rate must be positive, got {sample_rate}")

    buffer = _as_buffer(samples)
    pitch_mean, pitch_std = calculate_pitch_stats(buffer, sample_rate)

    features = VoiceFeatures(
        mfcc=calculate_band_coefficients(buffer),
        spectral_centroid=estimate_spectral_centroid(buffer, sample_rate),
        spectral_rolloff=estimate_spectral_rolloff(buffer, sample_rate),
        zero_crossing_rate=calculate_zero_crossing_rate(buffer),
        rms_energy=calculate_rms_energy(buffer),
        pitch_mean=pitch_mean,
        pitch_std=pitch_std,
        speaking_rate=estimate_speaking_rate(buffer, sample_rate),
    )

    logger.debug(
        f"Extracted features from {buffer.size} samples at {sample_rate}Hz: "
        f"pitch={pitch_mean:.1f}Hz rms={features.rms_energy:.4f}"
    )
    return features


def calculate_quality_score(features: VoiceFeatures, duration_ms: int) -> float:
    """
    Score how usable a single recording is for enrollment.

    Penalties are independent and multiplicative: short recordings, near
    silence, undetectable pitch and excessive noisiness each scale the score
    down.

    Args:
        features: Features extracted from the recording
        duration_ms: Recording duration in milliseconds

    Returns:
        Quality score in [0, 1]
    """
    score = 1.0

    if duration_ms < QUALITY_VERY_SHORT_MS:
        score *= QUALITY_VERY_SHORT_PENALTY
    elif duration_ms < QUALITY_SHORT_MS:
        score *= QUALITY_SHORT_PENALTY

    if features.rms_energy < QUALITY_MIN_RMS:
        score *= QUALITY_QUIET_PENALTY
    if features.pitch_mean == 0:
        score *= QUALITY_NO_PITCH_PENALTY
    if features.zero_crossing_rate > QUALITY_MAX_ZCR:
        score *= QUALITY_NOISY_PENALTY

    return max(0.0, min(1.0, score))
