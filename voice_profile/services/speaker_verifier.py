"""
Speaker verification against an enrolled voice fingerprint.

Compares two VoiceFeatures records through four component similarities
(band coefficients, pitch, energy, spectral shape) and aggregates enrollment
samples into a single reference fingerprint.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from voice_profile.models.internal_models import (
    VerificationDetails,
    VerificationResult,
    VoiceFeatures,
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.65

NEUTRAL_SIMILARITY = 0.5

PITCH_MEAN_WEIGHT = 0.7
PITCH_STD_WEIGHT = 0.3
ENERGY_EXPONENT = 0.5
CENTROID_WEIGHT = 0.4
ROLLOFF_WEIGHT = 0.3
ZCR_WEIGHT = 0.3
ZCR_SENSITIVITY = 5.0


class AggregationError(ValueError):
    """Raised when enrollment samples cannot be aggregated."""
    pass


@dataclass(frozen=True)
class SimilarityWeights:
    """Product-tuned weights for combining component similarities."""

    mfcc: float = 0.50
    pitch: float = 0.25
    energy: float = 0.10
    spectral: float = 0.15


def _ratio(a: float, b: float) -> float:
    """min/max ratio of two non-negative values, neutral when either is zero."""
    if a <= 0 or b <= 0:
        return NEUTRAL_SIMILARITY
    if a == b:
        return 1.0
    return min(a, b) / max(a, b)


class SpeakerVerifier:
    """Scores voice fingerprints against an enrolled reference."""

    def __init__(self, weights: SimilarityWeights = SimilarityWeights()):
        self.weights = weights

    def verify(
        self,
        input_features: VoiceFeatures,
        profile_features: VoiceFeatures,
        threshold: float = DEFAULT_THRESHOLD
    ) -> VerificationResult:
        """
        Verify whether input features match the enrolled profile features.

        Args:
            input_features: Fingerprint of the utterance being checked
            profile_features: Enrolled reference fingerprint
            threshold: Minimum match score accepted as the same speaker

        Returns:
            VerificationResult with the match decision, confidence and the
            component similarity breakdown
        """
        details = VerificationDetails(
            mfcc_similarity=self.calculate_mfcc_similarity(input_features.mfcc, profile_features.mfcc),
            pitch_similarity=self.calculate_pitch_similarity(input_features, profile_features),
            energy_similarity=self.calculate_energy_similarity(input_features, profile_features),
            spectral_similarity=self.calculate_spectral_similarity(input_features, profile_features),
        )

        raw_score = (
            details.mfcc_similarity * self.weights.mfcc
            + details.pitch_similarity * self.weights.pitch
            + details.energy_similarity * self.weights.energy
            + details.spectral_similarity * self.weights.spectral
        )
        match_score = max(0.0, min(1.0, raw_score))
        is_match = match_score >= threshold
        confidence = self.calculate_confidence(match_score, threshold)

        logger.debug(
            f"Speaker verification: score={match_score:.4f}, threshold={threshold}, "
            f"match={is_match}, confidence={confidence:.4f}"
        )

        return VerificationResult(
            is_match=is_match,
            confidence=confidence,
            match_score=match_score,
            threshold=threshold,
            details=details,
        )

    @staticmethod
    def calculate_mfcc_similarity(mfcc1: Sequence[float], mfcc2: Sequence[float]) -> float:
        """Cosine similarity of the coefficient vectors, remapped to [0, 1]."""
        if len(mfcc1) != len(mfcc2) or len(mfcc1) == 0:
            return 0.0

        a = np.asarray(mfcc1, dtype=np.float64)
        b = np.asarray(mfcc2, dtype=np.float64)
        magnitude = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
        if magnitude == 0:
            return 0.0

        cosine = float(np.clip(np.dot(a, b) / magnitude, -1.0, 1.0))
        return (cosine + 1) / 2

    @staticmethod
    def calculate_pitch_similarity(features1: VoiceFeatures, features2: VoiceFeatures) -> float:
        if features1.pitch_mean == 0 or features2.pitch_mean == 0:
            return NEUTRAL_SIMILARITY

        pitch_ratio = _ratio(features1.pitch_mean, features2.pitch_mean)
        std_ratio = _ratio(features1.pitch_std, features2.pitch_std)
        return pitch_ratio * PITCH_MEAN_WEIGHT + std_ratio * PITCH_STD_WEIGHT

    @staticmethod
    def calculate_energy_similarity(features1: VoiceFeatures, features2: VoiceFeatures) -> float:
        if features1.rms_energy == 0 or features2.rms_energy == 0:
            return NEUTRAL_SIMILARITY

        # Loudness depends on mic distance, so compare on a softened curve
        return math.pow(_ratio(features1.rms_energy, features2.rms_energy), ENERGY_EXPONENT)

    @staticmethod
    def calculate_spectral_similarity(features1: VoiceFeatures, features2: VoiceFeatures) -> float:
        centroid_ratio = _ratio(features1.spectral_centroid, features2.spectral_centroid)
        rolloff_ratio = _ratio(features1.spectral_rolloff, features2.spectral_rolloff)

        zcr_diff = abs(features1.zero_crossing_rate - features2.zero_crossing_rate)
        zcr_similarity = max(0.0, 1 - zcr_diff * ZCR_SENSITIVITY)

        return (
            centroid_ratio * CENTROID_WEIGHT
            + rolloff_ratio * ROLLOFF_WEIGHT
            + zcr_similarity * ZCR_WEIGHT
        )

    @staticmethod
    def calculate_confidence(score: float, threshold: float) -> float:
        """
        Confidence in the decision, based on distance from the threshold.

        At the threshold confidence is 0.5. Accepted scores rise toward 1.0 as
        they approach 1; rejected scores fall toward 0.0 as they approach 0.
        """
        if score >= threshold:
            if threshold >= 1:
                return 1.0
            confidence = 0.5 + (score - threshold) / (1 - threshold) * 0.5
        else:
            confidence = 0.5 - (threshold - score) / threshold * 0.5
        return max(0.0, min(1.0, confidence))

    def aggregate_features(self, samples: List[VoiceFeatures]) -> VoiceFeatures:
        """
        Aggregate enrollment samples into one reference fingerprint.

        Args:
            samples: Features of every enrollment sample to combine

        Returns:
            The single sample unchanged, or the element-wise mean of all samples

        Raises:
            AggregationError: If no samples are given
        """
        if not samples:
            raise AggregationError("No samples to aggregate")

        if len(samples) == 1:
            return samples[0]

        mfcc = np.mean(np.array([s.mfcc for s in samples], dtype=np.float64), axis=0)

        def mean_of(attr: str) -> float:
            return float(np.mean([getattr(s, attr) for s in samples]))

        aggregated = VoiceFeatures(
            mfcc=mfcc.tolist(),
            spectral_centroid=mean_of("spectral_centroid"),
            spectral_rolloff=mean_of("spectral_rolloff"),
            zero_crossing_rate=mean_of("zero_crossing_rate"),
            rms_energy=mean_of("rms_energy"),
            pitch_mean=mean_of("pitch_mean"),
            pitch_std=mean_of("pitch_std"),
            speaking_rate=mean_of("speaking_rate"),
        )

        logger.info(f"Aggregated {len(samples)} enrollment samples into reference features")
        return aggregated
