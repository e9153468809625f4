"""Internal data models for the voice profile service."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

MFCC_COEFFICIENTS = 13

MIN_NOISE_THRESHOLD = 0.4
MAX_NOISE_THRESHOLD = 0.9

# Persisted JSON keys, in the order they are written
_FEATURE_KEYS = {
    "spectral_centroid": "spectralCentroid",
    "spectral_rolloff": "spectralRolloff",
    "zero_crossing_rate": "zeroCrossingRate",
    "rms_energy": "rmsEnergy",
    "pitch_mean": "pitchMean",
    "pitch_std": "pitchStd",
    "speaking_rate": "speakingRate",
}


@dataclass
class VoiceFeatures:
    """Fixed-shape voice fingerprint extracted from one recording."""

    mfcc: List[float]  # 13 band coefficients, band order preserved
    spectral_centroid: float
    spectral_rolloff: float
    zero_crossing_rate: float
    rms_energy: float
    pitch_mean: float  # Hz, 0 when no pitch was found
    pitch_std: float
    speaking_rate: float  # syllables per second

    def __post_init__(self):
        """Validate coefficient count after initialization."""
        self.mfcc = [float(c) for c in self.mfcc]
        if len(self.mfcc) != MFCC_COEFFICIENTS:
            raise ValueError(
                f"mfcc must have {MFCC_COEFFICIENTS} coefficients, got {len(self.mfcc)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase JSON stored alongside a profile."""
        data: Dict[str, Any] = {"mfcc": list(self.mfcc)}
        for attr, key in _FEATURE_KEYS.items():
            data[key] = float(getattr(self, attr))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceFeatures":
        """Build features from their stored JSON representation."""
        try:
            values = {attr: float(data[key]) for attr, key in _FEATURE_KEYS.items()}
            return cls(mfcc=[float(c) for c in data["mfcc"]], **values)
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid voice features payload: {e}")


@dataclass
class EnrollmentSample:
    """One recorded enrollment phrase and its extracted features."""

    phrase_index: int
    phrase_text: str
    audio_features: VoiceFeatures
    duration_ms: int
    sample_rate: int
    quality_score: float
    id: Optional[str] = None
    recorded_at: Optional[datetime] = None

    def __post_init__(self):
        if self.phrase_index < 0:
            raise ValueError(f"phrase_index must be non-negative, got {self.phrase_index}")
        if not 0.0 <= self.quality_score <= 1.0:
            raise ValueError(f"Quality score must be between 0.0 and 1.0, got {self.quality_score}")


@dataclass
class VoiceProfile:
    """Enrolled speaker reference owned by a single user."""

    user_id: str
    enrollment_level: str = "standard"
    enrollment_phrases_count: int = 0
    voice_features: Optional[VoiceFeatures] = None
    noise_threshold: float = 0.65
    is_enabled: bool = False
    enrolled_at: Optional[datetime] = None
    id: Optional[str] = None
    profile_name: str = "My Voice Profile"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate threshold range after initialization."""
        if not MIN_NOISE_THRESHOLD <= self.noise_threshold <= MAX_NOISE_THRESHOLD:
            raise ValueError(
                f"Noise threshold must be between {MIN_NOISE_THRESHOLD} and "
                f"{MAX_NOISE_THRESHOLD}, got {self.noise_threshold}"
            )

    @property
    def can_verify(self) -> bool:
        """Whether voice gating should be consulted for this profile."""
        return self.is_enabled and self.voice_features is not None


@dataclass
class VerificationDetails:
    """Component similarities behind a verification score."""

    mfcc_similarity: float
    pitch_similarity: float
    energy_similarity: float
    spectral_similarity: float


@dataclass
class VerificationResult:
    """Outcome of comparing one fingerprint against a profile reference."""

    is_match: bool
    confidence: float
    match_score: float
    threshold: float
    details: Optional[VerificationDetails] = field(default=None)
