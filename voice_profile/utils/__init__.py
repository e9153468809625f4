# Utilities module

from .audio_utils import (
    AudioDecodeError,
    AudioDownloadError,
    AudioProcessingError,
    convert_to_16khz_mono,
    decode_audio,
    decode_wav,
    download_audio_file,
    get_audio_duration,
    pcm_to_wav,
    validate_audio_format,
)

__all__ = [
    "AudioDecodeError",
    "AudioDownloadError",
    "AudioProcessingError",
    "convert_to_16khz_mono",
    "decode_audio",
    "decode_wav",
    "download_audio_file",
    "get_audio_duration",
    "pcm_to_wav",
    "validate_audio_format",
]
