"""
Audio decoding utilities for voice enrollment and verification.

This module provides functions for:
- Downloading audio files from URLs
- Converting arbitrary containers to 16kHz mono WAV using ffmpeg
- PCM to WAV conversion for captured streams
- Decoding WAV data into float sample buffers
"""

import asyncio
import io
import logging
import struct
import tempfile
import wave
from typing import Optional, Tuple

import ffmpeg
import httpx
import numpy as np

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000


class AudioProcessingError(Exception):
    """Raised when audio processing operations fail."""
    pass


class AudioDecodeError(AudioProcessingError):
    """Raised when an audio blob cannot be decoded into PCM samples."""
    pass


class AudioDownloadError(Exception):
    """Raised when audio download operations fail."""
    pass


async def download_audio_file(url: str, timeout: int = 30) -> bytes:
    """
    Download audio file from URL using httpx.

    Args:
        url: URL to download audio from
        timeout: Request timeout in seconds

    Returns:
        Audio file content as bytes

    Raises:
        AudioDownloadError: If download fails
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            logger.info(f"Downloading audio from URL: {url}")
            response = await client.get(url)
            response.raise_for_status()

            content_length = len(response.content)
            logger.info(f"Downloaded {content_length} bytes of audio data")

            if content_length == 0:
                raise AudioDownloadError("Downloaded audio file is empty")

            return response.content

    except AudioDownloadError:
        raise
    except httpx.TimeoutException as e:
        logger.error(f"Timeout downloading audio from {url}: {e}")
        raise AudioDownloadError(f"Timeout downloading audio: {e}")
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error downloading audio from {url}: {e}")
        raise AudioDownloadError(f"HTTP error downloading audio: {e.response.status_code}")
    except Exception as e:
        logger.error(f"Unexpected error downloading audio from {url}: {e}")
        raise AudioDownloadError(f"Failed to download audio: {e}")


def pcm_to_wav(pcm_data: bytes, sample_rate: int = TARGET_SAMPLE_RATE, channels: int = 1,
               sample_width: int = 2) -> bytes:
    """
    Wrap raw PCM audio data in a WAV header.

    Args:
        pcm_data: Raw little-endian PCM audio data
        sample_rate: Sample rate in Hz (default: 16000)
        channels: Number of audio channels (default: 1 for mono)
        sample_width: Sample width in bytes (default: 2 for 16-bit)

    Returns:
        WAV formatted audio data as bytes

    Raises:
        AudioProcessingError: If conversion fails
    """
    if not pcm_data:
        raise AudioProcessingError("PCM data is empty")

    try:
        data_size = len(pcm_data)
        wav_header = struct.pack(
            '<4sI4s4sIHHIIHH4sI',
            b'RIFF',
            data_size + 36,
            b'WAVE',
            b'fmt ',
            16,                                    # fmt chunk size (PCM)
            1,                                     # audio format (PCM)
            channels,
            sample_rate,
            sample_rate * channels * sample_width,  # byte rate
            channels * sample_width,               # block align
            sample_width * 8,                      # bits per sample
            b'data',
            data_size
        )
    except struct.error as e:
        logger.error(f"Error creating WAV header: {e}")
        raise AudioProcessingError(f"Failed to create WAV header: {e}")

    logger.debug(f"Wrapped {data_size} bytes of PCM in a WAV container")
    return wav_header + pcm_data


def is_wav(audio_data: bytes) -> bool:
    """Check for a RIFF/WAVE signature."""
    return len(audio_data) >= 12 and audio_data[:4] == b'RIFF' and audio_data[8:12] == b'WAVE'


def _read_wav(audio_data: bytes) -> Tuple[int, int, int, bytes]:
    """Return (channels, sample_rate, sample_width, frames) from WAV bytes."""
    if not is_wav(audio_data):
        raise AudioDecodeError("Not a valid WAV file")

    try:
        with wave.open(io.BytesIO(audio_data), 'rb') as wav_file:
            channels = wav_file.getnchannels()
            sample_rate = wav_file.getframerate()
            sample_width = wav_file.getsampwidth()
            frames = wav_file.readframes(wav_file.getnframes())
    except (wave.Error, EOFError, struct.error) as e:
        raise AudioDecodeError(f"Error parsing WAV data: {e}")

    return channels, sample_rate, sample_width, frames


def validate_audio_format(audio_data: bytes,
                          expected_sample_rate: int = TARGET_SAMPLE_RATE) -> Tuple[bool, str]:
    """
    Validate that audio data is mono 16-bit WAV at the expected sample rate.

    Args:
        audio_data: Audio data to validate
        expected_sample_rate: Required sample rate in Hz

    Returns:
        Tuple of (is_valid, description)
    """
    if len(audio_data) < 44:
        return False, "Audio data too short to contain WAV header"

    try:
        channels, sample_rate, sample_width, _ = _read_wav(audio_data)
    except AudioDecodeError as e:
        return False, str(e)

    if channels != 1:
        return False, f"Expected mono (1 channel), got {channels} channels"

    if sample_rate != expected_sample_rate:
        return False, f"Expected {expected_sample_rate}Hz sample rate, got {sample_rate}Hz"

    if sample_width != 2:
        return False, f"Expected 16-bit samples, got {sample_width * 8}-bit"

    return True, f"Valid {expected_sample_rate // 1000}kHz mono WAV format"


def get_audio_duration(audio_data: bytes) -> float:
    """
    Get duration of WAV audio data in seconds.

    Raises:
        AudioProcessingError: If unable to determine duration
    """
    if len(audio_data) < 44:
        raise AudioProcessingError("Audio data too short to contain WAV header")

    channels, sample_rate, sample_width, frames = _read_wav(audio_data)
    bytes_per_second = sample_rate * channels * sample_width
    if bytes_per_second == 0:
        raise AudioProcessingError("Error calculating audio duration: invalid WAV format")

    return len(frames) / bytes_per_second


def decode_wav(audio_data: bytes) -> Tuple[np.ndarray, int]:
    """
    Decode PCM WAV data into mono float samples.

    Args:
        audio_data: WAV file bytes (8, 16 or 32-bit integer PCM)

    Returns:
        Tuple of (samples in [-1, 1] as float64, sample_rate)

    Raises:
        AudioDecodeError: If the data is not decodable PCM WAV or holds no samples
    """
    channels, sample_rate, sample_width, frames = _read_wav(audio_data)

    if sample_width == 1:
        pcm = (np.frombuffer(frames, dtype=np.uint8).astype(np.float64) - 128.0) / 128.0
    elif sample_width == 2:
        pcm = np.frombuffer(frames, dtype='<i2').astype(np.float64) / 32768.0
    elif sample_width == 4:
        pcm = np.frombuffer(frames, dtype='<i4').astype(np.float64) / 2147483648.0
    else:
        raise AudioDecodeError(f"Unsupported sample width: {sample_width * 8}-bit")

    if channels > 1:
        usable = (pcm.size // channels) * channels
        pcm = pcm[:usable].reshape(-1, channels).mean(axis=1)

    if pcm.size == 0:
        raise AudioDecodeError("Audio contains no samples")

    return pcm, sample_rate


async def convert_to_16khz_mono(audio_data: bytes, input_format: Optional[str] = None) -> bytes:
    """
    Convert audio to 16kHz mono WAV format using ffmpeg.

    Args:
        audio_data: Input audio data as bytes
        input_format: Input format hint (e.g., 'webm', 'mp3'). If None, ffmpeg will auto-detect.

    Returns:
        Converted audio data as 16kHz mono WAV bytes

    Raises:
        AudioProcessingError: If conversion fails
    """
    if not audio_data:
        raise AudioProcessingError("Audio data is empty")

    try:
        with tempfile.NamedTemporaryFile(suffix=f'.{input_format or "audio"}') as input_file, \
             tempfile.NamedTemporaryFile(suffix='.wav') as output_file:

            input_file.write(audio_data)
            input_file.flush()

            logger.info("Converting audio to 16kHz mono WAV using ffmpeg")

            stream = ffmpeg.input(input_file.name)
            stream = ffmpeg.output(
                stream,
                output_file.name,
                acodec='pcm_s16le',  # 16-bit PCM
                ac=1,                # Mono (1 channel)
                ar=TARGET_SAMPLE_RATE,
                f='wav'
            )
            # ffmpeg blocks until the conversion finishes; keep it off the event loop
            await asyncio.to_thread(ffmpeg.run, stream, overwrite_output=True, quiet=True)

            output_file.seek(0)
            converted_data = output_file.read()

            if not converted_data:
                raise AudioProcessingError("ffmpeg conversion produced empty output")

            logger.info(f"Converted {len(audio_data)} bytes to {len(converted_data)} bytes (16kHz mono WAV)")
            return converted_data

    except AudioProcessingError:
        raise
    except ffmpeg.Error as e:
        error_msg = e.stderr.decode() if e.stderr else str(e)
        logger.error(f"ffmpeg conversion failed: {error_msg}")
        raise AudioProcessingError(f"Audio conversion failed: {error_msg}")
    except Exception as e:
        logger.error(f"Unexpected error in audio conversion: {e}")
        raise AudioProcessingError(f"Audio conversion failed: {e}")


async def decode_audio(audio_data: bytes) -> Tuple[np.ndarray, int]:
    """
    Decode an encoded audio blob into mono PCM samples.

    WAV input is decoded directly; any other container is transcoded with
    ffmpeg first.

    Args:
        audio_data: Encoded audio blob

    Returns:
        Tuple of (samples, sample_rate)

    Raises:
        AudioDecodeError: If the blob is empty or cannot be decoded
    """
    if not audio_data:
        raise AudioDecodeError("Audio data is empty")

    if is_wav(audio_data):
        return decode_wav(audio_data)

    try:
        converted = await convert_to_16khz_mono(audio_data)
    except AudioProcessingError as e:
        raise AudioDecodeError(f"Unsupported or malformed audio: {e}")

    return decode_wav(converted)
