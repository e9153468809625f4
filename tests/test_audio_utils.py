"""
Tests for audio decoding utilities.
"""

import struct
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import numpy as np
import pytest

from voice_profile.utils.audio_utils import (
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


class TestWavHelpers:
    """Test cases for WAV wrapping and inspection."""

    def test_pcm_to_wav_conversion(self):
        """PCM data gets a 44 byte header describing its format."""
        sample_rate = 16000
        pcm_data = b'\x00\x00' * sample_rate  # one second of 16-bit silence

        wav_data = pcm_to_wav(pcm_data, sample_rate=sample_rate)

        assert wav_data[:4] == b'RIFF'
        assert wav_data[8:12] == b'WAVE'
        assert len(wav_data) == len(pcm_data) + 44

        channels = struct.unpack('<H', wav_data[22:24])[0]
        rate = struct.unpack('<I', wav_data[24:28])[0]
        bits_per_sample = struct.unpack('<H', wav_data[34:36])[0]

        assert channels == 1
        assert rate == sample_rate
        assert bits_per_sample == 16

    def test_pcm_to_wav_empty_data(self):
        with pytest.raises(AudioProcessingError, match="PCM data is empty"):
            pcm_to_wav(b'')

    def test_validate_audio_format_valid_wav(self):
        wav_data = pcm_to_wav(b'\x00\x00' * 1000, sample_rate=16000, channels=1)

        is_valid, description = validate_audio_format(wav_data)

        assert is_valid is True
        assert "16kHz mono WAV" in description

    def test_validate_audio_format_invalid_channels(self):
        wav_data = pcm_to_wav(b'\x00\x00' * 1000, sample_rate=16000, channels=2)

        is_valid, description = validate_audio_format(wav_data)

        assert is_valid is False
        assert "Expected mono" in description

    def test_validate_audio_format_invalid_sample_rate(self):
        wav_data = pcm_to_wav(b'\x00\x00' * 1000, sample_rate=44100)

        is_valid, description = validate_audio_format(wav_data)

        assert is_valid is False
        assert "Expected 16000Hz" in description

    def test_validate_audio_format_too_short(self):
        is_valid, description = validate_audio_format(b'short')

        assert is_valid is False
        assert "too short" in description

    def test_get_audio_duration(self):
        wav_data = pcm_to_wav(b'\x00\x00' * 32000, sample_rate=16000)

        assert get_audio_duration(wav_data) == pytest.approx(2.0)


class TestDecodeWav:
    """Test cases for decode_wav."""

    def test_decodes_16_bit_samples(self):
        pcm = np.array([0, 16384, -16384, -32768], dtype='<i2').tobytes()

        samples, sample_rate = decode_wav(pcm_to_wav(pcm, sample_rate=8000))

        assert sample_rate == 8000
        assert samples.dtype == np.float64
        np.testing.assert_allclose(samples, [0.0, 0.5, -0.5, -1.0])

    def test_decodes_8_bit_samples(self):
        samples, _ = decode_wav(pcm_to_wav(bytes([128, 192, 64]), sample_width=1))

        np.testing.assert_allclose(samples, [0.0, 0.5, -0.5])

    def test_downmixes_stereo(self):
        pcm = np.array([16384, 0, -16384, -16384], dtype='<i2').tobytes()

        samples, _ = decode_wav(pcm_to_wav(pcm, channels=2))

        np.testing.assert_allclose(samples, [0.25, -0.5])

    def test_rejects_non_wav(self):
        with pytest.raises(AudioDecodeError, match="Not a valid WAV"):
            decode_wav(b'OggS' + b'\x00' * 60)

    def test_rejects_unsupported_width(self):
        with pytest.raises(AudioDecodeError, match="Unsupported sample width"):
            decode_wav(pcm_to_wav(b'\x00' * 30, sample_width=3))


class TestDecodeAudio:
    """Test cases for decode_audio."""

    @pytest.mark.asyncio
    async def test_empty_blob(self):
        with pytest.raises(AudioDecodeError, match="empty"):
            await decode_audio(b'')

    @pytest.mark.asyncio
    async def test_wav_is_decoded_directly(self):
        wav = pcm_to_wav(np.array([100, -100], dtype='<i2').tobytes())

        with patch('voice_profile.utils.audio_utils.convert_to_16khz_mono', new_callable=AsyncMock) as convert:
            samples, sample_rate = await decode_audio(wav)

        convert.assert_not_called()
        assert sample_rate == 16000
        assert samples.size == 2

    @pytest.mark.asyncio
    async def test_other_containers_go_through_ffmpeg(self):
        converted = pcm_to_wav(b'\x00\x00' * 160)

        with patch('voice_profile.utils.audio_utils.convert_to_16khz_mono',
                   new_callable=AsyncMock, return_value=converted) as convert:
            samples, sample_rate = await decode_audio(b'\x1aE\xdf\xa3webm-data')

        convert.assert_awaited_once_with(b'\x1aE\xdf\xa3webm-data')
        assert samples.size == 160
        assert sample_rate == 16000

    @pytest.mark.asyncio
    async def test_conversion_failure_is_decode_error(self):
        with patch('voice_profile.utils.audio_utils.convert_to_16khz_mono',
                   new_callable=AsyncMock, side_effect=AudioProcessingError("ffmpeg failed")):
            with pytest.raises(AudioDecodeError, match="Unsupported or malformed audio"):
                await decode_audio(b'garbage')


class TestDownloadAndConvert:
    """Test cases for downloading and ffmpeg conversion."""

    @pytest.mark.asyncio
    async def test_download_audio_file_success(self):
        mock_response = MagicMock()
        mock_response.content = b'fake_audio_data'
        mock_response.raise_for_status = MagicMock()

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(return_value=mock_response)

            result = await download_audio_file("https://example.com/audio.wav")

        assert result == b'fake_audio_data'

    @pytest.mark.asyncio
    async def test_download_audio_file_empty_response(self):
        mock_response = MagicMock()
        mock_response.content = b''
        mock_response.raise_for_status = MagicMock()

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(return_value=mock_response)

            with pytest.raises(AudioDownloadError, match="Downloaded audio file is empty"):
                await download_audio_file("https://example.com/audio.wav")

    @pytest.mark.asyncio
    async def test_download_audio_file_http_status(self):
        request = httpx.Request("GET", "https://example.com/audio.wav")
        response = httpx.Response(404, request=request)

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(return_value=response)

            with pytest.raises(AudioDownloadError, match="404"):
                await download_audio_file("https://example.com/audio.wav")

    @pytest.mark.asyncio
    async def test_download_audio_file_unexpected_error(self):
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(
                side_effect=Exception("connection reset")
            )

            with pytest.raises(AudioDownloadError, match="Failed to download audio"):
                await download_audio_file("https://example.com/audio.wav")

    @pytest.mark.asyncio
    async def test_convert_to_16khz_mono_success(self):
        input_data = b'fake_input_audio'
        expected_output = b'fake_converted_audio'

        with patch('ffmpeg.input'), \
             patch('ffmpeg.output'), \
             patch('ffmpeg.run') as mock_run, \
             patch('tempfile.NamedTemporaryFile') as mock_temp:

            mock_input_file = MagicMock()
            mock_output_file = MagicMock()
            mock_output_file.read.return_value = expected_output
            mock_temp.return_value.__enter__.side_effect = [mock_input_file, mock_output_file]

            result = await convert_to_16khz_mono(input_data)

        assert result == expected_output
        mock_input_file.write.assert_called_once_with(input_data)
        mock_run.assert_called_once()

    @pytest.mark.asyncio
    async def test_convert_to_16khz_mono_runs_ffmpeg_in_thread(self):
        with patch('ffmpeg.input'), \
             patch('ffmpeg.output') as mock_output, \
             patch('ffmpeg.run') as mock_run, \
             patch('voice_profile.utils.audio_utils.asyncio.to_thread', new_callable=AsyncMock) as to_thread, \
             patch('tempfile.NamedTemporaryFile') as mock_temp:

            mock_output_file = MagicMock()
            mock_output_file.read.return_value = b'converted'
            mock_temp.return_value.__enter__.side_effect = [MagicMock(), mock_output_file]

            await convert_to_16khz_mono(b'input')

        to_thread.assert_awaited_once_with(
            mock_run, mock_output.return_value, overwrite_output=True, quiet=True
        )
        mock_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_convert_to_16khz_mono_empty_input(self):
        with pytest.raises(AudioProcessingError, match="Audio data is empty"):
            await convert_to_16khz_mono(b'')
