"""
WebSocket microphone for live enrollment capture.

The browser (or any audio bridge) streams 16-bit PCM to a WebSocket endpoint;
this client records one phrase from that stream until told to stop, the
maximum duration passes or the stream closes, and hands back WAV bytes.
"""

import asyncio
import base64
import binascii
import json
import logging
import time
from typing import List, Optional

import numpy as np
import websockets
from websockets.exceptions import (
    ConnectionClosedError,
    ConnectionClosedOK,
    InvalidStatus,
    WebSocketException,
)

from voice_profile.config import settings
from voice_profile.utils.audio_utils import pcm_to_wav

logger = logging.getLogger(__name__)

LEVEL_WINDOW_SAMPLES = 1024
RECEIVE_POLL_SECONDS = 0.1
PERMISSION_DENIED_STATUSES = (401, 403)


class CaptureError(Exception):
    """Raised when audio capture fails."""
    pass


class MicrophonePermissionError(CaptureError):
    """Raised when the audio stream refuses access."""
    pass


class CaptureDeviceError(CaptureError):
    """Raised when the audio stream cannot be reached."""
    pass


class WebSocketMicrophone:
    """
    Records PCM audio streamed over a WebSocket.

    Messages are either JSON objects carrying base64 PCM under ``audio`` or
    raw binary PCM frames.
    """

    def __init__(
        self,
        listen_url: str,
        sample_rate: Optional[int] = None,
        channels: int = 1,
        sample_width: int = 2,
        max_duration: Optional[float] = None,
        connection_timeout: Optional[float] = None
    ):
        """
        Initialize the microphone.

        Args:
            listen_url: WebSocket URL streaming the audio
            sample_rate: Sample rate of the stream in Hz
            channels: Number of interleaved channels in the stream
            sample_width: Sample width in bytes (2 for 16-bit)
            max_duration: Hard cap on a single recording in seconds
            connection_timeout: Handshake timeout in seconds
        """
        self.listen_url = listen_url
        self.sample_rate = sample_rate or settings.capture_sample_rate
        self.channels = channels
        self.sample_width = sample_width
        self.max_duration = max_duration or settings.max_recording_seconds
        self.connection_timeout = connection_timeout or settings.capture_connect_timeout

        self.audio_buffer: List[bytes] = []
        self.capture_start_time: Optional[float] = None
        self._latest_samples = np.zeros(0, dtype=np.float64)

        self.websocket = None
        self.is_connected = False
        self.is_capturing = False

    @property
    def latest_samples(self) -> np.ndarray:
        """Most recent window of captured samples in [-1, 1]."""
        return self._latest_samples

    async def connect(self) -> None:
        """
        Open the audio stream.

        Raises:
            MicrophonePermissionError: If the endpoint rejects the handshake
            CaptureDeviceError: If the endpoint cannot be reached
        """
        if self.is_connected:
            return

        try:
            logger.info(f"Connecting to audio stream: {self.listen_url}")
            self.websocket = await asyncio.wait_for(
                websockets.connect(
                    self.listen_url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=10
                ),
                timeout=self.connection_timeout
            )
            self.is_connected = True
            logger.info("Connected to audio stream")

        except asyncio.TimeoutError:
            logger.error(f"Timeout connecting to audio stream: {self.listen_url}")
            raise CaptureDeviceError(f"Connection timeout after {self.connection_timeout}s")
        except InvalidStatus as e:
            status = e.response.status_code
            if status in PERMISSION_DENIED_STATUSES:
                logger.warning(f"Audio stream refused access with HTTP {status}")
                raise MicrophonePermissionError(f"Microphone access denied (HTTP {status})")
            logger.error(f"Audio stream rejected handshake with HTTP {status}")
            raise CaptureDeviceError(f"Audio stream rejected connection: HTTP {status}")
        except (WebSocketException, OSError) as e:
            logger.error(f"Error connecting to audio stream: {e}")
            raise CaptureDeviceError(f"Audio stream unavailable: {e}")

    async def disconnect(self) -> None:
        """Close the stream. Safe to call more than once."""
        if self.websocket is not None:
            try:
                await self.websocket.close()
            except (WebSocketException, OSError) as e:
                logger.warning(f"Error closing audio stream: {e}")
            finally:
                self.websocket = None
                self.is_connected = False
                logger.info("Disconnected from audio stream")
        self.is_connected = False

    def _decode_message(self, message) -> Optional[bytes]:
        """Return the PCM payload of a stream message, if it carries one."""
        if isinstance(message, (bytes, bytearray)):
            return bytes(message)

        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse stream message as JSON: {e}")
            return None

        if not isinstance(data, dict) or 'audio' not in data:
            logger.debug("Received message without audio data")
            return None

        try:
            return base64.b64decode(data['audio'], validate=True)
        except (binascii.Error, TypeError) as e:
            logger.warning(f"Discarding audio chunk with invalid base64: {e}")
            return None

    def _update_level_window(self, chunk: bytes) -> None:
        usable = len(chunk) - len(chunk) % self.sample_width
        if self.sample_width != 2 or usable == 0:
            return
        samples = np.frombuffer(chunk[:usable], dtype='<i2').astype(np.float64) / 32768.0
        if self.channels > 1:
            frames = (samples.size // self.channels) * self.channels
            samples = samples[:frames].reshape(-1, self.channels).mean(axis=1)
        self._latest_samples = np.concatenate((self._latest_samples, samples))[-LEVEL_WINDOW_SAMPLES:]

    def _elapsed(self) -> float:
        return time.monotonic() - self.capture_start_time if self.capture_start_time else 0.0

    async def capture_audio(self, stop_event: Optional[asyncio.Event] = None) -> bytes:
        """
        Record from the stream until stopped.

        Recording ends when ``stop_event`` is set, ``max_duration`` elapses
        or the stream closes normally.

        Args:
            stop_event: Event that ends the recording when set

        Returns:
            Captured audio as WAV bytes

        Raises:
            CaptureDeviceError: If not connected
            CaptureError: If the stream fails or no audio arrives
        """
        if not self.is_connected or self.websocket is None:
            raise CaptureDeviceError("Not connected to audio stream")

        stop_event = stop_event or asyncio.Event()
        self.audio_buffer.clear()
        self._latest_samples = np.zeros(0, dtype=np.float64)
        self.capture_start_time = time.monotonic()
        self.is_capturing = True

        logger.info(f"Starting audio capture (max: {self.max_duration}s)")

        try:
            while not stop_event.is_set():
                if self._elapsed() >= self.max_duration:
                    logger.info(f"Stopping capture: maximum duration ({self.max_duration}s) reached")
                    break

                try:
                    message = await asyncio.wait_for(self.websocket.recv(), timeout=RECEIVE_POLL_SECONDS)
                except asyncio.TimeoutError:
                    continue

                chunk = self._decode_message(message)
                if chunk:
                    self.audio_buffer.append(chunk)
                    self._update_level_window(chunk)

        except ConnectionClosedOK:
            logger.info("Audio stream closed, ending capture")
        except ConnectionClosedError as e:
            logger.error(f"Audio stream dropped during capture: {e}")
            raise CaptureError(f"Connection lost during capture: {e}")
        except WebSocketException as e:
            logger.error(f"WebSocket error during capture: {e}")
            raise CaptureError(f"Audio stream error: {e}")
        finally:
            self.is_capturing = False

        if not self.audio_buffer:
            raise CaptureError("No audio data captured")

        combined_pcm = b''.join(self.audio_buffer)
        logger.info(f"Audio capture completed: {len(combined_pcm)} bytes, {self._elapsed():.1f}s")

        return pcm_to_wav(
            combined_pcm,
            sample_rate=self.sample_rate,
            channels=self.channels,
            sample_width=self.sample_width
        )

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
