"""
Background feature extraction.

Feature extraction is CPU bound, so it runs in a process pool while the event
loop keeps serving capture and HTTP traffic. Requests and responses are small
message records correlated by id. Whenever the pool is unavailable the
extractor falls back to calling the feature extractor in-process; both paths
run the same pure functions and return identical features.
"""

import asyncio
import logging
from concurrent.futures import Future, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from voice_profile.config import settings
from voice_profile.models.internal_models import VoiceFeatures
from voice_profile.services import feature_extractor
from voice_profile.services.feature_extractor import SampleBuffer
from voice_profile.utils.audio_utils import decode_audio

logger = logging.getLogger(__name__)

REQUEST_EXTRACT = "extract"
REQUEST_CALCULATE_QUALITY = "calculate_quality"
RESPONSE_RESULT = "result"
RESPONSE_ERROR = "error"


class WorkerUnavailableError(RuntimeError):
    """Raised when a request cannot be served by the extraction worker."""
    pass


@dataclass
class WorkerRequest:
    """Message posted to the extraction worker."""

    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkerResponse:
    """Message returned by the extraction worker, paired by request id."""

    id: str
    type: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class ExtractionResult:
    """Features of a decoded recording plus the facts needed to store it."""

    features: VoiceFeatures
    duration_ms: int
    sample_rate: int


def handle_message(request: WorkerRequest) -> WorkerResponse:
    """
    Worker entry point: serve one request.

    Failures are reported as error responses; nothing is raised back across
    the process boundary.
    """
    try:
        if request.type == REQUEST_EXTRACT:
            features = feature_extractor.extract_features(
                request.data["samples"], request.data["sample_rate"]
            )
            return WorkerResponse(
                id=request.id, type=RESPONSE_RESULT, data={"features": features.to_dict()}
            )

        if request.type == REQUEST_CALCULATE_QUALITY:
            features = VoiceFeatures.from_dict(request.data["features"])
            score = feature_extractor.calculate_quality_score(features, request.data["duration_ms"])
            return WorkerResponse(
                id=request.id, type=RESPONSE_RESULT, data={"quality_score": score}
            )

        return WorkerResponse(
            id=request.id, type=RESPONSE_ERROR, error=f"Unknown message type: {request.type}"
        )

    except (KeyError, TypeError, ValueError) as e:
        return WorkerResponse(id=request.id, type=RESPONSE_ERROR, error=str(e))


class AudioFeatureExtractor:
    """
    Async facade over the extraction worker with an in-process fallback.

    Each request gets a correlation id (``req_<n>``) and a pending future that
    is resolved when the paired response arrives from the pool.
    """

    def __init__(self, use_worker: Optional[bool] = None, max_workers: Optional[int] = None):
        self.use_worker = settings.use_extraction_worker if use_worker is None else use_worker
        self.max_workers = max_workers or settings.extraction_workers
        self._executor: Optional[ProcessPoolExecutor] = None
        self._request_counter = 0
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"req_{self._request_counter}"

    def _get_executor(self) -> ProcessPoolExecutor:
        if self._executor is None:
            try:
                self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
                logger.info(f"Started extraction worker pool with {self.max_workers} process(es)")
            except (OSError, ValueError) as e:
                raise WorkerUnavailableError(f"Could not start extraction worker: {e}")
        return self._executor

    def _resolve(self, request_id: str, worker_future: Future) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.done():
            return

        if worker_future.cancelled():
            pending.set_exception(WorkerUnavailableError(f"Request {request_id} was cancelled"))
            return

        error = worker_future.exception()
        if error is not None:
            pending.set_exception(error)
        else:
            pending.set_result(worker_future.result())

    async def _post(self, request: WorkerRequest) -> WorkerResponse:
        """Submit a request to the pool and wait for its paired response."""
        executor = self._get_executor()
        loop = asyncio.get_running_loop()
        pending = loop.create_future()
        self._pending[request.id] = pending

        def on_done(worker_future: Future) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(self._resolve, request.id, worker_future)

        try:
            worker_future = executor.submit(handle_message, request)
        except BaseException:
            self._pending.pop(request.id, None)
            raise
        worker_future.add_done_callback(on_done)

        response = await pending
        if response.id != request.id:
            raise WorkerUnavailableError(
                f"Worker answered {response.id} for request {request.id}"
            )
        return response

    def _disable_worker(self, reason: Exception) -> None:
        """Stop using the pool and fail every request still waiting on it."""
        self.use_worker = False
        for request_id, pending in list(self._pending.items()):
            if not pending.done():
                pending.set_exception(WorkerUnavailableError(f"Worker disabled: {reason}"))
        self._pending.clear()

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def extract_features(self, samples: SampleBuffer, sample_rate: int) -> VoiceFeatures:
        """
        Extract features off the event loop when the worker is available.

        Args:
            samples: Mono samples in [-1, 1]
            sample_rate: Sample rate in Hz

        Returns:
            VoiceFeatures identical to feature_extractor.extract_features

        Raises:
            ValueError: If the buffer or sample rate is invalid
        """
        if self.use_worker:
            request = WorkerRequest(
                id=self._next_request_id(),
                type=REQUEST_EXTRACT,
                data={"samples": np.asarray(samples, dtype=np.float64), "sample_rate": sample_rate},
            )
            try:
                response = await self._post(request)
                if response.error is None:
                    return VoiceFeatures.from_dict(response.data["features"])
                logger.warning(f"Extraction worker failed {request.id}: {response.error}")
            except BrokenProcessPool as e:
                logger.warning(f"Extraction worker pool is broken, extracting in-process: {e}")
                self._disable_worker(e)
            except RuntimeError as e:
                logger.warning(f"Extraction worker unavailable, extracting in-process: {e}")
                self._disable_worker(e)

        return feature_extractor.extract_features(samples, sample_rate)

    async def extract_features_from_bytes(self, audio_data: bytes) -> ExtractionResult:
        """
        Decode an encoded recording and extract its features.

        Raises:
            AudioDecodeError: If the recording cannot be decoded
        """
        samples, sample_rate = await decode_audio(audio_data)
        features = await self.extract_features(samples, sample_rate)
        duration_ms = int(round(samples.size / sample_rate * 1000))

        logger.info(
            f"Extracted features from {duration_ms}ms of audio at {sample_rate}Hz"
        )
        return ExtractionResult(features=features, duration_ms=duration_ms, sample_rate=sample_rate)

    def calculate_quality_score(self, features: VoiceFeatures, duration_ms: int) -> float:
        return feature_extractor.calculate_quality_score(features, duration_ms)

    def close(self) -> None:
        """Shut down the worker pool and drop pending requests."""
        for pending in self._pending.values():
            if not pending.done():
                pending.cancel()
        self._pending.clear()

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            logger.info("Extraction worker pool shut down")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
