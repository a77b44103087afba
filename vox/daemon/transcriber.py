"""Transcription backends: a whisper.cpp-style HTTP server or a local model."""

import asyncio
import io
import threading
from typing import Any, Callable, Dict, Optional, Tuple, Union

import httpx
from loguru import logger

from .config import TranscriptionConfig
from .errors import (
    MalformedTranscript,
    ModelUnavailable,
    NetworkError,
    RateLimited,
    TranscriptionError,
    TranscriptionTimeout,
)
from .models import TranscriptionParams

ONE_MINUTE = 60.0


class HttpTranscriber:
    """
    Posts WAV audio to ``{endpoint}/inference`` and returns the decoded JSON.

    The payload is returned as-is; the queue validates it before trusting it.
    """

    def __init__(self,
                 endpoint: str,
                 api_key: Optional[str] = None,
                 timeout_min: float = 20,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout = httpx.Timeout(timeout_min * ONE_MINUTE, connect=10.0)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def transcribe(self, audio: bytes, params: TranscriptionParams) -> Any:
        """
        Transcribe WAV audio.

        Raises:
            RateLimited: On HTTP 429
            TranscriptionTimeout: When the request times out
            NetworkError: On transport failures or other non-200 responses
            MalformedTranscript: When the body is not JSON
        """
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            response = await self._get_client().post(
                f"{self.endpoint}/inference",
                files={"file": ("audio.wav", audio, "audio/wav")},
                data={
                    "temperature": params.temperature,
                    "temperature_inc": params.temperature_inc,
                    "response_format": "json",
                },
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise TranscriptionTimeout(f"Transcription request timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Error connecting to transcription host: {e}") from e

        if response.status_code == 429:
            raise RateLimited("Transcription limit reached (HTTP 429)")
        if response.status_code != 200:
            logger.warning(f"Could not transcribe audio: HTTP {response.status_code}")
            raise NetworkError(
                f"Invalid response status: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedTranscript(f"Transcription response is not JSON: {e}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def temperature_schedule(params: TranscriptionParams) -> Tuple[float, ...]:
    """
    Fallback temperatures in the whisper.cpp manner: start at ``temperature``
    and step by ``temperature_inc`` up to 1.0.
    """
    start = float(params.temperature)
    step = float(params.temperature_inc)
    if step <= 0 or start >= 1.0:
        return (start,)
    steps = int(round((1.0 - start) / step))
    return tuple(round(start + i * step, 4) for i in range(steps + 1))


class LocalTranscriber:
    """
    Runs a faster-whisper model in process.

    The model loads once, on ``load()`` or the first call. Calls run one at a
    time in a worker thread and return the same payload shape as the HTTP
    backend.
    """

    def __init__(self,
                 model: str = "small",
                 device: str = "auto",
                 compute_type: str = "default",
                 timeout_min: float = 20,
                 model_factory: Optional[Callable[..., Any]] = None):
        self.model_name = model
        self.device = device
        self.compute_type = compute_type
        self.timeout_s = timeout_min * ONE_MINUTE
        self._model_factory = model_factory
        self._model: Any = None
        self._lock = threading.RLock()

    async def load(self) -> None:
        """Load the model now instead of on the first transcription."""
        await asyncio.to_thread(self._get_model)

    def _get_model(self) -> Any:
        with self._lock:
            if self._model is not None:
                return self._model

            factory = self._model_factory
            if factory is None:
                from faster_whisper import WhisperModel
                factory = WhisperModel

            logger.info(
                f"Loading whisper model '{self.model_name}' on {self.device} ({self.compute_type})"
            )
            try:
                self._model = factory(
                    self.model_name, device=self.device, compute_type=self.compute_type,
                )
            except (OSError, RuntimeError, ValueError) as e:
                raise ModelUnavailable(f"Could not load model '{self.model_name}': {e}") from e
            logger.info(f"Whisper model '{self.model_name}' loaded")
            return self._model

    async def transcribe(self, audio: bytes, params: TranscriptionParams) -> Any:
        """
        Transcribe WAV audio with the local model.

        Raises:
            ModelUnavailable: When the model cannot be loaded
            TranscriptionTimeout: When the call runs past ``timeout_min``
            TranscriptionError: When the model fails on the audio
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run, audio, params),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionTimeout(
                f"Local transcription did not finish within {self.timeout_s:.0f}s"
            ) from e

    def _run(self, audio: bytes, params: TranscriptionParams) -> Dict[str, Any]:
        with self._lock:
            model = self._get_model()
            try:
                segments, info = model.transcribe(
                    io.BytesIO(audio),
                    temperature=temperature_schedule(params),
                )
                # Segments are produced lazily; decoding happens here
                rows = [
                    {
                        "id": i,
                        "start": segment.start,
                        "end": segment.end,
                        "text": segment.text,
                        "avg_logprob": segment.avg_logprob,
                        "no_speech_prob": segment.no_speech_prob,
                    }
                    for i, segment in enumerate(segments)
                ]
            except (OSError, RuntimeError, ValueError) as e:
                raise TranscriptionError(f"Local transcription failed: {e}") from e

        return {
            "text": "".join(row["text"] for row in rows),
            "language": info.language,
            "duration": info.duration,
            "segments": rows,
        }

    async def aclose(self) -> None:
        self._model = None


def create_transcriber(config: TranscriptionConfig) -> Union[HttpTranscriber, LocalTranscriber]:
    """Build the backend selected by ``config.mode``."""
    if config.mode == "local":
        return LocalTranscriber(
            model=config.local_model,
            device=config.local_device,
            compute_type=config.local_compute_type,
            timeout_min=config.timeout_min,
        )
    return HttpTranscriber(
        endpoint=config.endpoint,
        api_key=config.api_key,
        timeout_min=config.timeout_min,
    )
