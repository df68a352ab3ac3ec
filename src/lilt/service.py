"""Generation service: model/voice lifecycle and request handling."""

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from lilt.audio import create_wav_bytes, write_wav_file_async
from lilt.config import VOICES, Settings
from lilt.denoise import check_total_step
from lilt.errors import InvalidRequestError, NotReadyError
from lilt.pipeline import (
    DEFAULT_SILENCE_DURATION,
    DEFAULT_SPEED,
    ChunkCallback,
    TextToSpeech,
    check_speed,
    load_text_to_speech,
)
from lilt.style import Style, load_voice_style
from lilt.workers import WorkerPool

logger = logging.getLogger(__name__)


class ServiceStatus(enum.Enum):
    NOT_READY = "not_ready"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True)
class GenerationRequest:
    """A single synthesis request from the caller."""

    text: str
    total_step: int = 5
    speed: float = DEFAULT_SPEED
    voice: Optional[str] = None  # None keeps the active voice
    silence_duration: float = DEFAULT_SILENCE_DURATION
    seed: Optional[int] = None

    def validate(self) -> None:
        if not isinstance(self.text, str) or not self.text.strip():
            raise InvalidRequestError("Please enter some text")
        check_total_step(self.total_step)
        check_speed(self.speed)
        if self.voice is not None and self.voice not in VOICES:
            raise InvalidRequestError(f"Unknown voice {self.voice!r}, expected one of {', '.join(VOICES)}")
        if not self.silence_duration >= 0:
            raise InvalidRequestError(f"silence_duration must be >= 0, got {self.silence_duration}")


@dataclass(frozen=True)
class GenerationResult:
    """Synthesized audio handed back to the caller."""

    wav: np.ndarray
    duration: float
    sample_rate: int
    voice: str

    def to_wav_bytes(self) -> bytes:
        return create_wav_bytes(self.wav, self.sample_rate)


class SpeechService:
    """
    Holds the loaded pipeline and the active voice style.

    A failed load (models or voice) leaves the service NOT_READY until a
    later load succeeds. Failures inside a generation request leave the
    service state untouched.
    """

    def __init__(self, settings: Optional[Settings] = None, pool: Optional[WorkerPool] = None):
        self.settings = settings or Settings()
        self.pool = pool or WorkerPool(max_workers=self.settings.max_workers)
        self._owns_pool = pool is None
        self.tts: Optional[TextToSpeech] = None
        self.style: Optional[Style] = None
        self.voice = self.settings.voice
        self.status = ServiceStatus.NOT_READY

    @property
    def is_ready(self) -> bool:
        return self.status is ServiceStatus.READY

    async def load(self, tts: Optional[TextToSpeech] = None) -> None:
        """
        Load the models (unless ``tts`` is given) and the selected voice.

        Args:
            tts: Pre-built pipeline to use instead of loading from disk
        """
        self.status = ServiceStatus.LOADING
        try:
            if tts is None:
                tts = await self.pool.run(
                    load_text_to_speech, self.settings.models_path, self.settings.use_gpu, self.pool
                )
            self.tts = tts
            self.style = await self.pool.run(load_voice_style, [self.settings.voice_style_path(self.voice)])
        except Exception:
            logger.exception("Error loading models")
            self.status = ServiceStatus.NOT_READY
            raise
        self.status = ServiceStatus.READY
        logger.info(f"Ready with voice {self.voice}")

    async def select_voice(self, voice: str) -> None:
        """Switch the active voice, reloading its style tensors."""
        if voice not in VOICES:
            raise InvalidRequestError(f"Unknown voice {voice!r}, expected one of {', '.join(VOICES)}")
        if voice == self.voice and self.style is not None:
            return

        self.status = ServiceStatus.LOADING
        self.voice = voice
        self.style = None
        try:
            self.style = await self._load_style(voice)
        except Exception:
            logger.exception(f"Error loading voice style {voice}")
            self.status = ServiceStatus.NOT_READY
            raise
        self.status = ServiceStatus.READY if self.tts is not None else ServiceStatus.NOT_READY
        logger.info(f"Voice style switched to {voice}")

    async def _load_style(self, voice: str) -> Style:
        return await self.pool.run(load_voice_style, [self.settings.voice_style_path(voice)])

    async def _use_request_voice(self, voice: str) -> None:
        # The active voice and style are only replaced once the new style has loaded.
        style = await self._load_style(voice)
        self.voice, self.style = voice, style
        logger.info(f"Voice style switched to {voice}")

    async def generate(
        self,
        request: GenerationRequest,
        progress: Optional[ChunkCallback] = None,
    ) -> GenerationResult:
        """
        Run one synthesis request.

        Args:
            request: Text and synthesis parameters
            progress: Called with (chunk_index, num_chunks) after each chunk

        Returns:
            GenerationResult with the waveform and its duration
        """
        if not self.is_ready or self.tts is None or self.style is None:
            raise NotReadyError("Models not loaded yet")
        request.validate()
        if request.voice is not None and request.voice != self.voice:
            await self._use_request_voice(request.voice)

        rng = np.random.default_rng(request.seed if request.seed is not None else self.settings.seed)
        result = await self.tts(
            request.text,
            self.style,
            request.total_step,
            speed=request.speed,
            silence_duration=request.silence_duration,
            max_chunk_len=self.settings.max_chunk_len,
            rng=rng,
            progress=progress,
        )
        logger.info(f"Generated {result.duration:.2f}s of audio with voice {self.voice}")
        return GenerationResult(
            wav=result.wav,
            duration=result.duration,
            sample_rate=result.sample_rate,
            voice=self.voice,
        )

    async def save(self, result: GenerationResult, path: Union[str, Path]) -> Path:
        """Write a generation result as a WAV file."""
        path = Path(path)
        await write_wav_file_async(
            path, result.wav, result.sample_rate, self.pool, threshold=self.settings.offload_threshold_bytes
        )
        return path

    def close(self) -> None:
        if self._owns_pool:
            self.pool.shutdown()
