"""Text-to-speech pipeline: chunk -> index -> duration -> denoise -> vocode -> assemble."""

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from lilt.audio import AudioAssembler
from lilt.config import ModelConfig
from lilt.denoise import Denoiser, StepCallback, check_total_step
from lilt.errors import InferenceError, InvalidRequestError
from lilt.inference import StageSet, Tensors, first_output, load_stages, run_stage
from lilt.latent import check_durations, sample_noisy_latent
from lilt.style import Style
from lilt.text import DEFAULT_MAX_CHUNK_LEN, UnicodeProcessor, chunk_text
from lilt.workers import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_SPEED = 1.05
DEFAULT_SILENCE_DURATION = 0.3

# Called with (chunk_index, num_chunks) once a chunk has been appended.
ChunkCallback = Callable[[int, int], None]


@dataclass
class SynthesisResult:
    """
    Output of a synthesis call.

    Attributes:
        wav: Concatenated float32 samples
        duration: Total spoken duration in seconds, silences included
        sample_rate: Sample rate in Hz
        chunks: Text chunks in the order they were synthesized
    """

    wav: np.ndarray
    duration: float
    sample_rate: int
    chunks: List[str] = field(default_factory=list)


def check_speed(speed: float) -> float:
    if isinstance(speed, bool) or not isinstance(speed, (int, float, np.floating)):
        raise InvalidRequestError(f"speed must be a positive number, got {speed!r}")
    if not math.isfinite(speed) or speed <= 0:
        raise InvalidRequestError(f"speed must be a positive number, got {speed!r}")
    return float(speed)


class TextToSpeech:
    """
    Multi-stage synthesis pipeline.

    Chunks are processed strictly in document order; every stage call is
    offloaded to the worker pool (when given) and awaited.
    """

    def __init__(
        self,
        config: ModelConfig,
        text_processor: UnicodeProcessor,
        stages: StageSet,
        pool: Optional[WorkerPool] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Model hyperparameters
            text_processor: Vocabulary indexer
            stages: Duration predictor, text encoder, vector estimator and vocoder
            pool: Worker pool for stage calls (default: run inline)
        """
        self.config = config
        self.text_processor = text_processor
        self.stages = stages
        self.pool = pool
        self.denoiser = Denoiser(stages.vector_estimator, pool=pool)

    @property
    def sample_rate(self) -> int:
        return self.config.sample_rate

    async def _run(self, stage_name: str, inputs: Tensors) -> Tensors:
        return await run_stage(getattr(self.stages, stage_name), inputs, pool=self.pool)

    async def _infer(
        self,
        text_list: Sequence[str],
        style: Style,
        total_step: int,
        speed: float = DEFAULT_SPEED,
        rng: Optional[np.random.Generator] = None,
        on_step: Optional[StepCallback] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Synthesize a batch of texts in one pass.

        Returns:
            Waveforms [batch, samples] and durations in seconds [batch]
        """
        bsz = len(text_list)
        if style.batch_size != bsz:
            raise InvalidRequestError(f"Style batch size {style.batch_size} does not match {bsz} texts")

        text_ids, text_mask = self.text_processor(text_list)

        dp_out = await self._run(
            "duration_predictor",
            {"text_ids": text_ids, "style_dp": style.dp, "text_mask": text_mask},
        )
        raw_duration = first_output(dp_out, "duration_predictor").astype(np.float64).reshape(-1)
        if raw_duration.size != bsz:
            raise InferenceError("duration_predictor", f"returned {raw_duration.size} durations for {bsz} texts")
        duration = check_durations(raw_duration / speed)

        enc_out = await self._run(
            "text_encoder",
            {"text_ids": text_ids, "style_ttl": style.ttl, "text_mask": text_mask},
        )
        text_emb = first_output(enc_out, "text_encoder")

        state = sample_noisy_latent(duration, self.config, rng=rng)
        latent = await self.denoiser.run(state, text_emb, style.ttl, text_mask, total_step, on_step=on_step)

        voc_out = await self._run("vocoder", {"latent": latent})
        wav = first_output(voc_out, "vocoder").astype(np.float32).reshape(bsz, -1)

        return wav, duration

    async def __call__(
        self,
        text: str,
        style: Style,
        total_step: int,
        speed: float = DEFAULT_SPEED,
        silence_duration: float = DEFAULT_SILENCE_DURATION,
        max_chunk_len: int = DEFAULT_MAX_CHUNK_LEN,
        rng: Optional[np.random.Generator] = None,
        progress: Optional[ChunkCallback] = None,
        on_step: Optional[StepCallback] = None,
    ) -> SynthesisResult:
        """
        Synthesize long text chunk by chunk with silences between chunks.

        Args:
            text: Input text
            style: Single-voice style conditioning
            total_step: Denoising steps per chunk
            speed: Speaking rate factor, durations are divided by it
            silence_duration: Seconds of silence between chunks
            max_chunk_len: Maximum characters per chunk
            rng: Random generator for the latent noise
            progress: Called with (chunk_index, num_chunks) after each chunk
            on_step: Called with (step, total_step) after each denoising step

        Returns:
            SynthesisResult with the concatenated waveform and total duration
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidRequestError("Text must not be empty")
        total_step = check_total_step(total_step)
        speed = check_speed(speed)
        if style.batch_size != 1:
            raise InvalidRequestError(f"Expected a single-voice style, got batch size {style.batch_size}")

        assembler = AudioAssembler(self.sample_rate, silence_duration)
        chunks = chunk_text(text, max_len=max_chunk_len)
        logger.info(f"Synthesizing {len(text)} chars in {len(chunks)} chunk(s), {total_step} steps, speed {speed}")

        for i, chunk in enumerate(chunks):
            logger.debug(f"Chunk {i + 1}/{len(chunks)}: {len(chunk)} chars")
            wav, duration = await self._infer([chunk], style, total_step, speed=speed, rng=rng, on_step=on_step)
            assembler.append(wav[0], float(duration[0]))
            if progress is not None:
                progress(i, len(chunks))

        logger.info(f"Synthesized {assembler.duration:.2f}s of audio ({len(assembler)} samples)")
        return SynthesisResult(
            wav=assembler.wav,
            duration=assembler.duration,
            sample_rate=self.sample_rate,
            chunks=chunks,
        )

    async def batch(
        self,
        text_list: Sequence[str],
        style: Style,
        total_step: int,
        speed: float = DEFAULT_SPEED,
        rng: Optional[np.random.Generator] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Synthesize several short texts in a single batched pass.

        Texts are not chunked; ``style`` must carry one voice per text.

        Args:
            text_list: Texts, one per batch item
            style: Batched style conditioning
            total_step: Denoising steps
            speed: Speaking rate factor
            rng: Random generator for the latent noise

        Returns:
            Waveforms [batch, samples] and durations in seconds [batch]
        """
        if not text_list or any(not isinstance(t, str) or not t.strip() for t in text_list):
            raise InvalidRequestError("Every text in the batch must be non-empty")
        total_step = check_total_step(total_step)
        speed = check_speed(speed)
        return await self._infer(list(text_list), style, total_step, speed=speed, rng=rng)


def load_text_to_speech(
    model_dir: Union[str, Path],
    use_gpu: bool = False,
    pool: Optional[WorkerPool] = None,
) -> TextToSpeech:
    """
    Load config, vocabulary and the four inference stages from a directory.

    Args:
        model_dir: Directory with tts.json, unicode_indexer.json and the stage models
        use_gpu: Prefer the CUDA execution provider
        pool: Worker pool for stage calls

    Returns:
        TextToSpeech instance
    """
    model_dir = Path(model_dir)
    logger.info(f"Loading TTS models from {model_dir}")

    config = ModelConfig.load(model_dir / "tts.json")
    text_processor = UnicodeProcessor.load(model_dir / "unicode_indexer.json")
    stages = load_stages(model_dir, use_gpu=use_gpu)

    logger.info("TTS models loaded successfully")
    return TextToSpeech(config, text_processor, stages, pool=pool)
