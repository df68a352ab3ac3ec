"""Masked Gaussian latent sampling for the denoising loop."""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from lilt.config import ModelConfig
from lilt.errors import InferenceError
from lilt.text import length_to_mask

logger = logging.getLogger(__name__)

DURATION_STAGE = "duration_predictor"

# Floor for the first uniform draw, keeps log(u1) finite.
_MIN_UNIFORM = 1e-10


@dataclass
class LatentState:
    """
    Evolving denoising target for one batch.

    Attributes:
        latent: float32 [batch, latent_channels, latent_frames], refined in place
        latent_mask: float32 [batch, 1, latent_frames]
    """

    latent: np.ndarray
    latent_mask: np.ndarray

    @property
    def shape(self):
        return self.latent.shape


def box_muller(rng: np.random.Generator, shape) -> np.ndarray:
    """
    Draw standard-normal samples with the Box-Muller transform.

    Args:
        rng: Source of uniform draws
        shape: Output shape

    Returns:
        float32 array of independent N(0, 1) samples
    """
    u1 = np.maximum(_MIN_UNIFORM, rng.random(shape))
    u2 = rng.random(shape)
    return (np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)).astype(np.float32)


def get_latent_mask(wav_lengths: Sequence[int], config: ModelConfig) -> np.ndarray:
    """
    Latent-frame validity mask from per-item waveform lengths.

    Args:
        wav_lengths: Waveform length in samples per batch item
        config: Model hyperparameters

    Returns:
        float32 mask [batch, 1, max_latent_len]
    """
    chunk_size = config.chunk_size
    latent_lengths = [(int(n) + chunk_size - 1) // chunk_size for n in wav_lengths]
    return length_to_mask(latent_lengths)


def check_durations(durations: Sequence[float]) -> np.ndarray:
    """Validate predicted durations in seconds, one per batch item."""
    durations = np.asarray(durations, dtype=np.float64).reshape(-1)
    if durations.size == 0:
        raise InferenceError(DURATION_STAGE, "returned no durations")
    if not np.all(np.isfinite(durations)) or np.any(durations <= 0.0):
        raise InferenceError(DURATION_STAGE, f"returned invalid durations {durations.tolist()}")
    return durations


def sample_noisy_latent(
    durations: Sequence[float],
    config: ModelConfig,
    rng: Optional[np.random.Generator] = None,
) -> LatentState:
    """
    Sample the initial noisy latent sized from predicted durations.

    Positions beyond an item's own duration are zeroed so the estimator
    never sees noise past the end of that utterance.

    Args:
        durations: Predicted durations in seconds, one per batch item
        config: Model hyperparameters
        rng: Random generator (default: fresh unseeded generator)

    Returns:
        LatentState with masked noise and its mask
    """
    durations = check_durations(durations)
    if rng is None:
        rng = np.random.default_rng()

    wav_lengths = np.floor(durations * config.sample_rate).astype(np.int64)
    wav_len_max = int(wav_lengths.max())
    latent_len = (wav_len_max + config.chunk_size - 1) // config.chunk_size
    if latent_len == 0:
        raise InferenceError(DURATION_STAGE, f"durations {durations.tolist()} are shorter than one sample")

    shape = (len(durations), config.compressed_channels, latent_len)
    noisy_latent = box_muller(rng, shape)

    latent_mask = get_latent_mask(wav_lengths, config)
    noisy_latent *= latent_mask

    logger.debug(f"Sampled noisy latent {list(shape)} for durations {durations.round(3).tolist()}")
    return LatentState(latent=noisy_latent, latent_mask=latent_mask)
