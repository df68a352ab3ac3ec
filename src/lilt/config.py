"""Model hyperparameters and runtime settings."""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from lilt.errors import ResourceError

logger = logging.getLogger(__name__)

VOICES = ("M1", "M2", "F1", "F2")

_ONE_MIB = 1024 * 1024


@dataclass(frozen=True)
class ModelConfig:
    """Fixed hyperparameters shared by the latent sampler and the vocoder.

    Attributes:
        sample_rate: Output waveform sample rate in Hz.
        base_chunk_size: Waveform samples per autoencoder latent frame.
        chunk_compress_factor: Number of latent frames folded into one
            denoising frame.
        latent_dim: Autoencoder latent channels before compression.
    """

    sample_rate: int
    base_chunk_size: int
    chunk_compress_factor: int
    latent_dim: int

    @property
    def chunk_size(self) -> int:
        """Waveform samples covered by one denoising latent frame."""
        return self.base_chunk_size * self.chunk_compress_factor

    @property
    def compressed_channels(self) -> int:
        return self.latent_dim * self.chunk_compress_factor

    @classmethod
    def from_dict(cls, cfg: dict) -> "ModelConfig":
        try:
            values = {
                "sample_rate": cfg["ae"]["sample_rate"],
                "base_chunk_size": cfg["ae"]["base_chunk_size"],
                "chunk_compress_factor": cfg["ttl"]["chunk_compress_factor"],
                "latent_dim": cfg["ttl"]["latent_dim"],
            }
        except (KeyError, TypeError) as e:
            raise ResourceError(f"Model config is missing a required field: {e}") from e

        for key, value in values.items():
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ResourceError(f"Model config field '{key}' must be a positive integer, got {value!r}")
        return cls(**values)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ModelConfig":
        """
        Load model hyperparameters from a ``tts.json`` file.

        Args:
            path: Path to the JSON config

        Returns:
            ModelConfig instance
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                cfg = json.load(f)
        except (OSError, ValueError) as e:
            raise ResourceError(f"Cannot read model config {path}: {e}") from e
        config = cls.from_dict(cfg)
        logger.info(
            f"Model config: sample_rate={config.sample_rate}, chunk_size={config.chunk_size}, "
            f"latent_channels={config.compressed_channels}"
        )
        return config


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return int(raw)


@dataclass
class Settings:
    """Runtime settings. Any field can be overridden via environment variable."""

    assets_dir: str = field(default_factory=lambda: os.environ.get("LILT_ASSETS_DIR", "assets"))
    model_dir: Optional[str] = field(default_factory=lambda: os.environ.get("LILT_MODEL_DIR"))
    voice: str = field(default_factory=lambda: os.environ.get("LILT_VOICE", "M1"))
    total_step: int = field(default_factory=lambda: int(os.environ.get("LILT_TOTAL_STEP", "5")))
    speed: float = field(default_factory=lambda: float(os.environ.get("LILT_SPEED", "1.05")))
    silence_duration: float = field(
        default_factory=lambda: float(os.environ.get("LILT_SILENCE_DURATION", "0.3"))
    )
    max_chunk_len: int = field(default_factory=lambda: int(os.environ.get("LILT_MAX_CHUNK_LEN", "300")))
    max_workers: int = field(default_factory=lambda: int(os.environ.get("LILT_MAX_WORKERS", "2")))
    offload_threshold_bytes: int = field(
        default_factory=lambda: int(os.environ.get("LILT_OFFLOAD_THRESHOLD_BYTES", str(_ONE_MIB)))
    )
    use_gpu: bool = field(default_factory=lambda: _env_bool("LILT_USE_GPU", False))
    seed: Optional[int] = field(default_factory=lambda: _env_optional_int("LILT_SEED"))

    def __post_init__(self) -> None:
        if self.voice not in VOICES:
            raise ValueError(f"LILT_VOICE must be one of: {', '.join(VOICES)}")
        if self.total_step < 1:
            raise ValueError("LILT_TOTAL_STEP must be >= 1")
        if not self.speed > 0.0:
            raise ValueError("LILT_SPEED must be > 0")
        if self.silence_duration < 0.0:
            raise ValueError("LILT_SILENCE_DURATION must be >= 0")
        if self.max_chunk_len < 1:
            raise ValueError("LILT_MAX_CHUNK_LEN must be >= 1")
        if self.max_workers < 1:
            raise ValueError("LILT_MAX_WORKERS must be >= 1")
        if self.offload_threshold_bytes < 0:
            raise ValueError("LILT_OFFLOAD_THRESHOLD_BYTES must be >= 0")

    @property
    def models_path(self) -> Path:
        """Directory holding ``tts.json``, the vocabulary and the stage models."""
        if self.model_dir:
            return Path(self.model_dir)
        return Path(self.assets_dir) / "onnx"

    def voice_style_path(self, voice: str) -> Path:
        return Path(self.assets_dir) / "voice_styles" / f"{voice}.json"
