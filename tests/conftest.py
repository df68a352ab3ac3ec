"""Shared fixtures: in-process fake inference stages and a tiny asset tree."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from lilt.config import VOICES, ModelConfig
from lilt.inference import InferenceStage, StageSet
from lilt.pipeline import TextToSpeech
from lilt.text import UnicodeProcessor

TTL_DIMS = [1, 4, 3]
DP_DIMS = [1, 2, 2]


class FakeStage(InferenceStage):
    """Stage that records its inputs and answers with a callable."""

    def __init__(self, name, input_names, respond):
        super().__init__(name)
        self._input_names = list(input_names)
        self._respond = respond
        self.calls = []

    @property
    def input_names(self):
        return list(self._input_names)

    def run(self, inputs):
        self.calls.append({k: np.array(v, copy=True) for k, v in inputs.items()})
        return self._respond(inputs)


def make_stages(config: ModelConfig, seconds: float = 0.5, wav_value: float = 0.25) -> StageSet:
    def duration(inputs):
        bsz = inputs["text_ids"].shape[0]
        return {"duration": np.full((bsz,), seconds, dtype=np.float32)}

    def encode(inputs):
        bsz, length = inputs["text_ids"].shape
        return {"text_emb": np.zeros((bsz, 8, length), dtype=np.float32)}

    def estimate(inputs):
        return {"denoised_latent": inputs["noisy_latent"] + 1.0}

    def vocode(inputs):
        bsz, _, frames = inputs["latent"].shape
        return {"wav_tts": np.full((bsz, frames * config.chunk_size), wav_value, dtype=np.float32)}

    return StageSet(
        duration_predictor=FakeStage("duration_predictor", ["text_ids", "style_dp", "text_mask"], duration),
        text_encoder=FakeStage("text_encoder", ["text_ids", "style_ttl", "text_mask"], encode),
        vector_estimator=FakeStage(
            "vector_estimator",
            ["noisy_latent", "text_emb", "style_ttl", "text_mask", "latent_mask", "total_step", "current_step"],
            estimate,
        ),
        vocoder=FakeStage("vocoder", ["latent"], vocode),
    )


def style_payload(seed: int = 0, ttl_dims=None, dp_dims=None) -> dict:
    ttl_dims = ttl_dims or TTL_DIMS
    dp_dims = dp_dims or DP_DIMS
    rng = np.random.default_rng(seed)
    return {
        "style_ttl": {"dims": ttl_dims, "data": rng.standard_normal(ttl_dims).round(4).tolist()},
        "style_dp": {"dims": dp_dims, "data": rng.standard_normal(dp_dims).round(4).tolist()},
    }


@pytest.fixture
def model_config() -> ModelConfig:
    return ModelConfig(sample_rate=1000, base_chunk_size=10, chunk_compress_factor=2, latent_dim=3)


@pytest.fixture
def text_processor() -> UnicodeProcessor:
    return UnicodeProcessor({ord(ch): i + 1 for i, ch in enumerate("abcdefghijklmnopqrstuvwxyz .!?HW")})


@pytest.fixture
def stages(model_config) -> StageSet:
    return make_stages(model_config)


@pytest.fixture
def tts(model_config, text_processor, stages) -> TextToSpeech:
    return TextToSpeech(model_config, text_processor, stages)


@pytest.fixture
def assets_dir(tmp_path: Path) -> Path:
    """Asset tree with config, vocabulary and one style file per voice."""
    onnx_dir = tmp_path / "onnx"
    onnx_dir.mkdir()
    (onnx_dir / "tts.json").write_text(json.dumps({
        "ae": {"sample_rate": 1000, "base_chunk_size": 10},
        "ttl": {"chunk_compress_factor": 2, "latent_dim": 3},
    }))
    vocab = [-1] * 128
    for i, ch in enumerate("abcdefghijklmnopqrstuvwxyz .!?HW"):
        vocab[ord(ch)] = i + 1
    (onnx_dir / "unicode_indexer.json").write_text(json.dumps(vocab))

    styles_dir = tmp_path / "voice_styles"
    styles_dir.mkdir()
    for i, voice in enumerate(VOICES):
        (styles_dir / f"{voice}.json").write_text(json.dumps(style_payload(seed=i)))
    return tmp_path
