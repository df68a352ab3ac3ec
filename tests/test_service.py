"""Tests for the generation service lifecycle."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import make_stages
from lilt.audio import read_wav_header
from lilt.config import Settings
from lilt.errors import InferenceError, InvalidRequestError, NotReadyError, ResourceError
from lilt.pipeline import TextToSpeech
from lilt.service import GenerationRequest, ServiceStatus, SpeechService


@pytest.fixture
def service(assets_dir):
    svc = SpeechService(Settings(assets_dir=str(assets_dir), voice="M1", max_workers=1))
    yield svc
    svc.close()


@pytest.mark.asyncio
async def test_generate_before_load_is_not_ready(service):
    assert service.status is ServiceStatus.NOT_READY
    with pytest.raises(NotReadyError):
        await service.generate(GenerationRequest(text="Hello."))


@pytest.mark.asyncio
async def test_load_with_pipeline_and_generate(service, tts, stages):
    await service.load(tts=tts)
    assert service.is_ready
    assert service.style.ttl.shape == (1, 4, 3)

    result = await service.generate(GenerationRequest(text="Hello. World.", total_step=2))

    assert result.voice == "M1"
    assert result.sample_rate == 1000
    assert result.duration == pytest.approx(0.5 / 1.05)
    assert result.wav.ndim == 1
    assert len(stages.vector_estimator.calls) == 2


@pytest.mark.asyncio
async def test_load_without_models_leaves_not_ready(service):
    with pytest.raises(ResourceError, match="duration_predictor"):
        await service.load()
    assert service.status is ServiceStatus.NOT_READY
    with pytest.raises(NotReadyError):
        await service.generate(GenerationRequest(text="Hello."))


@pytest.mark.asyncio
async def test_load_with_missing_assets_dir(tmp_path, tts):
    svc = SpeechService(Settings(assets_dir=str(tmp_path / "nowhere"), max_workers=1))
    try:
        with pytest.raises(ResourceError):
            await svc.load()
        assert svc.status is ServiceStatus.NOT_READY

        # Models are fine but the voice style is missing.
        with pytest.raises(ResourceError, match="Cannot read voice style"):
            await svc.load(tts=tts)
        assert svc.status is ServiceStatus.NOT_READY
    finally:
        svc.close()


@pytest.mark.asyncio
async def test_select_voice_switches_style(service, tts):
    await service.load(tts=tts)
    before = service.style

    await service.select_voice("F1")

    assert service.voice == "F1"
    assert service.is_ready
    assert not np.array_equal(before.ttl, service.style.ttl)


@pytest.mark.asyncio
async def test_failed_voice_load_then_recovery(service, tts, assets_dir):
    await service.load(tts=tts)
    (assets_dir / "voice_styles" / "F2.json").unlink()

    with pytest.raises(ResourceError):
        await service.select_voice("F2")
    assert service.status is ServiceStatus.NOT_READY

    await service.select_voice("M1")
    assert service.is_ready


@pytest.mark.asyncio
async def test_unknown_voice_rejected(service, tts):
    await service.load(tts=tts)
    with pytest.raises(InvalidRequestError):
        await service.select_voice("Z9")
    with pytest.raises(InvalidRequestError):
        await service.generate(GenerationRequest(text="Hi.", voice="Z9"))
    assert service.is_ready


@pytest.mark.asyncio
async def test_request_voice_switches_active_voice(service, tts):
    await service.load(tts=tts)
    result = await service.generate(GenerationRequest(text="Hi.", total_step=1, voice="F2"))
    assert result.voice == "F2"
    assert service.voice == "F2"


@pytest.mark.asyncio
async def test_unreadable_request_voice_keeps_previous_voice(service, tts, assets_dir):
    await service.load(tts=tts)
    before = service.style
    (assets_dir / "voice_styles" / "F2.json").write_text("{corrupt")

    with pytest.raises(ResourceError):
        await service.generate(GenerationRequest(text="Hi.", total_step=1, voice="F2"))

    assert service.is_ready
    assert service.voice == "M1"
    assert service.style is before

    result = await service.generate(GenerationRequest(text="Hi.", total_step=1))
    assert result.voice == "M1"
    assert result.wav.size > 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"text": ""},
        {"text": "Hi.", "total_step": 0},
        {"text": "Hi.", "speed": -1.0},
        {"text": "Hi.", "silence_duration": -0.5},
    ],
)
async def test_invalid_request_leaves_service_ready(service, tts, stages, request_kwargs):
    await service.load(tts=tts)
    with pytest.raises(InvalidRequestError):
        await service.generate(GenerationRequest(**request_kwargs))
    assert service.is_ready
    assert stages.duration_predictor.calls == []


@pytest.mark.asyncio
async def test_inference_failure_leaves_service_ready(service, model_config, text_processor, tmp_path):
    broken = TextToSpeech(model_config, text_processor, make_stages(model_config, seconds=-1.0))
    await service.load(tts=broken)

    with pytest.raises(InferenceError):
        await service.generate(GenerationRequest(text="Hello."))

    assert service.is_ready
    assert list(tmp_path.glob("*.wav")) == []


@pytest.mark.asyncio
async def test_seed_makes_noise_reproducible(service, tts, stages):
    await service.load(tts=tts)
    await service.generate(GenerationRequest(text="Hi.", total_step=1, seed=11))
    await service.generate(GenerationRequest(text="Hi.", total_step=1, seed=11))

    first, second = (call["noisy_latent"] for call in stages.vector_estimator.calls)
    np.testing.assert_array_equal(first, second)


@pytest.mark.asyncio
async def test_save_writes_wav(service, tts, tmp_path):
    await service.load(tts=tts)
    result = await service.generate(GenerationRequest(text="Hello.", total_step=1))

    path = await service.save(result, tmp_path / "out.wav")

    data = path.read_bytes()
    header = read_wav_header(data)
    assert header.sample_rate == 1000
    assert header.num_samples == result.wav.size
    assert data == result.to_wav_bytes()


@pytest.mark.asyncio
async def test_progress_callback(service, tts):
    await service.load(tts=tts)
    seen = []
    await service.generate(GenerationRequest(text="Hi.", total_step=1), progress=lambda i, n: seen.append(i))
    assert seen == [0]
