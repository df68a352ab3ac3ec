"""End-to-end tests of the synthesis pipeline with fake inference stages."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import FakeStage, make_stages
from lilt.errors import InferenceError, InvalidRequestError
from lilt.pipeline import TextToSpeech
from lilt.style import Style


def _style(bsz=1):
    return Style(
        ttl=np.ones((bsz, 4, 3), dtype=np.float32),
        dp=np.ones((bsz, 2, 2), dtype=np.float32),
    )


@pytest.mark.asyncio
async def test_single_chunk_when_text_fits(tts, stages):
    result = await tts("Hello. World.", _style(), total_step=2, max_chunk_len=300)

    assert result.chunks == ["Hello. World."]
    assert len(stages.duration_predictor.calls) == 1
    # 0.5 s / 1.05 at 1000 Hz -> 477 samples -> 24 latent frames of 20 samples
    assert result.wav.shape == (24 * 20,)
    assert result.duration == pytest.approx(0.5 / 1.05)


@pytest.mark.asyncio
async def test_two_chunks_separated_by_one_silence(tts, stages):
    result = await tts("Hello. World.", _style(), total_step=2, speed=1.0, max_chunk_len=5)

    assert result.chunks == ["Hello.", "World."]
    chunk_len = 25 * 20  # 0.5 s -> 500 samples -> 25 frames
    gap = 300  # floor(0.3 * 1000)
    assert result.wav.shape == (2 * chunk_len + gap,)
    np.testing.assert_array_equal(result.wav[:chunk_len], 0.25)
    np.testing.assert_array_equal(result.wav[chunk_len:chunk_len + gap], 0.0)
    np.testing.assert_array_equal(result.wav[chunk_len + gap:], 0.25)
    assert result.duration == pytest.approx(0.5 + 0.3 + 0.5)
    assert len(stages.vector_estimator.calls) == 4


@pytest.mark.asyncio
async def test_stage_inputs_have_expected_shapes(tts, stages):
    await tts("hi", _style(), total_step=1, speed=1.0)

    dp_call = stages.duration_predictor.calls[0]
    np.testing.assert_array_equal(dp_call["text_ids"], [[8, 9]])
    assert dp_call["text_mask"].shape == (1, 1, 2)
    assert dp_call["style_dp"].shape == (1, 2, 2)

    est_call = stages.vector_estimator.calls[0]
    assert est_call["noisy_latent"].shape == (1, 6, 25)
    assert est_call["latent_mask"].shape == (1, 1, 25)
    assert est_call["text_emb"].shape == (1, 8, 2)
    assert est_call["style_ttl"].shape == (1, 4, 3)

    voc_call = stages.vocoder.calls[0]
    # one estimator step adds 1.0 everywhere, masked frames included
    assert voc_call["latent"].shape == (1, 6, 25)


@pytest.mark.asyncio
async def test_chunks_processed_in_document_order(tts, stages):
    await tts("aaa.\n\nbb.\n\nc.", _style(), total_step=1)
    lengths = [call["text_ids"].shape[1] for call in stages.duration_predictor.calls]
    assert lengths == [4, 3, 2]


@pytest.mark.asyncio
async def test_speed_scales_duration(model_config, text_processor):
    stages = make_stages(model_config, seconds=1.0)
    tts = TextToSpeech(model_config, text_processor, stages)

    result = await tts("hello", _style(), total_step=1, speed=2.0)

    assert result.duration == pytest.approx(0.5)
    assert stages.vector_estimator.calls[0]["noisy_latent"].shape[-1] == 25


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"text": ""},
        {"text": "   \n"},
        {"total_step": 0},
        {"total_step": -1},
        {"speed": 0.0},
        {"speed": float("nan")},
        {"silence_duration": -0.1},
        {"max_chunk_len": 0},
    ],
)
async def test_invalid_requests_rejected_before_any_stage_call(tts, stages, kwargs):
    args = {"text": "Hello.", "style": _style(), "total_step": 2}
    args.update(kwargs)
    with pytest.raises(InvalidRequestError):
        await tts(**args)
    assert stages.duration_predictor.calls == []


@pytest.mark.asyncio
async def test_multi_voice_style_rejected_for_long_form(tts):
    with pytest.raises(InvalidRequestError, match="single-voice"):
        await tts("Hello.", _style(bsz=2), total_step=1)


@pytest.mark.asyncio
async def test_stage_failure_names_stage(model_config, text_processor):
    stages = make_stages(model_config)

    def explode(inputs):
        raise RuntimeError("session crashed")

    broken = FakeStage("text_encoder", ["text_ids"], explode)
    stages = stages.__class__(
        duration_predictor=stages.duration_predictor,
        text_encoder=broken,
        vector_estimator=stages.vector_estimator,
        vocoder=stages.vocoder,
    )
    tts = TextToSpeech(model_config, text_processor, stages)

    with pytest.raises(InferenceError) as excinfo:
        await tts("Hello.", _style(), total_step=2)
    assert excinfo.value.stage == "text_encoder"
    assert "session crashed" in str(excinfo.value)
    assert stages.vector_estimator.calls == []


@pytest.mark.asyncio
async def test_invalid_duration_output_is_inference_error(model_config, text_processor):
    stages = make_stages(model_config, seconds=float("nan"))
    tts = TextToSpeech(model_config, text_processor, stages)

    with pytest.raises(InferenceError) as excinfo:
        await tts("Hello.", _style(), total_step=1)
    assert excinfo.value.stage == "duration_predictor"


@pytest.mark.asyncio
async def test_empty_stage_output_is_inference_error(model_config, text_processor):
    stages = make_stages(model_config)
    empty_vocoder = FakeStage("vocoder", ["latent"], lambda inputs: {})
    stages = stages.__class__(
        duration_predictor=stages.duration_predictor,
        text_encoder=stages.text_encoder,
        vector_estimator=stages.vector_estimator,
        vocoder=empty_vocoder,
    )
    tts = TextToSpeech(model_config, text_processor, stages)

    with pytest.raises(InferenceError, match="vocoder"):
        await tts("Hello.", _style(), total_step=1)


@pytest.mark.asyncio
async def test_batch_synthesizes_one_waveform_per_text(tts, stages):
    wav, duration = await tts.batch(["hi", "hello"], _style(bsz=2), total_step=2, speed=1.0)

    assert wav.shape == (2, 25 * 20)
    np.testing.assert_allclose(duration, [0.5, 0.5])
    ids = stages.duration_predictor.calls[0]["text_ids"]
    assert ids.shape == (2, 5)
    np.testing.assert_array_equal(ids[0, 2:], 0)


@pytest.mark.asyncio
async def test_batch_requires_matching_style(tts):
    with pytest.raises(InvalidRequestError, match="does not match"):
        await tts.batch(["a", "b", "c"], _style(bsz=2), total_step=1)


@pytest.mark.asyncio
async def test_progress_reports_every_chunk(tts):
    seen = []
    await tts("One. Two. Three.", _style(), total_step=1, max_chunk_len=4,
              progress=lambda i, n: seen.append((i, n)))
    assert seen == [(0, 3), (1, 3), (2, 3)]
