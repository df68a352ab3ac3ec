"""Inference stages: opaque named-tensor models behind a common interface.

The synthesis pipeline talks to four stages (duration predictor, text
encoder, vector estimator, vocoder). Each accepts a mapping of named
input tensors and returns a mapping of named output tensors. Stages are
backed by ONNX Runtime sessions or by Keras 3 models (JAX backend).
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import onnxruntime as ort

from lilt.errors import InferenceError, ResourceError
from lilt.workers import WorkerPool

logger = logging.getLogger(__name__)

Tensors = Dict[str, np.ndarray]

STAGE_NAMES = ("duration_predictor", "text_encoder", "vector_estimator", "vocoder")


class InferenceStage(ABC):
    """A named model mapping input tensors to output tensors."""

    def __init__(self, name: str):
        self.name = name

    @property
    @abstractmethod
    def input_names(self) -> List[str]:
        """Names of the tensors the stage expects."""

    @abstractmethod
    def run(self, inputs: Tensors) -> Tensors:
        """
        Evaluate the stage.

        Args:
            inputs: Named input tensors

        Returns:
            Named output tensors, in the model's output order
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class OnnxStage(InferenceStage):
    """Stage backed by an ``onnxruntime.InferenceSession``."""

    def __init__(self, name: str, session: "ort.InferenceSession"):
        super().__init__(name)
        self.session = session
        self._input_names = [i.name for i in session.get_inputs()]
        self._output_names = [o.name for o in session.get_outputs()]

    @classmethod
    def load(cls, name: str, path: Union[str, Path], use_gpu: bool = False) -> "OnnxStage":
        available = ort.get_available_providers()
        preferred = ["CUDAExecutionProvider", "CPUExecutionProvider"] if use_gpu else ["CPUExecutionProvider"]
        providers = [p for p in preferred if p in available] or available

        opts = ort.SessionOptions()
        opts.log_severity_level = 3
        opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        logger.debug(f"Loading {name} from {path} with providers={providers}")
        session = ort.InferenceSession(str(path), sess_options=opts, providers=providers)
        return cls(name, session)

    @property
    def input_names(self) -> List[str]:
        return list(self._input_names)

    def run(self, inputs: Tensors) -> Tensors:
        missing = [n for n in self._input_names if n not in inputs]
        if missing:
            raise KeyError(f"missing inputs {missing}")
        feed = {n: inputs[n] for n in self._input_names}
        outputs = self.session.run(self._output_names, feed)
        return dict(zip(self._output_names, outputs))


class KerasStage(InferenceStage):
    """Stage backed by a Keras 3 model called with a dict of named inputs."""

    def __init__(self, name: str, model, input_names: Optional[List[str]] = None):
        super().__init__(name)
        self.model = model
        if input_names is None:
            input_names = [t.name.split(":")[0] for t in model.inputs]
        self._input_names = list(input_names)

    @classmethod
    def load(cls, name: str, path: Union[str, Path]) -> "KerasStage":
        os.environ.setdefault("KERAS_BACKEND", "jax")
        import keras

        logger.debug(f"Loading {name} from {path} (keras backend: {keras.backend.backend()})")
        model = keras.saving.load_model(str(path), compile=False)
        return cls(name, model)

    @property
    def input_names(self) -> List[str]:
        return list(self._input_names)

    def run(self, inputs: Tensors) -> Tensors:
        feed = {n: inputs[n] for n in self._input_names}
        outputs = self.model(feed, training=False)
        if isinstance(outputs, dict):
            return {k: np.asarray(v) for k, v in outputs.items()}
        if isinstance(outputs, (list, tuple)):
            names = getattr(self.model, "output_names", None) or [f"output_{i}" for i in range(len(outputs))]
            return {n: np.asarray(v) for n, v in zip(names, outputs)}
        return {"output_0": np.asarray(outputs)}


@dataclass(frozen=True)
class StageSet:
    """The four inference stages used by the synthesis pipeline."""

    duration_predictor: InferenceStage
    text_encoder: InferenceStage
    vector_estimator: InferenceStage
    vocoder: InferenceStage


def load_stage(model_dir: Union[str, Path], name: str, use_gpu: bool = False) -> InferenceStage:
    """
    Load one stage, preferring ``<name>.onnx`` over ``<name>.keras``.

    Args:
        model_dir: Directory holding the model files
        name: Stage name (file stem)
        use_gpu: Prefer the CUDA execution provider for ONNX models

    Returns:
        Loaded InferenceStage
    """
    model_dir = Path(model_dir)
    onnx_path = model_dir / f"{name}.onnx"
    keras_path = model_dir / f"{name}.keras"

    try:
        if onnx_path.exists():
            return OnnxStage.load(name, onnx_path, use_gpu=use_gpu)
        if keras_path.exists():
            return KerasStage.load(name, keras_path)
    except Exception as e:
        raise ResourceError(f"Failed to load {name} model from {model_dir}: {e}") from e

    raise ResourceError(f"No model for stage '{name}' in {model_dir} (expected {name}.onnx or {name}.keras)")


def load_stages(model_dir: Union[str, Path], use_gpu: bool = False) -> StageSet:
    """
    Load all four inference stages from a directory.

    Args:
        model_dir: Directory holding the model files
        use_gpu: Prefer the CUDA execution provider for ONNX models

    Returns:
        StageSet instance
    """
    stages = {name: load_stage(model_dir, name, use_gpu=use_gpu) for name in STAGE_NAMES}
    logger.info(f"Loaded inference stages: {', '.join(repr(s) for s in stages.values())}")
    return StageSet(**stages)


def first_output(outputs: Tensors, stage: str) -> np.ndarray:
    """The stage's first output tensor."""
    try:
        return next(iter(outputs.values()))
    except StopIteration:
        raise InferenceError(stage, "returned no outputs") from None


async def run_stage(
    stage: InferenceStage,
    inputs: Tensors,
    pool: Optional[WorkerPool] = None,
    step: Optional[int] = None,
) -> Tensors:
    """
    Invoke a stage, on the worker pool when one is given.

    Any failure, or output that is empty or non-numeric, is raised as an
    InferenceError naming the stage.

    Args:
        stage: Stage to run
        inputs: Named input tensors
        pool: Worker pool to offload the call to
        step: Denoising step index, reported in errors

    Returns:
        Named output tensors as numpy arrays
    """
    try:
        if pool is not None:
            outputs = await pool.run(stage.run, inputs)
        else:
            outputs = stage.run(inputs)
    except InferenceError:
        raise
    except Exception as e:
        raise InferenceError(stage.name, f"{type(e).__name__}: {e}", step=step) from e

    if not isinstance(outputs, dict) or not outputs:
        raise InferenceError(stage.name, "returned no outputs", step=step)

    arrays = {}
    for key, value in outputs.items():
        array = np.asarray(value)
        if array.size == 0 or not np.issubdtype(array.dtype, np.number):
            raise InferenceError(
                stage.name, f"output '{key}' is empty or non-numeric ({array.dtype}, {array.shape})", step=step
            )
        arrays[key] = array
    return arrays
