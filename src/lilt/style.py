"""Voice style conditioning: loading and batching per-voice style tensors."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np

from lilt.errors import InvalidRequestError, ResourceError, ShapeMismatchError

logger = logging.getLogger(__name__)

STYLE_KEYS = ("style_ttl", "style_dp")


@dataclass(frozen=True)
class Style:
    """
    Conditioning tensors for one or more voices.

    Attributes:
        ttl: Synthesis conditioning [batch, channels, frames], float32
        dp: Duration conditioning [batch, channels, frames], float32
    """

    ttl: np.ndarray
    dp: np.ndarray

    def __post_init__(self):
        if self.ttl.ndim != 3 or self.dp.ndim != 3:
            raise ShapeMismatchError(
                f"Style tensors must be 3-D, got ttl{self.ttl.shape} dp{self.dp.shape}"
            )
        if self.ttl.shape[0] != self.dp.shape[0]:
            raise ShapeMismatchError(
                f"Style batch mismatch: ttl has {self.ttl.shape[0]}, dp has {self.dp.shape[0]}"
            )
        self.ttl.setflags(write=False)
        self.dp.setflags(write=False)

    @property
    def batch_size(self) -> int:
        return self.ttl.shape[0]

    @property
    def ttl_shape(self) -> Tuple[int, int, int]:
        return tuple(self.ttl.shape)

    @property
    def dp_shape(self) -> Tuple[int, int, int]:
        return tuple(self.dp.shape)


@dataclass(frozen=True)
class _StyleSource:
    path: str
    ttl_dims: Tuple[int, int, int]
    dp_dims: Tuple[int, int, int]
    ttl_data: np.ndarray
    dp_data: np.ndarray


def _parse_tensor(entry: object, key: str, path: str) -> Tuple[Tuple[int, int, int], np.ndarray]:
    if not isinstance(entry, dict) or "dims" not in entry or "data" not in entry:
        raise ResourceError(f"Style {path}: '{key}' must be an object with 'dims' and 'data'")

    dims = entry["dims"]
    if (
        not isinstance(dims, list)
        or len(dims) != 3
        or not all(isinstance(d, int) and not isinstance(d, bool) and d > 0 for d in dims)
    ):
        raise ResourceError(f"Style {path}: '{key}.dims' must be three positive integers, got {dims!r}")
    if dims[0] != 1:
        raise ResourceError(f"Style {path}: '{key}' must hold a single voice, got batch {dims[0]}")

    try:
        data = np.asarray(entry["data"], dtype=np.float32).reshape(-1)
    except (TypeError, ValueError) as e:
        raise ResourceError(f"Style {path}: '{key}.data' is not a rectangular numeric array") from e

    expected = int(np.prod(dims))
    if data.size != expected:
        raise ResourceError(
            f"Style {path}: '{key}.data' has {data.size} values, dims {dims} require {expected}"
        )
    return tuple(dims), data


def _read_source(path: Union[str, Path]) -> _StyleSource:
    path = str(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        raise ResourceError(f"Cannot read voice style {path}: {e}") from e

    if not isinstance(payload, dict) or not all(k in payload for k in STYLE_KEYS):
        raise ResourceError(f"Style {path} must contain {' and '.join(STYLE_KEYS)}")

    ttl_dims, ttl_data = _parse_tensor(payload["style_ttl"], "style_ttl", path)
    dp_dims, dp_data = _parse_tensor(payload["style_dp"], "style_dp", path)
    return _StyleSource(path, ttl_dims, dp_dims, ttl_data, dp_data)


def _pack(sources: List[_StyleSource], attr: str, dims: Tuple[int, int, int]) -> np.ndarray:
    item_size = dims[1] * dims[2]
    flat = np.empty(len(sources) * item_size, dtype=np.float32)
    for i, source in enumerate(sources):
        flat[i * item_size:(i + 1) * item_size] = getattr(source, attr)
    return flat.reshape(len(sources), dims[1], dims[2])


def load_voice_style(paths: Sequence[Union[str, Path]]) -> Style:
    """
    Load and batch voice styles.

    All sources are read and validated before the batched tensors are
    built; item ``i`` of the batch is the voice loaded from ``paths[i]``.

    Args:
        paths: One style JSON per batch item

    Returns:
        Style with ttl/dp tensors of batch size len(paths)
    """
    if not paths:
        raise InvalidRequestError("At least one voice style path is required")

    sources = [_read_source(p) for p in paths]

    first = sources[0]
    for source in sources[1:]:
        if source.ttl_dims[1:] != first.ttl_dims[1:] or source.dp_dims[1:] != first.dp_dims[1:]:
            raise ShapeMismatchError(
                f"Style {source.path} has ttl{list(source.ttl_dims)} dp{list(source.dp_dims)}, "
                f"expected ttl{list(first.ttl_dims)} dp{list(first.dp_dims)} from {first.path}"
            )

    style = Style(
        ttl=_pack(sources, "ttl_data", first.ttl_dims),
        dp=_pack(sources, "dp_data", first.dp_dims),
    )
    logger.info(f"Loaded {style.batch_size} voice style(s): ttl{list(style.ttl_shape)} dp{list(style.dp_shape)}")
    return style
