"""Waveform assembly and canonical 16-bit PCM WAV encoding."""

import logging
import math
import struct
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence, Union

import numpy as np

from lilt.errors import InvalidRequestError, ResourceError
from lilt.workers import OFFLOAD_THRESHOLD_BYTES, WorkerPool, write_bytes_async, write_bytes_atomic

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44
PCM_FORMAT = 1
NUM_CHANNELS = 1
BITS_PER_SAMPLE = 16

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


class AudioAssembler:
    """
    Concatenates per-chunk waveforms with hard silences between them.

    The first chunk is emitted verbatim; every later chunk is preceded by
    ``floor(silence_duration * sample_rate)`` zero samples. The running
    duration counts one silence gap per junction.
    """

    def __init__(self, sample_rate: int, silence_duration: float = 0.3):
        if silence_duration < 0 or not math.isfinite(silence_duration):
            raise InvalidRequestError(f"silence_duration must be >= 0, got {silence_duration}")
        self.sample_rate = sample_rate
        self.silence_duration = silence_duration
        self._parts: List[np.ndarray] = []
        self._duration = 0.0
        self._num_chunks = 0

    @property
    def silence_samples(self) -> int:
        return int(math.floor(self.silence_duration * self.sample_rate))

    @property
    def num_chunks(self) -> int:
        return self._num_chunks

    @property
    def duration(self) -> float:
        """Total spoken duration in seconds, silences included."""
        return self._duration

    def append(self, wav: np.ndarray, duration: float) -> None:
        """
        Append one chunk's waveform.

        Args:
            wav: Chunk samples (flattened)
            duration: Chunk duration in seconds as reported by the model
        """
        wav = np.asarray(wav, dtype=np.float32).reshape(-1)
        if self._num_chunks > 0:
            self._parts.append(np.zeros(self.silence_samples, dtype=np.float32))
            self._duration += self.silence_duration
        self._parts.append(wav)
        self._duration += float(duration)
        self._num_chunks += 1

    @property
    def wav(self) -> np.ndarray:
        if not self._parts:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(self._parts)

    def __len__(self) -> int:
        return sum(len(p) for p in self._parts)


class WavHeader(NamedTuple):
    riff_size: int
    audio_format: int
    num_channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size: int

    @property
    def num_samples(self) -> int:
        return self.data_size // self.block_align


def float_to_pcm16(samples: Sequence[float]) -> np.ndarray:
    """
    Convert float samples to int16 PCM.

    Samples are clamped to [-1, 1], scaled by 32767 and rounded half away
    from zero. NaN samples become silence.
    """
    x = np.nan_to_num(np.asarray(samples, dtype=np.float64).reshape(-1), nan=0.0)
    x = np.clip(x, -1.0, 1.0) * 32767.0
    return (np.sign(x) * np.floor(np.abs(x) + 0.5)).astype("<i2")


def create_wav_bytes(samples: Sequence[float], sample_rate: int) -> bytes:
    """
    Encode samples as a mono 16-bit little-endian PCM WAV file.

    Args:
        samples: Float samples, nominally in [-1, 1]
        sample_rate: Sample rate in Hz

    Returns:
        WAV file bytes: 44-byte header followed by the sample data
    """
    pcm = float_to_pcm16(samples)
    block_align = NUM_CHANNELS * BITS_PER_SAMPLE // 8
    data_size = pcm.size * block_align

    header = _HEADER.pack(
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        PCM_FORMAT,
        NUM_CHANNELS,
        sample_rate,
        sample_rate * block_align,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_size,
    )
    return header + pcm.tobytes()


def read_wav_header(data: bytes) -> WavHeader:
    """
    Parse the canonical 44-byte header written by ``create_wav_bytes``.

    Args:
        data: WAV file bytes

    Returns:
        WavHeader with the declared format fields
    """
    if len(data) < WAV_HEADER_SIZE:
        raise ResourceError(f"WAV data too short: {len(data)} bytes")
    (riff, riff_size, wave, fmt, fmt_size, audio_format, num_channels, sample_rate,
     byte_rate, block_align, bits_per_sample, data_id, data_size) = _HEADER.unpack_from(data)
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_id != b"data" or fmt_size != 16:
        raise ResourceError("Not a canonical PCM WAV header")
    return WavHeader(riff_size, audio_format, num_channels, sample_rate, byte_rate,
                     block_align, bits_per_sample, data_size)


def write_wav_file(path: Union[str, Path], samples: Sequence[float], sample_rate: int) -> None:
    """Encode and write a WAV file synchronously."""
    write_bytes_atomic(path, create_wav_bytes(samples, sample_rate))
    logger.info(f"Wrote {path}")


async def write_wav_file_async(
    path: Union[str, Path],
    samples: Sequence[float],
    sample_rate: int,
    pool: WorkerPool,
    threshold: Optional[int] = None,
) -> None:
    """
    Encode and write a WAV file, offloading large writes to the worker pool.

    Args:
        path: Destination file
        samples: Float samples
        sample_rate: Sample rate in Hz
        pool: Worker pool for large writes
        threshold: Offload threshold in bytes (default: 1 MiB)
    """
    data = create_wav_bytes(samples, sample_rate)
    await write_bytes_async(path, data, pool, OFFLOAD_THRESHOLD_BYTES if threshold is None else threshold)
    logger.info(f"Wrote {path} ({len(data) / 1024:.1f} KB)")
