"""Bounded worker pool for offloading inference calls and large file writes."""

import asyncio
import functools
import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

OFFLOAD_THRESHOLD_BYTES = 1024 * 1024


class WorkerPool:
    """
    A fixed-size thread pool whose jobs are awaited from the event loop.

    The orchestrating coroutine submits blocking work and suspends until
    it completes, so the event loop keeps serving other tasks.
    """

    def __init__(self, max_workers: int = 2, name: str = "lilt-worker"):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=name
        )

    @property
    def closed(self) -> bool:
        return self._executor is None

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run ``fn(*args, **kwargs)`` on a worker thread and await its result.

        Exceptions raised by ``fn`` propagate to the caller.
        """
        if self._executor is None:
            raise RuntimeError("WorkerPool is shut down")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()


def write_bytes_atomic(path: Union[str, Path], data: bytes) -> None:
    """
    Write ``data`` to ``path`` through a temporary sibling file.

    The destination only appears once the write has fully succeeded.
    """
    path = Path(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


async def write_bytes_async(
    path: Union[str, Path],
    data: bytes,
    pool: WorkerPool,
    threshold: int = OFFLOAD_THRESHOLD_BYTES,
) -> None:
    """
    Write bytes to disk, offloading large writes to the worker pool.

    Args:
        path: Destination file
        data: File contents
        pool: Worker pool for writes above the threshold
        threshold: Size in bytes above which the write is offloaded
    """
    if len(data) > threshold:
        logger.debug(f"Offloading {len(data) / 1024 / 1024:.1f} MB write to {path}")
        await pool.run(write_bytes_atomic, path, data)
    else:
        write_bytes_atomic(path, data)
