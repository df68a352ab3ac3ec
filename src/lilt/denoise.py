"""Iterative latent denoising driven by the vector estimator stage."""

import asyncio
import logging
from typing import Callable, Optional

import numpy as np

from lilt.errors import InferenceError, InvalidRequestError
from lilt.inference import InferenceStage, first_output, run_stage
from lilt.latent import LatentState
from lilt.workers import WorkerPool

logger = logging.getLogger(__name__)

StepCallback = Callable[[int, int], None]


def check_total_step(total_step: int) -> int:
    if isinstance(total_step, bool) or not isinstance(total_step, (int, np.integer)) or total_step < 1:
        raise InvalidRequestError(f"total_step must be a positive integer, got {total_step!r}")
    return int(total_step)


class Denoiser:
    """
    Runs the denoising loop for one batch.

    Each step feeds the whole latent buffer to the estimator and
    overwrites it in place with the estimator's output before the next
    step starts. Control returns to the event loop once per step.
    """

    def __init__(self, estimator: InferenceStage, pool: Optional[WorkerPool] = None):
        """
        Initialize the denoiser.

        Args:
            estimator: Vector estimator stage
            pool: Worker pool the estimator calls are offloaded to
        """
        self.estimator = estimator
        self.pool = pool

    async def run(
        self,
        state: LatentState,
        text_emb: np.ndarray,
        style_ttl: np.ndarray,
        text_mask: np.ndarray,
        total_step: int,
        on_step: Optional[StepCallback] = None,
    ) -> np.ndarray:
        """
        Refine ``state.latent`` in place for ``total_step`` steps.

        Args:
            state: Latent and latent mask, owned by this call until it returns
            text_emb: Text encoder output
            style_ttl: Synthesis style conditioning
            text_mask: Text validity mask [batch, 1, text_len]
            total_step: Number of estimator invocations
            on_step: Called with (step, total_step) after each step

        Returns:
            The refined latent (same array as ``state.latent``)
        """
        total_step = check_total_step(total_step)
        latent = state.latent
        bsz = latent.shape[0]
        total_step_tensor = np.full((bsz,), float(total_step), dtype=np.float32)

        for step in range(total_step):
            await asyncio.sleep(0)

            outputs = await run_stage(
                self.estimator,
                {
                    "noisy_latent": latent.copy(),
                    "text_emb": text_emb,
                    "style_ttl": style_ttl,
                    "text_mask": text_mask,
                    "latent_mask": state.latent_mask,
                    "total_step": total_step_tensor,
                    "current_step": np.full((bsz,), float(step), dtype=np.float32),
                },
                pool=self.pool,
                step=step,
            )
            denoised = first_output(outputs, self.estimator.name)
            if denoised.size != latent.size:
                raise InferenceError(
                    self.estimator.name,
                    f"returned {denoised.size} values for a latent of shape {list(latent.shape)}",
                    step=step,
                )
            np.copyto(latent, denoised.reshape(latent.shape), casting="unsafe")

            if on_step is not None:
                on_step(step, total_step)

        logger.debug(f"Denoised latent {list(latent.shape)} in {total_step} steps")
        return latent
