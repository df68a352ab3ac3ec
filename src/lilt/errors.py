"""Exception types raised by the lilt synthesis pipeline."""

from typing import Optional


class LiltError(Exception):
    """Base class for all lilt errors."""


class ResourceError(LiltError):
    """A vocabulary, style, config or model source is unreadable or malformed."""


class ShapeMismatchError(ResourceError):
    """Batched conditioning sources disagree on their non-batch dimensions."""


class InferenceError(LiltError):
    """An external inference stage failed or returned malformed output."""

    def __init__(self, stage: str, message: str, step: Optional[int] = None):
        self.stage = stage
        self.step = step
        where = stage if step is None else f"{stage} (step {step})"
        super().__init__(f"{where}: {message}")


class InvalidRequestError(LiltError, ValueError):
    """A generation request was rejected before any work started."""


class NotReadyError(InvalidRequestError):
    """Models or voice style are not loaded."""
