"""
Shared plumbing for the model stages.

A stage pairs one ``ModelRunner`` with the pre- and post-processing that
turns images into tensors and tensors into geometry. Stages keep their own
preallocated tensor buffer, so like runners they must be used by one call at
a time.
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt

from ..backends.base import ModelRunner
from ..exceptions import FaceMeshError, InferenceError, PoolNotInitializedError
from ..letterbox import LetterboxResult, image_to_tensor

logger = logging.getLogger(__name__)


class RunnerStage:
    """Base class for a single-model pipeline stage."""

    def __init__(self, runner: ModelRunner) -> None:
        self.runner = runner
        self._tensor: npt.NDArray[np.float32] | None = None
        self._initialized = False

    def initialize(self) -> None:
        if self._initialized:
            return
        self.runner.initialize()
        h, w = self.runner.input_size
        self._tensor = np.zeros((h, w, 3), dtype=np.float32)
        self._initialized = True

    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def input_size(self) -> tuple[int, int]:
        """Model input as ``(height, width)``."""
        return self.runner.input_size

    def close(self) -> None:
        self._tensor = None
        self._initialized = False
        self.runner.close()

    def _prepare(self, image: npt.NDArray[np.uint8]) -> LetterboxResult:
        if not self._initialized or self._tensor is None:
            raise PoolNotInitializedError(
                f"{type(self).__name__} not initialized. Call initialize() first."
            )
        h, w = self.input_size
        return image_to_tensor(image, w, h, out=self._tensor)

    def _infer(self, tensor: npt.NDArray[np.float32]) -> list[npt.NDArray[np.float32]]:
        try:
            return self.runner.run(tensor)
        except FaceMeshError:
            raise
        except Exception as exc:
            raise InferenceError(f"{type(self).__name__} failed: {exc}") from exc
