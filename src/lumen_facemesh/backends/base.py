"""
Base runner for the face pipeline's black-box models.

Every model the pipeline drives (detector, mesh, iris, embedding,
segmentation) is a tensor-in/tensor-out function. A ``ModelRunner`` owns one
loaded model plus a fixed-shape input buffer that is reused across calls.
Because that buffer is mutated in place, a runner is not safe for
concurrent use; callers serialize access through ``lumen_facemesh.pool``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt

from ..exceptions import PoolNotInitializedError


@dataclass
class RunnerInfo:
    """Runtime metadata for a loaded model.

    Attributes:
        runtime: Runtime framework name (e.g. "onnx").
        model_name: File stem of the loaded model.
        device: Execution device derived from the providers.
        input_size: Model input as ``(height, width)``.
        layout: Input tensor layout, "nhwc" or "nchw".
        outputs: Output tensor shapes as reported by the runtime.
        extra: Additional metadata as key-value pairs.
    """

    runtime: str
    model_name: str | None = None
    device: str | None = None
    input_size: tuple[int, int] | None = None
    layout: str | None = None
    outputs: list[list[int | str | None]] = field(default_factory=list)
    extra: dict[str, str | None] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        """Convert to a plain dict (safe for JSON serialization)."""
        return {
            "runtime": self.runtime,
            "model_name": self.model_name,
            "device": self.device,
            "input_size": list(self.input_size) if self.input_size else None,
            "layout": self.layout,
            "outputs": [list(s) for s in self.outputs],
            "extra": dict(self.extra),
        }


class ModelRunner(ABC):
    """Abstract tensor-in/tensor-out model.

    Subclasses load the model in ``initialize`` and expose the input size the
    model expects. ``run`` takes a single ``(H, W, 3)`` float32 image tensor
    and returns every output tensor of the model in graph order.
    """

    def __init__(self) -> None:
        self._initialized = False

    @abstractmethod
    def initialize(self) -> None:
        """Load the model and allocate the reusable input buffer."""

    @property
    @abstractmethod
    def input_size(self) -> tuple[int, int]:
        """Model input as ``(height, width)``."""

    @abstractmethod
    def run(self, tensor: npt.NDArray[np.float32]) -> list[npt.NDArray[np.float32]]:
        """Run one forward pass on an ``(H, W, 3)`` tensor."""

    @abstractmethod
    def get_runtime_info(self) -> RunnerInfo:
        """Describe the loaded model."""

    def close(self) -> None:
        """Release the model; the runner cannot be used afterwards."""
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise PoolNotInitializedError(
                f"{type(self).__name__} not initialized. Call initialize() first."
            )
