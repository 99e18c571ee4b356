"""
Iris stage: eye-region mesh plus iris keypoints from one eye crop.
"""

from __future__ import annotations

import numpy as np
import numpy.typing as npt

from ..exceptions import InferenceError
from ..types import EYE_MESH_POINT_COUNT, IRIS_POINT_COUNT
from .base import RunnerStage
from .landmark import unpack_landmarks

IRIS_OUTPUT_POINTS = EYE_MESH_POINT_COUNT + IRIS_POINT_COUNT


class IrisModel(RunnerStage):
    """Predicts 71 eye-mesh points followed by 5 iris points.

    The model is trained on left eyes; right-eye crops are mirrored by the
    caller before ``predict`` and un-mirrored afterwards.
    """

    def predict(self, crop: npt.NDArray[np.uint8]) -> npt.NDArray[np.float32]:
        """Return ``(76, 3)`` points normalized to the eye crop (unclamped)."""
        packed = self._prepare(crop)
        outputs = self._infer(packed.tensor)

        h, w = self.input_size
        chunks = [
            unpack_landmarks(o, w, h, packed.padding, clamp=False)
            for o in outputs
            if o.size and o.size % 3 == 0
        ]
        points = np.concatenate(chunks, axis=0) if chunks else np.empty((0, 3), np.float32)
        if len(points) < IRIS_OUTPUT_POINTS:
            raise InferenceError(
                f"Iris output has {len(points)} points, need {IRIS_OUTPUT_POINTS}"
            )
        return points[:IRIS_OUTPUT_POINTS]
