"""
Face mesh stage: 468 3D landmarks from an aligned face crop.
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt

from ..exceptions import InferenceError
from ..letterbox import Padding
from ..types import MESH_POINT_COUNT
from .base import RunnerStage

logger = logging.getLogger(__name__)


def unpack_landmarks(
    flat: npt.NDArray[np.float32],
    in_w: int,
    in_h: int,
    padding: Padding,
    clamp: bool,
) -> npt.NDArray[np.float32]:
    """Turn a flat ``(x, y, z, ...)`` output into crop-normalized points.

    x and y are divided by the input size and un-letterboxed; z is kept raw.
    With ``clamp`` the x/y results are limited to ``[0, 1]``.
    """
    values = np.asarray(flat, dtype=np.float32).reshape(-1)
    if values.size % 3 != 0:
        raise InferenceError(f"Landmark output of size {values.size} is not a multiple of 3")
    pts = values.reshape(-1, 3).copy()
    pts[:, 0] = padding.unpad_x(pts[:, 0] / in_w)
    pts[:, 1] = padding.unpad_y(pts[:, 1] / in_h)
    if clamp:
        np.clip(pts[:, :2], 0.0, 1.0, out=pts[:, :2])
    return pts


class FaceMeshModel(RunnerStage):
    """Predicts the dense face mesh on a square crop."""

    def predict(self, crop: npt.NDArray[np.uint8]) -> npt.NDArray[np.float32]:
        """Return ``(468, 3)`` points normalized to the crop."""
        packed = self._prepare(crop)
        outputs = self._infer(packed.tensor)

        candidates = [o for o in outputs if o.size % 3 == 0]
        if not candidates:
            raise InferenceError("Face mesh model produced no landmark output")
        landmarks = max(candidates, key=lambda o: o.size)
        if landmarks.size < MESH_POINT_COUNT * 3:
            raise InferenceError(
                f"Face mesh output has {landmarks.size // 3} points, need {MESH_POINT_COUNT}"
            )

        h, w = self.input_size
        points = unpack_landmarks(landmarks, w, h, packed.padding, clamp=True)
        return points[:MESH_POINT_COUNT]
