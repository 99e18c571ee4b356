"""
Selfie segmentation stage.

The binary models output one sigmoid channel (person probability). The
multiclass model outputs six logits per pixel (background, hair, body skin,
face skin, clothes, other); the person probability is one minus the
background softmax.
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt

from ..backends.base import ModelRunner
from ..exceptions import InferenceError
from ..types import SegmentationMask
from .base import RunnerStage

logger = logging.getLogger(__name__)

MULTICLASS_CHANNELS = 6


def _softmax(logits: npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
    shifted = logits - np.max(logits, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return (exp / np.sum(exp, axis=-1, keepdims=True)).astype(np.float32)


class SegmentationModel(RunnerStage):
    def __init__(self, runner: ModelRunner, multiclass: bool = False) -> None:
        super().__init__(runner)
        self.multiclass = multiclass

    @property
    def expected_channels(self) -> int:
        return MULTICLASS_CHANNELS if self.multiclass else 1

    def _as_hwc(self, output: npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
        arr = np.asarray(output, dtype=np.float32)
        if arr.ndim == 4:
            arr = arr[0]
        if arr.ndim == 2:
            arr = arr[..., np.newaxis]
        if arr.ndim != 3:
            raise InferenceError(f"Unexpected segmentation output shape {output.shape}")
        channels = self.expected_channels
        if arr.shape[-1] != channels and arr.shape[0] == channels:
            arr = np.transpose(arr, (1, 2, 0))
        if arr.shape[-1] != channels:
            raise InferenceError(
                f"Expected {channels} output channels, got shape {output.shape}"
            )
        return arr

    def segment(self, image: npt.NDArray[np.uint8]) -> SegmentationMask:
        packed = self._prepare(image)
        outputs = self._infer(packed.tensor)
        if not outputs:
            raise InferenceError("Segmentation model produced no output")

        hwc = self._as_hwc(outputs[0])
        height, width = hwc.shape[:2]
        orig_w, orig_h = packed.source_size

        if self.multiclass:
            probs = _softmax(hwc)
            person = 1.0 - probs[..., 0]
            class_data = probs
        else:
            person = hwc[..., 0]
            class_data = None

        return SegmentationMask(
            data=np.ascontiguousarray(person, dtype=np.float32),
            width=width,
            height=height,
            original_width=orig_w,
            original_height=orig_h,
            padding=packed.padding.as_tuple(),
            class_data=class_data,
        )
