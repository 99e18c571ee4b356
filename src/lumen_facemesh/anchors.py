"""
SSD anchor grid generation.

Anchors are emitted layer group by layer group (consecutive layers sharing a
stride are merged), row-major within each feature map, with every cell
repeated once per anchor it carries. The decoder indexes anchors by position,
so this ordering has to match the model's output tensor exactly.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import numpy as np
import numpy.typing as npt

from .config import SSDAnchorOptions

logger = logging.getLogger(__name__)


def _stride_groups(options: SSDAnchorOptions) -> list[tuple[int, int]]:
    """Return ``(stride, repeats)`` for each run of equal strides."""
    groups: list[tuple[int, int]] = []
    per_layer = 2 if options.interpolated_scale_aspect_ratio == 1.0 else 1
    layer_id = 0
    while layer_id < options.num_layers:
        last_same = layer_id
        repeats = 0
        while (
            last_same < options.num_layers
            and options.strides[last_same] == options.strides[layer_id]
        ):
            last_same += 1
            repeats += per_layer
        groups.append((options.strides[layer_id], repeats))
        layer_id = last_same
    return groups


def _layer_centers(
    fm_h: int, fm_w: int, offset_x: float, offset_y: float, repeats: int
) -> npt.NDArray[np.float32]:
    grid_y, grid_x = np.mgrid[:fm_h, :fm_w]
    centers = np.stack(
        ((grid_x + offset_x) / fm_w, (grid_y + offset_y) / fm_h), axis=-1
    ).reshape(-1, 2)
    if repeats > 1:
        centers = np.repeat(centers, repeats, axis=0)
    return centers.astype(np.float32)


def expected_anchor_count(options: SSDAnchorOptions) -> int:
    return sum(
        (options.input_height // stride) * (options.input_width // stride) * repeats
        for stride, repeats in _stride_groups(options)
    )


@lru_cache(maxsize=None)
def generate_anchors(options: SSDAnchorOptions) -> npt.NDArray[np.float32]:
    """Build the ``(N, 2)`` array of ``(x_center, y_center)`` anchors.

    The result is cached per options and marked read-only, so every frame
    shares the same grid.
    """
    chunks = [
        _layer_centers(
            options.input_height // stride,
            options.input_width // stride,
            options.anchor_offset_x,
            options.anchor_offset_y,
            repeats,
        )
        for stride, repeats in _stride_groups(options)
    ]
    anchors = (
        np.concatenate(chunks, axis=0) if chunks else np.empty((0, 2), np.float32)
    )
    anchors.setflags(write=False)
    logger.debug(
        "Generated %d anchors for strides=%s input=%dx%d",
        len(anchors),
        options.strides,
        options.input_width,
        options.input_height,
    )
    return anchors
