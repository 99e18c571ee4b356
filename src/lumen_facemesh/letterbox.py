"""
Letterbox transform and its inverse.

The forward transform scales an RGB image to fit a fixed canvas while keeping
its aspect ratio, centers it and pads the rest with black. The four padding
fractions recorded on the way are all that is needed to map any normalized
coordinate predicted on the canvas back to the source image.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np
import numpy.typing as npt

from .exceptions import DecodeError
from .types import Detection, NormalizedRect


@dataclass(frozen=True)
class Padding:
    """Letterbox padding as fractions of the canvas height/width."""

    top: float = 0.0
    bottom: float = 0.0
    left: float = 0.0
    right: float = 0.0

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.top, self.bottom, self.left, self.right)

    @property
    def content_width(self) -> float:
        return 1.0 - self.left - self.right

    @property
    def content_height(self) -> float:
        return 1.0 - self.top - self.bottom

    # canvas -> source
    def unpad_x(self, x):
        return (x - self.left) / self.content_width

    def unpad_y(self, y):
        return (y - self.top) / self.content_height

    # source -> canvas
    def pad_x(self, x):
        return self.left + x * self.content_width

    def pad_y(self, y):
        return self.top + y * self.content_height


@dataclass(frozen=True)
class LetterboxResult:
    """Normalized NHWC-ready tensor plus the padding used to build it."""

    tensor: npt.NDArray[np.float32]
    padding: Padding
    scale: float
    source_size: tuple[int, int]  # (width, height)


def letterbox_geometry(
    src_w: int, src_h: int, out_w: int, out_h: int
) -> tuple[int, int, int, int, float, Padding]:
    """Return ``(new_w, new_h, dx, dy, scale, padding)`` for a letterbox."""
    if src_w <= 0 or src_h <= 0:
        raise DecodeError(f"Invalid source size {src_w}x{src_h}")
    scale = min(out_w / src_w, out_h / src_h)
    new_w = min(out_w, max(1, int(round(src_w * scale))))
    new_h = min(out_h, max(1, int(round(src_h * scale))))
    dx = (out_w - new_w) // 2
    dy = (out_h - new_h) // 2
    padding = Padding(
        top=dy / out_h,
        bottom=(out_h - dy - new_h) / out_h,
        left=dx / out_w,
        right=(out_w - dx - new_w) / out_w,
    )
    return new_w, new_h, dx, dy, scale, padding


def letterbox_image(
    image: npt.NDArray[np.uint8], out_w: int, out_h: int
) -> tuple[npt.NDArray[np.uint8], Padding, float]:
    """Resize ``image`` into an ``out_h x out_w`` canvas with black borders."""
    if image is None or image.ndim != 3 or image.size == 0:
        raise DecodeError("letterbox expects a non-empty HxWxC image")
    src_h, src_w = image.shape[:2]
    new_w, new_h, dx, dy, scale, padding = letterbox_geometry(
        src_w, src_h, out_w, out_h
    )
    if (new_w, new_h) == (src_w, src_h):
        resized = image
    else:
        resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    canvas = cv2.copyMakeBorder(
        resized,
        dy,
        out_h - dy - new_h,
        dx,
        out_w - dx - new_w,
        cv2.BORDER_CONSTANT,
        value=(0, 0, 0),
    )
    return canvas, padding, scale


def image_to_tensor(
    image: npt.NDArray[np.uint8],
    out_w: int,
    out_h: int,
    out: npt.NDArray[np.float32] | None = None,
) -> LetterboxResult:
    """Letterbox an RGB image and scale pixels to ``[-1, 1]``.

    When ``out`` is given (an ``(out_h, out_w, 3)`` float32 buffer) the
    normalized pixels are written into it instead of a fresh array.
    """
    canvas, padding, scale = letterbox_image(image, out_w, out_h)
    if out is None:
        out = np.empty((out_h, out_w, 3), dtype=np.float32)
    elif out.shape != (out_h, out_w, 3):
        raise ValueError(f"Buffer shape {out.shape} != {(out_h, out_w, 3)}")
    np.divide(canvas[..., :3], 127.5, out=out, casting="unsafe")
    out -= 1.0
    return LetterboxResult(
        tensor=out,
        padding=padding,
        scale=scale,
        source_size=(image.shape[1], image.shape[0]),
    )


# --------------------------------------------------------------------------- #
# Inverse mapping
# --------------------------------------------------------------------------- #


def remove_letterbox_points(
    points: npt.NDArray[np.float32], padding: Padding
) -> npt.NDArray[np.float32]:
    """Map ``(N, >=2)`` canvas-normalized points back to the source image."""
    out = np.array(points, dtype=np.float32, copy=True)
    out[:, 0] = padding.unpad_x(out[:, 0])
    out[:, 1] = padding.unpad_y(out[:, 1])
    return out


def remove_letterbox_detection(det: Detection, padding: Padding) -> Detection:
    box = det.bounding_box
    keypoints = list(det.keypoints)
    for i in range(0, len(keypoints) - 1, 2):
        keypoints[i] = padding.unpad_x(keypoints[i])
        keypoints[i + 1] = padding.unpad_y(keypoints[i + 1])
    return Detection(
        bounding_box=NormalizedRect(
            padding.unpad_x(box.xmin),
            padding.unpad_y(box.ymin),
            padding.unpad_x(box.xmax),
            padding.unpad_y(box.ymax),
        ),
        score=det.score,
        keypoints=tuple(keypoints),
        image_size=det.image_size,
    )
