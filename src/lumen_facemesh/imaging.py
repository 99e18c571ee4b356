"""
Image input helpers.

The pipeline works on contiguous ``(H, W, 3)`` uint8 RGB arrays. These
helpers produce one from encoded bytes (JPEG, PNG, ...), from a raw pixel
buffer, or from an array in another channel layout.
"""

from __future__ import annotations

import cv2
import numpy as np
import numpy.typing as npt

from .exceptions import DecodeError

ImageInput = bytes | bytearray | memoryview | np.ndarray


def decode_image(data: bytes | bytearray | memoryview) -> npt.NDArray[np.uint8]:
    """Decode encoded image bytes into an RGB array."""
    if len(data) == 0:
        raise DecodeError("image bytes cannot be empty")
    decoded = cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_COLOR)
    if decoded is None:
        raise DecodeError("Failed to decode image bytes")
    return np.ascontiguousarray(cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB))


def image_from_pixels(
    buffer: bytes | bytearray | memoryview | npt.NDArray[np.uint8],
    width: int,
    height: int,
    channels: int = 3,
    color_order: str = "rgb",
) -> npt.NDArray[np.uint8]:
    """Wrap a raw interleaved pixel buffer as an RGB image.

    Args:
        buffer: ``width * height * channels`` bytes, row-major.
        channels: 3 (RGB/BGR) or 4 (RGBA/BGRA).
        color_order: "rgb" or "bgr".
    """
    if channels not in (3, 4):
        raise DecodeError(f"Unsupported channel count {channels}")
    if width <= 0 or height <= 0:
        raise DecodeError(f"Invalid image size {width}x{height}")
    flat = np.frombuffer(buffer, dtype=np.uint8)
    expected = width * height * channels
    if flat.size != expected:
        raise DecodeError(
            f"Pixel buffer has {flat.size} bytes, expected {expected} "
            f"for {width}x{height}x{channels}"
        )
    return ensure_rgb_image(flat.reshape(height, width, channels), color_order)


def ensure_rgb_image(
    image: npt.NDArray, color_order: str = "rgb"
) -> npt.NDArray[np.uint8]:
    """Validate an array and convert it to contiguous 3-channel RGB uint8."""
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise DecodeError("image must be a non-empty numpy array")
    if image.dtype != np.uint8:
        raise DecodeError(f"image must be uint8, got {image.dtype}")

    bgr = color_order.lower() == "bgr"
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.ndim != 3 or image.shape[2] not in (1, 3, 4):
        raise DecodeError(f"Unsupported image shape {image.shape}")
    if image.shape[2] == 1:
        return cv2.cvtColor(image[..., 0], cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        code = cv2.COLOR_BGRA2RGB if bgr else cv2.COLOR_RGBA2RGB
        return cv2.cvtColor(image, code)
    if bgr:
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    return np.ascontiguousarray(image)


def load_image(image: ImageInput) -> npt.NDArray[np.uint8]:
    """Accept encoded bytes or an RGB array and return an RGB array."""
    if isinstance(image, np.ndarray):
        return ensure_rgb_image(image)
    if isinstance(image, (bytes, bytearray, memoryview)):
        return decode_image(image)
    raise DecodeError(f"Unsupported image input type {type(image).__name__}")
