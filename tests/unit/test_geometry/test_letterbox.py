"""
Tests for the letterbox transform and its inverse.
"""

import numpy as np
import pytest

from lumen_facemesh.exceptions import DecodeError
from lumen_facemesh.letterbox import (
    Padding,
    image_to_tensor,
    letterbox_geometry,
    letterbox_image,
    remove_letterbox_detection,
    remove_letterbox_points,
)
from lumen_facemesh.types import Detection, NormalizedRect


class TestLetterboxGeometry:
    def test_wide_image_padded_top_bottom(self):
        new_w, new_h, dx, dy, scale, padding = letterbox_geometry(200, 100, 128, 128)

        assert (new_w, new_h) == (128, 64)
        assert (dx, dy) == (0, 32)
        assert scale == pytest.approx(0.64)
        assert padding.as_tuple() == pytest.approx((0.25, 0.25, 0.0, 0.0))

    def test_tall_image_padded_left_right(self):
        *_, padding = letterbox_geometry(100, 200, 256, 256)

        assert padding.top == 0.0 and padding.bottom == 0.0
        assert padding.left == pytest.approx(0.25)
        assert padding.right == pytest.approx(0.25)

    def test_square_image_has_no_padding(self):
        *_, padding = letterbox_geometry(640, 640, 192, 192)
        assert padding.as_tuple() == (0.0, 0.0, 0.0, 0.0)

    def test_padding_and_content_fill_canvas(self):
        for size in [(37, 91), (300, 17), (1, 1), (1920, 1080)]:
            *_, padding = letterbox_geometry(*size, 256, 256)
            assert padding.content_width + padding.left + padding.right == pytest.approx(1.0)
            assert padding.content_height + padding.top + padding.bottom == pytest.approx(1.0)
            assert padding.content_width > 0 and padding.content_height > 0

    def test_invalid_source_size(self):
        with pytest.raises(DecodeError):
            letterbox_geometry(0, 10, 128, 128)


class TestLetterboxImage:
    def test_canvas_shape_and_black_borders(self):
        image = np.full((100, 200, 3), 255, dtype=np.uint8)

        canvas, padding, _ = letterbox_image(image, 128, 128)

        assert canvas.shape == (128, 128, 3)
        assert np.all(canvas[:32] == 0)
        assert np.all(canvas[-32:] == 0)
        assert np.all(canvas[32:96] == 255)

    def test_rejects_empty(self):
        with pytest.raises(DecodeError):
            letterbox_image(np.zeros((0, 0, 3), dtype=np.uint8), 64, 64)


class TestImageToTensor:
    def test_value_range(self):
        image = np.full((100, 200, 3), 255, dtype=np.uint8)

        packed = image_to_tensor(image, 128, 128)

        assert packed.tensor.dtype == np.float32
        assert packed.tensor.shape == (128, 128, 3)
        assert packed.tensor.min() == pytest.approx(-1.0)
        assert packed.tensor.max() == pytest.approx(1.0)
        assert packed.source_size == (200, 100)

    def test_writes_into_buffer(self):
        buffer = np.zeros((64, 64, 3), dtype=np.float32)
        image = np.zeros((64, 64, 3), dtype=np.uint8)

        packed = image_to_tensor(image, 64, 64, out=buffer)

        assert packed.tensor is buffer
        assert np.all(buffer == -1.0)

    def test_buffer_shape_mismatch(self):
        with pytest.raises(ValueError):
            image_to_tensor(
                np.zeros((64, 64, 3), dtype=np.uint8),
                64,
                64,
                out=np.zeros((32, 32, 3), dtype=np.float32),
            )


class TestInverseMapping:
    """Points mapped onto the canvas and back land where they started."""

    @pytest.mark.parametrize(
        "src_w, src_h, out_w, out_h",
        [
            (200, 100, 128, 128),  # wide, downscale
            (100, 200, 128, 128),  # tall, downscale
            (300, 300, 128, 128),  # square
            (64, 48, 256, 256),  # upscale
            (20, 90, 192, 192),  # tall, upscale
            (640, 480, 256, 144),  # non-square output, pillarbox
            (480, 640, 144, 256),  # non-square output, letterbox
            (256, 256, 256, 256),  # identity
        ],
    )
    def test_point_round_trip(self, src_w, src_h, out_w, out_h):
        *_, padding = letterbox_geometry(src_w, src_h, out_w, out_h)
        src = np.array(
            [[0.0, 0.0], [0.3, 0.6], [0.5, 0.5], [0.95, 0.05], [1.0, 1.0]], dtype=np.float32
        )
        canvas = np.stack((padding.pad_x(src[:, 0]), padding.pad_y(src[:, 1])), axis=-1)

        restored = remove_letterbox_points(canvas, padding)

        np.testing.assert_allclose(restored, src, atol=1e-5)

    def test_canvas_edges_map_outside_content(self):
        padding = Padding(top=0.25, bottom=0.25)
        restored = remove_letterbox_points(np.array([[0.5, 0.0]], dtype=np.float32), padding)
        assert restored[0, 1] == pytest.approx(-0.5)

    def test_detection_unpadded(self):
        padding = Padding(top=0.25, bottom=0.25)
        det = Detection(
            NormalizedRect(0.25, 0.25, 0.75, 0.75), 0.9, (0.5, 0.5), image_size=(200, 100)
        )

        restored = remove_letterbox_detection(det, padding)

        assert restored.bounding_box.as_tuple() == pytest.approx((0.25, 0.0, 0.75, 1.0))
        assert restored.keypoints == pytest.approx((0.5, 0.5))
        assert restored.score == 0.9
        assert restored.image_size == (200, 100)
