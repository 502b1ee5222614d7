"""
Tests for the letterbox / coordinate inversion chain and image crops.
"""

import math

import cv2
import numpy as np
import pytest

from lumen_facemesh.exceptions import InvalidInputError
from lumen_facemesh.processing.coordinates import (
    MIN_UNPAD_DENOMINATOR,
    convert_image_to_tensor,
    crop_from_normalized_roi,
    crop_rect,
    decode_image,
    extract_aligned_square,
    face_detection_to_roi,
    keep_aspect_resize_and_pad,
    letterbox,
    remove_letterbox,
    stretch_image_to_tensor,
    to_rgb,
    unpad_coordinate,
)
from lumen_facemesh.types import Detection, RectF


class TestLetterbox:
    """Aspect-preserving resize and padding bookkeeping."""

    def test_wide_image_pads_vertically(self):
        """A 2:1 image on a square canvas gets equal top and bottom bands."""
        image = np.full((100, 200, 3), 200, dtype=np.uint8)
        result = keep_aspect_resize_and_pad(image, 128, 128)

        assert result.image.shape == (128, 128, 3)
        assert result.scale == pytest.approx(0.64)
        assert (result.pad_left, result.pad_right) == (0, 0)
        assert result.pad_top == 32
        assert result.pad_bottom == 32
        assert result.image[0, 64, 0] == 0
        assert result.image[64, 64, 0] == 200

    def test_padding_fractions(self):
        """letterbox() reports padding as (top, bottom, left, right) fractions."""
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        canvas, padding = letterbox(image, 128, 128)

        assert canvas.shape == (128, 128, 3)
        assert padding == pytest.approx((0.25, 0.25, 0.0, 0.0))

    def test_square_image_has_no_padding(self):
        """Matching aspect ratios produce zero padding."""
        image = np.zeros((64, 64), dtype=np.uint8)
        result = keep_aspect_resize_and_pad(image, 128, 128)

        assert result.image.shape == (128, 128)
        assert result.padding == (0.0, 0.0, 0.0, 0.0)

    def test_border_value_fills_canvas(self):
        """The border value is used for the padded area."""
        image = np.zeros((50, 100, 3), dtype=np.uint8)
        result = keep_aspect_resize_and_pad(image, 100, 100, border_value=7)

        assert result.image[0, 0, 0] == 7
        assert result.image[-1, -1, 2] == 7

    def test_empty_image_rejected(self):
        """Zero-sized images cannot be letterboxed."""
        with pytest.raises(InvalidInputError):
            keep_aspect_resize_and_pad(np.zeros((0, 10, 3), dtype=np.uint8), 32, 32)


class TestTensorConversion:
    """Model input tensors."""

    def test_tensor_shape_and_range(self, wide_image):
        """Tensors are NHWC float32 in [-1, 1] with the letterbox padding attached."""
        pack = convert_image_to_tensor(wide_image, 128, 128)

        assert pack.tensor.shape == (1, 128, 128, 3)
        assert pack.tensor.dtype == np.float32
        assert pack.tensor.min() >= -1.0
        assert pack.tensor.max() <= 1.0
        assert pack.padding[0] > 0
        assert pack.padding[0] == pytest.approx(pack.padding[1], abs=1 / 128)

    def test_bgr_is_converted_to_rgb(self):
        """A pure blue BGR pixel lands in the last (blue) RGB channel."""
        image = np.zeros((8, 8, 3), dtype=np.uint8)
        image[..., 0] = 255
        pack = convert_image_to_tensor(image, 8, 8)

        assert pack.tensor[0, 4, 4, 2] == pytest.approx(1.0)
        assert pack.tensor[0, 4, 4, 0] == pytest.approx(-1.0)

    def test_gray_and_bgra_inputs(self):
        """Gray and 4-channel images are accepted; alpha is dropped."""
        gray = np.full((10, 10), 128, dtype=np.uint8)
        bgra = np.full((10, 10, 4), 128, dtype=np.uint8)

        assert to_rgb(gray).shape == (10, 10, 3)
        assert to_rgb(bgra).shape == (10, 10, 3)

    def test_unsupported_channel_count(self):
        """Two-channel images are rejected."""
        with pytest.raises(InvalidInputError):
            to_rgb(np.zeros((4, 4, 2), dtype=np.uint8))

    def test_stretch_has_zero_padding(self, wide_image):
        """The stretch strategy never pads."""
        pack = stretch_image_to_tensor(wide_image, 64, 64)

        assert pack.tensor.shape == (1, 64, 64, 3)
        assert pack.padding == (0.0, 0.0, 0.0, 0.0)


class TestDecode:
    """OpenCV image decoding."""

    def test_decode_png_round_trip(self, sample_image):
        """Encoded PNG bytes decode back to the same BGR pixels."""
        ok, encoded = cv2.imencode(".png", sample_image)
        assert ok

        decoded = decode_image(encoded.tobytes())
        np.testing.assert_array_equal(decoded, sample_image)

    def test_garbage_bytes_raise(self):
        """Undecodable bytes raise InvalidInputError."""
        with pytest.raises(InvalidInputError):
            decode_image(b"definitely not an image")

    def test_empty_bytes_raise(self):
        """Empty input raises InvalidInputError."""
        with pytest.raises(InvalidInputError):
            decode_image(b"")


class TestInversion:
    """Mapping letterboxed coordinates back to the original image."""

    def test_unpad_law(self):
        """(c - before) / (1 - before - after)."""
        assert unpad_coordinate(0.25, 0.25, 0.25) == pytest.approx(0.0)
        assert unpad_coordinate(0.75, 0.25, 0.25) == pytest.approx(1.0)
        assert unpad_coordinate(0.5, 0.25, 0.25) == pytest.approx(0.5)

    def test_vertical_padding_keeps_center(self):
        """Padding (0.1, 0.1, 0, 0) maps y=0.5 to 0.5."""
        assert unpad_coordinate(0.5, 0.1, 0.1) == pytest.approx(0.5)
        assert unpad_coordinate(0.1, 0.1, 0.1) == pytest.approx(0.0)
        assert unpad_coordinate(0.9, 0.1, 0.1) == pytest.approx(1.0)

    @pytest.mark.parametrize("portrait", [False, True], ids=["landscape", "portrait"])
    def test_letterboxed_point_inverts_to_source(self, portrait):
        """A marked region found on the canvas inverts to its source position."""
        image = np.zeros((150, 300), dtype=np.uint8)
        image[60:90, 200:230] = 255
        expected_x, expected_y = 215 / 300, 75 / 150
        if portrait:
            image = np.ascontiguousarray(image.T)
            expected_x, expected_y = expected_y, expected_x

        result = keep_aspect_resize_and_pad(image, 128, 128)
        pad_top, pad_bottom, pad_left, pad_right = result.padding
        if portrait:
            assert pad_left > 0 and pad_top == 0
        else:
            assert pad_top > 0 and pad_left == 0

        rows, cols = np.nonzero(result.image > 127)
        canvas_x = (cols.mean() + 0.5) / result.width
        canvas_y = (rows.mean() + 0.5) / result.height

        assert unpad_coordinate(canvas_x, pad_left, pad_right) == pytest.approx(expected_x, abs=0.02)
        assert unpad_coordinate(canvas_y, pad_top, pad_bottom) == pytest.approx(expected_y, abs=0.02)

    def test_degenerate_padding_is_finite(self):
        """Padding that consumes the whole axis does not divide by zero."""
        value = unpad_coordinate(0.6, 0.5, 0.5)

        assert math.isfinite(value)
        assert value == pytest.approx(0.1 / MIN_UNPAD_DENOMINATOR)

    def test_unpad_accepts_arrays(self):
        """Vectorized inversion matches the scalar law."""
        values = np.array([0.25, 0.5, 0.75])
        out = unpad_coordinate(values, 0.25, 0.25)

        np.testing.assert_allclose(out, [0.0, 0.5, 1.0])

    def test_remove_letterbox_detection(self):
        """Boxes and keypoints are inverted per axis."""
        det = Detection(RectF(0.2, 0.25, 0.6, 0.75), 0.9, (0.4, 0.5))
        (out,) = remove_letterbox([det], (0.25, 0.25, 0.0, 0.0))

        assert out.bounding_box.xmin == pytest.approx(0.2)
        assert out.bounding_box.ymin == pytest.approx(0.0)
        assert out.bounding_box.ymax == pytest.approx(1.0)
        assert out.keypoints_xy == pytest.approx((0.4, 0.5))
        assert out.score == 0.9

    def test_zero_padding_is_identity(self):
        """No padding returns the detections unchanged."""
        det = Detection(RectF(0.1, 0.1, 0.2, 0.2), 0.8, ())

        assert remove_letterbox([det], (0.0, 0.0, 0.0, 0.0)) == [det]


class TestCrops:
    """Rotated and axis-aligned crops."""

    def test_aligned_square_without_rotation(self):
        """theta=0 reproduces a plain centered crop."""
        image = np.arange(100 * 100, dtype=np.uint32).reshape(100, 100) % 251
        image = image.astype(np.uint8)
        crop = extract_aligned_square(image, 50.0, 50.0, 20.0, 0.0)

        assert crop.shape == (20, 20)
        np.testing.assert_array_equal(crop, image[40:60, 40:60])

    def test_aligned_square_rotation_follows_theta(self):
        """A 90 degree crop walks down the source's y axis along its own x axis."""
        image = np.zeros((100, 100), dtype=np.uint8)
        image[60:70, 45:55] = 255  # a blob below the center
        crop = extract_aligned_square(image, 50.0, 50.0, 40.0, math.pi / 2)

        # Crop x runs along +y in the source, so the blob shows up right of center.
        assert crop[20, 34] == 255
        assert crop[20, 5] == 0

    def test_aligned_square_out_of_bounds_is_black(self):
        """Areas outside the source are filled, not an error."""
        image = np.full((20, 20, 3), 255, dtype=np.uint8)
        crop = extract_aligned_square(image, 0.0, 0.0, 20.0, 0.3)

        assert crop.shape == (20, 20, 3)
        assert crop[0, 0].tolist() == [0, 0, 0]

    def test_aligned_square_zero_size(self):
        """A size that rounds to zero yields None."""
        image = np.zeros((10, 10), dtype=np.uint8)

        assert extract_aligned_square(image, 5.0, 5.0, 0.4, 0.0) is None

    def test_crop_rect_clamps_and_never_empty(self):
        """Out-of-range crops are clamped and keep at least one pixel."""
        image = np.zeros((10, 20, 3), dtype=np.uint8)

        assert crop_rect(image, -5, -5, 5, 5).shape == (5, 5, 3)
        assert crop_rect(image, 30, 30, 40, 40).shape == (1, 1, 3)

    def test_crop_from_normalized_roi(self):
        """Normalized rectangles are scaled to pixels."""
        image = np.zeros((100, 200), dtype=np.uint8)
        crop = crop_from_normalized_roi(image, RectF(0.25, 0.5, 0.75, 1.0))

        assert crop.shape == (50, 100)

    def test_face_detection_to_roi_is_square(self):
        """Expanded face ROIs are squared on the larger side."""
        roi = face_detection_to_roi(RectF(0.4, 0.3, 0.6, 0.7), 0.6)

        assert roi.width == pytest.approx(roi.height)
        assert roi.height == pytest.approx(0.4 * 1.6)
        assert roi.center == pytest.approx((0.5, 0.5))
