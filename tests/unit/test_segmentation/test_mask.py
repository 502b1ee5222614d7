"""
Tests for SegmentationMask resampling, output formats and maps.
"""

import numpy as np
import pytest

from lumen_facemesh.exceptions import InvalidInputError
from lumen_facemesh.segmentation import (
    MaskKind,
    SegmentationClass,
    SegmentationMask,
    SegmentationOutputFormat,
)


def _class_probs(height, width, channels=6, seed=0):
    rng = np.random.default_rng(seed)
    raw = rng.random((height, width, channels)).astype(np.float32)
    return raw / raw.sum(axis=-1, keepdims=True)


class TestConstruction:
    def test_binary_values_are_clipped(self):
        """Out-of-range probabilities are clamped into [0, 1]."""
        mask = SegmentationMask.binary([[-0.5, 0.3], [0.7, 1.5]], 2, 2)

        assert mask.data.tolist() == pytest.approx([[0.0, 0.3], [0.7, 1.0]])
        assert mask.kind is MaskKind.BINARY
        assert mask.channels == 1
        assert (mask.width, mask.height) == (2, 2)

    def test_multiclass_person_is_one_minus_background(self):
        probs = _class_probs(4, 4)
        mask = SegmentationMask.multiclass(probs, 4, 4)

        assert mask.is_multiclass
        assert mask.channels == 6
        np.testing.assert_allclose(mask.data, 1.0 - probs[..., 0], atol=1e-6)

    def test_non_2d_data_rejected(self):
        with pytest.raises(InvalidInputError):
            SegmentationMask.binary(np.zeros((2, 2, 2)), 2, 2)

    def test_multiclass_needs_3d(self):
        with pytest.raises(InvalidInputError):
            SegmentationMask.multiclass(np.zeros((2, 2)), 2, 2)


class TestClassMasks:
    def test_named_accessors(self):
        """Named accessors return the matching class channel."""
        probs = _class_probs(3, 3)
        mask = SegmentationMask.multiclass(probs, 3, 3)

        np.testing.assert_array_equal(mask.hair_mask(), probs[..., SegmentationClass.HAIR])
        np.testing.assert_array_equal(mask.clothes_mask(), probs[..., SegmentationClass.CLOTHES])
        np.testing.assert_array_equal(mask.background_mask(), probs[..., 0])

    def test_class_index_out_of_range(self):
        mask = SegmentationMask.multiclass(_class_probs(2, 2), 2, 2)

        with pytest.raises(InvalidInputError):
            mask.class_mask(6)
        with pytest.raises(InvalidInputError):
            mask.class_mask(-1)

    def test_binary_has_no_classes(self):
        """Class masks on a binary mask are an error."""
        mask = SegmentationMask.binary(np.zeros((2, 2)), 2, 2)

        with pytest.raises(InvalidInputError):
            mask.hair_mask()


class TestUpsample:
    """Padding removal and resizing."""

    def test_strips_letterbox_rows(self):
        """Padded rows are cut away before resizing to the original size."""
        data = np.zeros((4, 4), dtype=np.float32)
        data[1:3] = 1.0
        mask = SegmentationMask.binary(data, 8, 4, padding=(0.25, 0.25, 0.0, 0.0))

        up = mask.upsample()

        assert (up.width, up.height) == (8, 4)
        assert up.padding == (0.0, 0.0, 0.0, 0.0)
        np.testing.assert_allclose(up.data, 1.0)

    def test_explicit_target(self):
        mask = SegmentationMask.binary(np.full((4, 4), 0.25), 100, 100)
        up = mask.upsample(10, 6)

        assert up.data.shape == (6, 10)
        np.testing.assert_allclose(up.data, 0.25, atol=1e-6)

    def test_max_size_caps_larger_side(self):
        """The larger side is capped and the aspect ratio kept."""
        mask = SegmentationMask.binary(np.zeros((8, 8)), 400, 200)

        assert mask.upsample(max_size=100).data.shape == (50, 100)
        assert mask.upsample(max_size=0).data.shape == (200, 400)

    def test_default_cap_from_max_output_size(self):
        mask = SegmentationMask.binary(np.zeros((8, 8)), 400, 200, max_output_size=40)

        up = mask.upsample()
        assert (up.width, up.height) == (40, 20)
        assert up.max_output_size == 40

    def test_multiclass_stays_a_distribution(self):
        """Resized class probabilities still sum to one per pixel."""
        mask = SegmentationMask.multiclass(_class_probs(8, 8), 32, 24)
        up = mask.upsample()

        assert up.is_multiclass
        assert up.class_mask(0).shape == (24, 32)
        sums = np.stack([up.class_mask(i) for i in range(6)], axis=-1).sum(axis=-1)
        np.testing.assert_allclose(sums, 1.0, atol=1e-5)

    def test_invalid_target(self):
        mask = SegmentationMask.binary(np.zeros((2, 2)), 2, 2)

        with pytest.raises(InvalidInputError):
            mask.upsample(-4, 4)


class TestOutputFormats:
    def setup_method(self):
        self.mask = SegmentationMask.binary([[0.0, 0.5], [0.49, 1.0]], 2, 2)

    def test_to_binary_threshold_is_inclusive(self):
        """Pixels equal to the threshold count as foreground."""
        assert self.mask.to_binary().tolist() == [[0, 255], [0, 255]]
        assert self.mask.to_binary(0.4).tolist() == [[0, 255], [255, 255]]

    def test_to_uint8(self):
        out = self.mask.to_uint8()

        assert out.dtype == np.uint8
        assert out[0, 0] == 0
        assert out[1, 1] == 255

    def test_to_rgba_threshold(self):
        """RGB colors get an opaque alpha."""
        rgba = self.mask.to_rgba(foreground=(255, 0, 0), background=(0, 0, 255, 0))

        assert rgba.shape == (2, 2, 4)
        assert rgba[1, 1].tolist() == [255, 0, 0, 255]
        assert rgba[0, 0].tolist() == [0, 0, 255, 0]

    def test_to_rgba_blend(self):
        """A negative threshold blends by probability."""
        rgba = self.mask.to_rgba(threshold=-1)

        assert rgba[0, 1].tolist() == [128, 128, 128, 128]
        assert rgba[1, 1].tolist() == [255, 255, 255, 255]

    def test_to_rgba_bad_color(self):
        with pytest.raises(InvalidInputError):
            self.mask.to_rgba(foreground=(1, 2))

    def test_to_format(self):
        assert self.mask.to_format(SegmentationOutputFormat.FLOAT32).dtype == np.float32
        assert self.mask.to_format(SegmentationOutputFormat.UINT8).dtype == np.uint8
        assert self.mask.to_format(SegmentationOutputFormat.BINARY).max() == 255


class TestMaps:
    def test_multiclass_map_round_trip(self):
        """A multiclass mask survives to_map/from_map with its classes."""
        probs = _class_probs(3, 4)
        mask = SegmentationMask.multiclass(probs, 40, 30, (0.1, 0.1, 0.0, 0.0), 64)

        restored = SegmentationMask.from_map(mask.to_map())

        assert restored.is_multiclass
        assert (restored.width, restored.height) == (4, 3)
        assert restored.padding == pytest.approx(mask.padding)
        assert restored.max_output_size == 64
        np.testing.assert_allclose(restored.hair_mask(), mask.hair_mask(), atol=1e-6)

    def test_binary_map_fields(self):
        data = SegmentationMask.binary(np.zeros((2, 3)), 3, 2).to_map()

        assert data["kind"] == "binary"
        assert len(data["data"]) == 6
        assert "class_data" not in data

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda m: m.pop("width"),
            lambda m: m.update(kind="heatmap"),
            lambda m: m.update(data=[0.0]),
            lambda m: m.update(width=0),
            lambda m: m.update(width="two"),
            lambda m: m.update(height=None),
            lambda m: m.update(original_width="wide"),
            lambda m: m.update(max_output_size=[1024]),
            lambda m: m.update(data=[[0.0, 0.0], [0.0]]),
            lambda m: m.update(data="opaque"),
            lambda m: m.update(padding=["top", 0, 0, 0]),
            lambda m: m.update(padding=0.1),
        ],
    )
    def test_malformed_maps(self, mutate):
        """Missing keys, unknown kinds, non-numeric fields and wrong sizes raise InvalidInputError."""
        data = SegmentationMask.binary(np.zeros((2, 2)), 2, 2).to_map()
        mutate(data)

        with pytest.raises(InvalidInputError):
            SegmentationMask.from_map(data)

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda m: m.update(channels="six"),
            lambda m: m.update(channels=0),
            lambda m: m.update(class_data=[[0.5, 0.5], [0.5]]),
            lambda m: m.pop("class_data"),
        ],
    )
    def test_malformed_multiclass_maps(self, mutate):
        data = SegmentationMask.multiclass(np.full((2, 2, 2), 0.5), 2, 2).to_map()
        mutate(data)

        with pytest.raises(InvalidInputError):
            SegmentationMask.from_map(data)

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidInputError):
            SegmentationMask.from_map([("kind", "binary")])
