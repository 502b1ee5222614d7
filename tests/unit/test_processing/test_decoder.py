"""
Tests for anchor generation and detection decoding.
"""

import numpy as np
import pytest

from conftest import CENTER_ANCHOR, detector_outputs
from lumen_facemesh.exceptions import ModelMismatchError
from lumen_facemesh.processing.anchors import ANCHOR_OPTIONS, anchors_for, generate_anchors
from lumen_facemesh.processing.decoder import decode_detections, sigmoid_clipped
from lumen_facemesh.types import DetectionModelVariant


class TestAnchors:
    """SSD anchor layout per detector variant."""

    @pytest.mark.parametrize(
        "variant,count",
        [
            (DetectionModelVariant.FRONT_CAMERA, 896),
            (DetectionModelVariant.SHORT_RANGE, 896),
            (DetectionModelVariant.BACK_CAMERA, 896),
            (DetectionModelVariant.FULL_RANGE, 2304),
            (DetectionModelVariant.FULL_RANGE_SPARSE, 2304),
        ],
    )
    def test_anchor_counts(self, variant, count):
        """Each variant produces its documented anchor count."""
        anchors = anchors_for(variant)

        assert anchors.shape == (count, 2)
        assert anchors.dtype == np.float32

    def test_first_anchor_centers(self):
        """The first grid cell is centered at half a stride."""
        anchors = generate_anchors(ANCHOR_OPTIONS[DetectionModelVariant.FRONT_CAMERA])

        np.testing.assert_allclose(anchors[0], [0.5 / 16, 0.5 / 16])
        np.testing.assert_allclose(anchors[1], anchors[0])
        # 16x16 grid with two anchors per cell, then the 8x8 grid.
        np.testing.assert_allclose(anchors[512], [0.5 / 8, 0.5 / 8])

    def test_known_center_anchor(self):
        """Anchor 272 is the cell at (8, 8) of the first grid."""
        anchors = anchors_for(DetectionModelVariant.FRONT_CAMERA)

        np.testing.assert_allclose(anchors[CENTER_ANCHOR], [0.53125, 0.53125])

    def test_all_centers_in_unit_square(self):
        anchors = anchors_for(DetectionModelVariant.FULL_RANGE)

        assert anchors.min() > 0.0
        assert anchors.max() < 1.0


class TestSigmoid:
    """Clipped logistic function."""

    def test_scalar(self):
        """sigmoid(0) == 0.5 and scalars come back as float."""
        value = sigmoid_clipped(0.0)

        assert isinstance(value, float)
        assert value == 0.5

    def test_extreme_values_do_not_overflow(self):
        """Huge logits saturate without warnings."""
        with np.errstate(over="raise"):
            values = sigmoid_clipped(np.array([-1e6, 1e6]))

        assert values[0] == pytest.approx(0.0, abs=1e-30)
        assert values[1] == pytest.approx(1.0)

    def test_clip_limit_applies(self):
        """Logits beyond the limit behave like the limit."""
        assert sigmoid_clipped(500.0, limit=2.0) == pytest.approx(sigmoid_clipped(2.0))


class TestDecodeDetections:
    """Anchor-relative box decoding."""

    def setup_method(self):
        self.anchors = anchors_for(DetectionModelVariant.FRONT_CAMERA)

    def test_decodes_single_face(self):
        """One confident anchor yields one box centered on it."""
        boxes, scores = detector_outputs()
        detections = decode_detections(boxes, scores, self.anchors, 128, 128, min_score=0.5)

        assert len(detections) == 1
        det = detections[0]
        assert det.score == pytest.approx(sigmoid_clipped(5.0))
        assert det.bounding_box.xmin == pytest.approx(0.53125 - 0.25)
        assert det.bounding_box.xmax == pytest.approx(0.53125 + 0.25)
        assert det.num_keypoints == 6
        assert det.keypoint(0) == pytest.approx((0.53125 - 0.125, 0.53125 - 0.125))

    def test_without_min_score_keeps_every_valid_box(self):
        """Score filtering is optional; empty boxes are always dropped."""
        boxes, scores = detector_outputs()
        detections = decode_detections(boxes, scores, self.anchors, 128, 128)

        # Only the one anchor has a non-zero width and height.
        assert len(detections) == 1

    def test_padding_maps_to_original_space(self):
        """With padding, coordinates are unpadded per axis."""
        boxes, scores = detector_outputs()
        det = decode_detections(
            boxes, scores, self.anchors, 128, 128, padding=(0.25, 0.25, 0.0, 0.0)
        )[0]

        assert det.bounding_box.ymin == pytest.approx((0.28125 - 0.25) / 0.5)
        assert det.bounding_box.xmin == pytest.approx(0.28125)

    def test_score_count_mismatch(self):
        """A score tensor of the wrong size is a model mismatch."""
        boxes, _ = detector_outputs()

        with pytest.raises(ModelMismatchError):
            decode_detections(boxes, np.zeros(10), self.anchors, 128, 128)

    def test_short_regressor_rows(self):
        """Regressor rows need at least a box."""
        with pytest.raises(ModelMismatchError):
            decode_detections(np.zeros((896, 3)), np.zeros(896), self.anchors, 128, 128)

    def test_output_order_follows_anchor_order(self):
        """Detections come back in anchor order, not score order."""
        boxes, scores = detector_outputs(((100, 1.0, 20.0), (700, 4.0, 20.0)))
        detections = decode_detections(boxes, scores, self.anchors, 128, 128, min_score=0.5)

        assert [round(d.score, 4) for d in detections] == [
            round(sigmoid_clipped(1.0), 4),
            round(sigmoid_clipped(4.0), 4),
        ]
