"""
BlazeFace-style face detector stage.

Pipeline per call: letterbox the image to the detector input, run the engine,
decode anchor-relative boxes, weighted NMS in letterboxed space, then map the
survivors back to original-image normalized coordinates.
"""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
import numpy.typing as npt

from ..backends.base import InferenceEngine
from ..exceptions import ModelMismatchError
from ..processing.anchors import ANCHOR_OPTIONS, anchors_for
from ..processing.coordinates import convert_image_to_tensor, remove_letterbox
from ..processing.decoder import decode_detections
from ..processing.nms import non_max_suppression
from ..types import (
    MIN_DETECTION_SCORE,
    MIN_SUPPRESSION_THRESHOLD,
    Detection,
    DetectionModelVariant,
    ImageTensor,
)

logger = logging.getLogger(__name__)

MODEL_FILENAMES: dict[DetectionModelVariant, str] = {
    DetectionModelVariant.FRONT_CAMERA: "face_detection_front.onnx",
    DetectionModelVariant.BACK_CAMERA: "face_detection_back.onnx",
    DetectionModelVariant.SHORT_RANGE: "face_detection_short_range.onnx",
    DetectionModelVariant.FULL_RANGE: "face_detection_full_range.onnx",
    DetectionModelVariant.FULL_RANGE_SPARSE: "face_detection_full_range_sparse.onnx",
}


class FaceDetectionModel:
    """Detector bound to one engine. Not safe for concurrent calls."""

    def __init__(
        self,
        engine: InferenceEngine,
        variant: DetectionModelVariant = DetectionModelVariant.BACK_CAMERA,
        min_score: float = MIN_DETECTION_SCORE,
        nms_threshold: float = MIN_SUPPRESSION_THRESHOLD,
        color_order: str = "bgr",
    ) -> None:
        options = ANCHOR_OPTIONS[variant]
        in_h, in_w = engine.input_size
        if (in_h, in_w) != (options.input_size_height, options.input_size_width):
            raise ModelMismatchError(
                f"{variant.value} detector expects "
                f"{options.input_size_width}x{options.input_size_height} input, "
                f"engine takes {in_w}x{in_h}"
            )
        self.engine = engine
        self.variant = variant
        self.min_score = min_score
        self.nms_threshold = nms_threshold
        self.color_order = color_order
        self.input_width = in_w
        self.input_height = in_h
        self._anchors = anchors_for(variant)

    @property
    def num_anchors(self) -> int:
        return int(self._anchors.shape[0])

    def __call__(self, image: npt.NDArray[Any]) -> list[Detection]:
        pack = convert_image_to_tensor(
            image, self.input_width, self.input_height, self.color_order
        )
        return self.detect_tensor(pack)

    def detect_tensor(self, pack: ImageTensor) -> list[Detection]:
        outputs = self.engine.run(pack.tensor)
        raw_boxes, raw_scores = self._split_outputs(outputs)

        candidates = decode_detections(
            raw_boxes,
            raw_scores,
            self._anchors,
            self.input_width,
            self.input_height,
            min_score=self.min_score,
        )
        pruned = non_max_suppression(
            candidates, self.nms_threshold, self.min_score, weighted=True
        )
        logger.debug(
            "Detector kept %d of %d candidates", len(pruned), len(candidates)
        )
        return remove_letterbox(pruned, pack.padding)

    def _split_outputs(
        self, outputs: list[npt.NDArray[np.float32]]
    ) -> tuple[npt.NDArray[np.float32], npt.NDArray[np.float32]]:
        n = self.num_anchors
        scores = next((o for o in outputs if o.size == n), None)
        boxes = max(outputs, key=lambda o: o.size) if outputs else None
        if scores is None or boxes is None or boxes.size < n * 4 or boxes.size % n:
            raise ModelMismatchError(
                f"Detector outputs {[o.shape for o in outputs]} do not match "
                f"{n} anchors"
            )
        return boxes, scores

    def close(self) -> None:
        self.engine.close()
