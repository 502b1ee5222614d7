"""
Selfie segmentation engine.

Wraps one segmentation model in a size-1 InterpreterPool and turns its raw
output into a :class:`SegmentationMask` at model resolution:

- single-channel heads already emit a sigmoid probability, clamped to [0, 1];
- the 6-class head emits logits, softmaxed per pixel, with the person
  probability taken as ``1 - P(background)``.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any

import numpy as np
import numpy.typing as npt

from ..backends.base import InferenceEngine
from ..backends.factory import create_engine
from ..backends.pool import InterpreterPool
from ..exceptions import (
    FaceMeshError,
    ImageTooSmallError,
    InferenceError,
    InvalidInputError,
    ModelMismatchError,
    UseAfterDisposeError,
)
from ..processing.coordinates import (
    convert_image_to_tensor,
    decode_image,
    stretch_image_to_tensor,
)
from ..resources.config import ResizeStrategy, SegmentationConfig, SegmentationModelVariant
from ..resources.loader import ModelResources
from ..types import MIN_SEGMENTATION_INPUT_SIZE
from .mask import BinaryMaskData, MulticlassMaskData, SegmentationMask

logger = logging.getLogger(__name__)

SEGMENTATION_MODEL_FILES: dict[SegmentationModelVariant, str] = {
    SegmentationModelVariant.GENERAL: "selfie_segmenter.onnx",
    SegmentationModelVariant.LANDSCAPE: "selfie_segmenter_landscape.onnx",
    SegmentationModelVariant.MULTICLASS: "selfie_multiclass.onnx",
}

# (width, height)
SEGMENTATION_INPUT_SIZES: dict[SegmentationModelVariant, tuple[int, int]] = {
    SegmentationModelVariant.GENERAL: (256, 256),
    SegmentationModelVariant.LANDSCAPE: (256, 144),
    SegmentationModelVariant.MULTICLASS: (256, 256),
}

SEGMENTATION_OUTPUT_CHANNELS: dict[SegmentationModelVariant, int] = {
    SegmentationModelVariant.GENERAL: 1,
    SegmentationModelVariant.LANDSCAPE: 1,
    SegmentationModelVariant.MULTICLASS: 6,
}


def softmax(x: npt.NDArray[np.float32], axis: int = -1) -> npt.NDArray[np.float32]:
    """Numerically stable softmax."""
    x_max = np.max(x, axis=axis, keepdims=True)
    e = np.exp(x - x_max)
    return (e / np.sum(e, axis=axis, keepdims=True)).astype(np.float32)


def _to_hwc(raw: npt.NDArray[np.float32], channels: int) -> npt.NDArray[np.float32]:
    """Bring a raw output to ``[H, W, C]``, accepting NHWC, NCHW or a bare plane."""
    arr = np.asarray(raw, dtype=np.float32)
    if arr.ndim == 4:
        arr = arr[0]
    if arr.ndim == 2 and channels == 1:
        return arr[..., np.newaxis]
    if arr.ndim == 3:
        if arr.shape[-1] == channels:
            return arr
        if arr.shape[0] == channels:
            return np.transpose(arr, (1, 2, 0))
    raise ModelMismatchError(
        f"Segmentation output shape {tuple(raw.shape)} does not carry {channels} channel(s)"
    )


class SelfieSegmentation:
    """Person segmentation over a single pooled engine.

    Safe to call from multiple threads; inferences are serialized by the pool.

    Example:
        ```python
        seg = SelfieSegmentation(engine, SegmentationConfig(model="multiclass"))
        mask = seg.segment(image).upsample()
        hair = mask.hair_mask()
        seg.dispose()
        ```
    """

    def __init__(
        self, engine: InferenceEngine, config: SegmentationConfig | None = None
    ) -> None:
        self.config = config or SegmentationConfig()
        self.channels = SEGMENTATION_OUTPUT_CHANNELS[self.config.model]
        if self.config.validate_model:
            self._validate_engine(engine)
        self.input_height, self.input_width = engine.input_size
        self._pool: InterpreterPool[InferenceEngine] = InterpreterPool(
            [engine], name="segmentation", close=lambda e: e.close()
        )
        self._dispose_lock = threading.Lock()
        self._disposed = False

    @classmethod
    def from_resources(
        cls,
        resources: ModelResources,
        config: SegmentationConfig | None = None,
        runtime: str = "onnxrt",
        **engine_options: Any,
    ) -> SelfieSegmentation:
        """Build from a model directory using the registered engine runtime."""
        config = config or SegmentationConfig()
        path: Path = resources.get_model_file(SEGMENTATION_MODEL_FILES[config.model])
        width, height = SEGMENTATION_INPUT_SIZES[config.model]
        engine = create_engine(
            path, runtime, fallback_input_size=(height, width), **engine_options
        )
        try:
            return cls(engine, config)
        except Exception:
            engine.close()
            raise

    def _validate_engine(self, engine: InferenceEngine) -> None:
        shape = tuple(engine.input_shape)
        if len(shape) != 4 or shape[3] != 3:
            raise ModelMismatchError(
                f"Segmentation model input must be [1, H, W, 3], got {list(shape)}"
            )
        expected_w, expected_h = SEGMENTATION_INPUT_SIZES[self.config.model]
        in_h, in_w = engine.input_size
        if in_h > 0 and in_w > 0 and (in_w, in_h) != (expected_w, expected_h):
            raise ModelMismatchError(
                f"{self.config.model.value} segmentation expects "
                f"{expected_w}x{expected_h} input, engine takes {in_w}x{in_h}"
            )

        outputs = engine.output_shapes
        if not outputs or len(outputs[0]) != 4:
            raise ModelMismatchError(
                f"Segmentation output must be 4-D, got {[list(s) for s in outputs]}"
            )
        out = outputs[0]
        if out[3] != self.channels and out[1] != self.channels and out[3] > 0:
            raise ModelMismatchError(
                f"{self.config.model.value} segmentation expects {self.channels} "
                f"output channel(s), got shape {list(out)}"
            )

    # ------------------------------------------------------------------ #
    # Inference
    # ------------------------------------------------------------------ #

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _ensure_alive(self) -> None:
        if self._disposed:
            raise UseAfterDisposeError("SelfieSegmentation has been disposed")

    def segment(self, image: npt.NDArray[Any]) -> SegmentationMask:
        """Segment one image into a mask at model resolution.

        Raises:
            UseAfterDisposeError: After :meth:`dispose`.
            InvalidInputError: Empty image.
            ImageTooSmallError: Either side below 16 px.
            InferenceError: The engine failed.
        """
        self._ensure_alive()
        if image is None or image.size == 0 or image.ndim < 2:
            raise InvalidInputError("Input image is empty")
        height, width = image.shape[:2]
        if width < MIN_SEGMENTATION_INPUT_SIZE or height < MIN_SEGMENTATION_INPUT_SIZE:
            raise ImageTooSmallError(
                f"Image {width}x{height} is smaller than the minimum "
                f"{MIN_SEGMENTATION_INPUT_SIZE}x{MIN_SEGMENTATION_INPUT_SIZE}"
            )

        if self.config.resize_strategy is ResizeStrategy.STRETCH:
            pack = stretch_image_to_tensor(
                image, self.input_width, self.input_height, self.config.input_color_order
            )
        else:
            pack = convert_image_to_tensor(
                image, self.input_width, self.input_height, self.config.input_color_order
            )

        start = time.time()
        try:
            with self._pool.lease() as engine:
                outputs = engine.run(pack.tensor)
        except FaceMeshError:
            raise
        except Exception as exc:
            raise InferenceError(f"Segmentation inference failed: {exc}") from exc
        logger.debug(
            "Segmented %dx%d image in %.1f ms", width, height, (time.time() - start) * 1000
        )

        return self._build_mask(outputs[0], width, height, pack.padding)

    __call__ = segment

    def segment_bytes(self, data: bytes) -> SegmentationMask:
        """Decode encoded image bytes with OpenCV, then segment."""
        self._ensure_alive()
        return self.segment(decode_image(data))

    def _build_mask(
        self,
        raw: npt.NDArray[np.float32],
        width: int,
        height: int,
        padding: tuple[float, float, float, float],
    ) -> SegmentationMask:
        hwc = _to_hwc(raw, self.channels)
        if self.channels == 1:
            payload = BinaryMaskData(np.clip(hwc[..., 0], 0.0, 1.0).astype(np.float32))
        else:
            payload = MulticlassMaskData.from_probabilities(softmax(hwc, axis=-1))
        return SegmentationMask(
            payload, width, height, padding, self.config.max_output_size
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def dispose(self) -> None:
        """Release the engine. Safe to call more than once."""
        with self._dispose_lock:
            if self._disposed:
                return
            self._disposed = True
        self._pool.dispose()
        logger.info("Selfie segmentation disposed")
