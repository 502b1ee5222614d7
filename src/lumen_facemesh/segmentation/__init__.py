from .engine import (
    SEGMENTATION_INPUT_SIZES,
    SEGMENTATION_MODEL_FILES,
    SEGMENTATION_OUTPUT_CHANNELS,
    SelfieSegmentation,
)
from .mask import (
    BinaryMaskData,
    MaskKind,
    MulticlassMaskData,
    SegmentationClass,
    SegmentationMask,
    SegmentationOutputFormat,
)

__all__ = [
    "SEGMENTATION_INPUT_SIZES",
    "SEGMENTATION_MODEL_FILES",
    "SEGMENTATION_OUTPUT_CHANNELS",
    "SelfieSegmentation",
    "BinaryMaskData",
    "MaskKind",
    "MulticlassMaskData",
    "SegmentationClass",
    "SegmentationMask",
    "SegmentationOutputFormat",
]
