from .config import (
    BackendSettings,
    DetectionSettings,
    FaceMeshConfig,
    ResizeStrategy,
    SegmentationConfig,
    SegmentationModelVariant,
)
from .loader import ModelResources

__all__ = [
    "BackendSettings",
    "DetectionSettings",
    "FaceMeshConfig",
    "ResizeStrategy",
    "SegmentationConfig",
    "SegmentationModelVariant",
    "ModelResources",
]
