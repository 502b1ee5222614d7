"""
Lumen Face Mesh.

Post-processing and orchestration for on-device face analysis models.

Features:
- Anchor-based face detection decoding with weighted NMS
- Letterbox-aware coordinate inversion
- 468-point face mesh and iris refinement
- Face identity embeddings and matching
- Binary and multiclass selfie segmentation masks
- Pooled, thread-safe model execution on ONNX Runtime
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("lumen-facemesh")
except PackageNotFoundError:
    # package is not installed
    __version__ = "0.0.0"

from .exceptions import FaceMeshError
from .general_face import FaceDetector, FaceMeshService, PipelineStats
from .resources import FaceMeshConfig, SegmentationConfig
from .segmentation import SegmentationMask, SelfieSegmentation
from .types import Detection, Face, FaceDetectionMode, FaceKeypoint

__all__ = [
    "FaceMeshError",
    "FaceDetector",
    "FaceMeshService",
    "PipelineStats",
    "FaceMeshConfig",
    "SegmentationConfig",
    "SegmentationMask",
    "SelfieSegmentation",
    "Detection",
    "Face",
    "FaceDetectionMode",
    "FaceKeypoint",
]
