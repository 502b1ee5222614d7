from .face_detector import DetectionWithSegmentation, FaceDetector
from .service import FaceMeshService, ServiceRequest, ServiceResponse
from .stats import PipelineStats

__all__ = [
    "DetectionWithSegmentation",
    "FaceDetector",
    "FaceMeshService",
    "ServiceRequest",
    "ServiceResponse",
    "PipelineStats",
]
