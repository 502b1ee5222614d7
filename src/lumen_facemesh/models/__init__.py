from .detection import MODEL_FILENAMES, FaceDetectionModel
from .embedding import (
    EMBEDDING_MODEL,
    FaceEmbeddingModel,
    compute_embedding_alignment,
    cosine_similarity,
    euclidean_distance,
)
from .face_landmark import FACE_LANDMARK_MODEL, FaceLandmarkModel, estimate_aligned_face
from .iris_landmark import IRIS_LANDMARK_MODEL, IrisLandmarkModel

__all__ = [
    "MODEL_FILENAMES",
    "FaceDetectionModel",
    "EMBEDDING_MODEL",
    "FaceEmbeddingModel",
    "compute_embedding_alignment",
    "cosine_similarity",
    "euclidean_distance",
    "FACE_LANDMARK_MODEL",
    "FaceLandmarkModel",
    "estimate_aligned_face",
    "IRIS_LANDMARK_MODEL",
    "IrisLandmarkModel",
]
