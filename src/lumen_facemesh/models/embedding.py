"""
Face identity embedding stage and vector similarity helpers.

The embedding model takes a 112x112 crop aligned on the detector's eye
keypoints and produces a 192-d vector, which is L2-normalized before it is
returned so that cosine similarity reduces to a dot product.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import numpy as np
import numpy.typing as npt

from ..backends.base import InferenceEngine
from ..exceptions import InvalidInputError, ModelMismatchError
from ..processing.coordinates import convert_image_to_tensor
from ..types import EMBEDDING_DIMENSION, AlignedRoi, Point

EMBEDDING_MODEL = "mobilefacenet.onnx"

_EYE_DISTANCE_SCALE = 2.5
_VERTICAL_OFFSET = 0.15


def compute_embedding_alignment(left_eye: Point, right_eye: Point) -> AlignedRoi:
    """Square crop around the eyes, shifted down the face toward the mouth."""
    dx = right_eye.x - left_eye.x
    dy = right_eye.y - left_eye.y
    theta = math.atan2(dy, dx)
    size = math.hypot(dx, dy) * _EYE_DISTANCE_SCALE

    eye_cx = (left_eye.x + right_eye.x) * 0.5
    eye_cy = (left_eye.y + right_eye.y) * 0.5
    offset = size * _VERTICAL_OFFSET
    return AlignedRoi(
        cx=eye_cx - offset * math.sin(theta),
        cy=eye_cy + offset * math.cos(theta),
        size=size,
        theta=theta,
    )


def l2_normalize(vector: npt.ArrayLike) -> npt.NDArray[np.float32]:
    embedding = np.asarray(vector, dtype=np.float32).reshape(-1).copy()
    norm = float(np.linalg.norm(embedding))
    if norm > 0:
        embedding /= norm
    return embedding


def _as_pair(
    a: Sequence[float] | npt.NDArray[Any], b: Sequence[float] | npt.NDArray[Any]
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        raise InvalidInputError(
            f"Embedding dimensions must match: {va.size} vs {vb.size}"
        )
    return va, vb


def cosine_similarity(
    a: Sequence[float] | npt.NDArray[Any], b: Sequence[float] | npt.NDArray[Any]
) -> float:
    """Cosine of the angle between two vectors; 0.0 if either has zero norm."""
    va, vb = _as_pair(a, b)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom <= 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def euclidean_distance(
    a: Sequence[float] | npt.NDArray[Any], b: Sequence[float] | npt.NDArray[Any]
) -> float:
    va, vb = _as_pair(a, b)
    return float(np.linalg.norm(va - vb))


class FaceEmbeddingModel:
    """Embedding extractor bound to one engine. Not safe for concurrent calls."""

    def __init__(self, engine: InferenceEngine, color_order: str = "bgr") -> None:
        self.engine = engine
        self.color_order = color_order
        self.input_height, self.input_width = engine.input_size

    @property
    def embedding_dimension(self) -> int:
        shape = self.engine.output_shapes[0]
        return int(shape[-1]) if shape and shape[-1] > 0 else -1

    def __call__(self, face_crop: npt.NDArray[Any]) -> npt.NDArray[np.float32]:
        pack = convert_image_to_tensor(
            face_crop, self.input_width, self.input_height, self.color_order
        )
        output = self.engine.run(pack.tensor)[0]
        if output.size != EMBEDDING_DIMENSION:
            raise ModelMismatchError(
                f"Embedding model produced {output.size} values, expected {EMBEDDING_DIMENSION}"
            )
        return l2_normalize(output)

    def close(self) -> None:
        self.engine.close()
