"""
Dense face mesh stage (468 points).

The mesh model sees a rotation-normalized square crop around the face.
``estimate_aligned_face`` derives that square from three detector keypoints,
and ``transform_mesh_to_absolute`` maps crop-normalized predictions back into
original-image pixels.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import numpy as np
import numpy.typing as npt

from ..backends.base import InferenceEngine
from ..exceptions import ModelMismatchError
from ..processing.coordinates import convert_image_to_tensor
from ..processing.landmarks import unpack_landmarks
from ..types import MESH_POINT_COUNT, AlignedRoi, Point

FACE_LANDMARK_MODEL = "face_landmark.onnx"

# Crop size relative to facial distances.
_MOUTH_SIZE_FACTOR = 3.6
_EYE_SIZE_FACTOR = 4.0
_MOUTH_SHIFT = 0.1


def estimate_aligned_face(left_eye: Point, right_eye: Point, mouth: Point) -> AlignedRoi:
    """Square face region, rotated so the eyes lie on the crop's x axis."""
    dx = right_eye.x - left_eye.x
    dy = right_eye.y - left_eye.y
    theta = math.atan2(dy, dx)

    eye_cx = (left_eye.x + right_eye.x) * 0.5
    eye_cy = (left_eye.y + right_eye.y) * 0.5
    eye_dist = math.hypot(dx, dy)
    mouth_dist = math.hypot(mouth.x - eye_cx, mouth.y - eye_cy)

    size = max(mouth_dist * _MOUTH_SIZE_FACTOR, eye_dist * _EYE_SIZE_FACTOR)
    cx = eye_cx + (mouth.x - eye_cx) * _MOUTH_SHIFT
    cy = eye_cy + (mouth.y - eye_cy) * _MOUTH_SHIFT
    return AlignedRoi(cx=cx, cy=cy, size=size, theta=theta)


def transform_mesh_to_absolute(
    points: Sequence[Point], roi: AlignedRoi
) -> tuple[Point, ...]:
    """Invert the aligned crop: crop-normalized points to image pixels.

    z is scaled by the crop size so depth stays in pixel units.
    """
    sct = roi.size * math.cos(roi.theta)
    sst = roi.size * math.sin(roi.theta)
    tx = roi.cx - 0.5 * sct + 0.5 * sst
    ty = roi.cy - 0.5 * sst - 0.5 * sct
    return tuple(
        Point(
            tx + sct * p.x - sst * p.y,
            ty + sst * p.x + sct * p.y,
            (p.z or 0.0) * roi.size,
        )
        for p in points
    )


def select_landmark_output(
    outputs: Sequence[npt.NDArray[np.float32]],
) -> npt.NDArray[np.float32]:
    """Pick the largest output whose size is a multiple of 3."""
    best = None
    for out in outputs:
        if out.size % 3 == 0 and (best is None or out.size > best.size):
            best = out
    if best is None:
        raise ModelMismatchError(
            f"No landmark output among shapes {[o.shape for o in outputs]}"
        )
    return best


class FaceLandmarkModel:
    """Mesh refiner bound to one engine. Not safe for concurrent calls."""

    def __init__(self, engine: InferenceEngine, color_order: str = "bgr") -> None:
        self.engine = engine
        self.color_order = color_order
        self.input_height, self.input_width = engine.input_size

    def __call__(self, face_crop: npt.NDArray[Any]) -> list[Point]:
        """Return 468 crop-normalized points, x and y clamped to [0, 1]."""
        pack = convert_image_to_tensor(
            face_crop, self.input_width, self.input_height, self.color_order
        )
        outputs = self.engine.run(pack.tensor)
        flat = select_landmark_output(outputs)
        points = unpack_landmarks(
            flat, self.input_width, self.input_height, pack.padding, clamp=True
        )
        if len(points) < MESH_POINT_COUNT:
            raise ModelMismatchError(
                f"Mesh model returned {len(points)} points, need {MESH_POINT_COUNT}"
            )
        return points[:MESH_POINT_COUNT]

    def close(self) -> None:
        self.engine.close()
