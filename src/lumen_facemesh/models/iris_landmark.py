"""
Iris refinement stage.

Each eye is cropped as a rotated square spanning 2.3x the eye-corner distance
taken from the face mesh. The model predicts 71 eye-region points plus 5 iris
points. It is trained on left eyes, so the right-eye crop is mirrored before
inference and the x coordinates are mirrored back afterwards.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import cv2
import numpy.typing as npt

from ..backends.base import InferenceEngine
from ..exceptions import ModelMismatchError
from ..processing.coordinates import convert_image_to_tensor
from ..processing.landmarks import unpack_landmarks
from ..types import (
    EYE_MESH_POINT_COUNT,
    IRIS_CONTOUR_POINT_COUNT,
    AlignedRoi,
    EyeLandmarks,
    Point,
)

IRIS_LANDMARK_MODEL = "iris_landmark.onnx"

# Mesh indices of the eye corners.
LEFT_EYE_CORNERS = (33, 133)
RIGHT_EYE_CORNERS = (362, 263)

_EYE_ROI_SCALE = 2.3
_IRIS_POINT_COUNT = IRIS_CONTOUR_POINT_COUNT + 1


def eye_roi_from_mesh(mesh: Sequence[Point], corners: tuple[int, int]) -> AlignedRoi:
    a = mesh[corners[0]]
    b = mesh[corners[1]]
    dx = b.x - a.x
    dy = b.y - a.y
    return AlignedRoi(
        cx=(a.x + b.x) * 0.5,
        cy=(a.y + b.y) * 0.5,
        size=math.hypot(dx, dy) * _EYE_ROI_SCALE,
        theta=math.atan2(dy, dx),
    )


def transform_iris_to_absolute(
    points: Sequence[Point], roi: AlignedRoi, is_right: bool
) -> tuple[Point, ...]:
    """Map eye-crop-normalized points to image pixels; z is left as predicted."""
    ct = math.cos(roi.theta)
    st = math.sin(roi.theta)
    out = []
    for p in points:
        px = 1.0 - p.x if is_right else p.x
        lx = (px - 0.5) * roi.size
        ly = (p.y - 0.5) * roi.size
        out.append(Point(roi.cx + lx * ct - ly * st, roi.cy + lx * st + ly * ct, p.z))
    return tuple(out)


def split_iris(iris: Sequence[Point]) -> tuple[Point, tuple[Point, ...]]:
    """Separate the iris center (the point nearest the centroid) from the contour."""
    mx = sum(p.x for p in iris) / len(iris)
    my = sum(p.y for p in iris) / len(iris)
    center_idx = min(
        range(len(iris)), key=lambda i: (iris[i].x - mx) ** 2 + (iris[i].y - my) ** 2
    )
    contour = tuple(p for i, p in enumerate(iris) if i != center_idx)
    return iris[center_idx], contour


def build_eye_landmarks(
    points: Sequence[Point], roi: AlignedRoi, is_right: bool
) -> EyeLandmarks:
    """Assemble one eye from the model's 71 + 5 crop-normalized points."""
    absolute = transform_iris_to_absolute(points, roi, is_right)
    eye_mesh = absolute[:EYE_MESH_POINT_COUNT]
    iris = absolute[EYE_MESH_POINT_COUNT : EYE_MESH_POINT_COUNT + _IRIS_POINT_COUNT]
    center, contour = split_iris(iris)
    return EyeLandmarks(iris_center=center, iris_contour=contour, mesh=tuple(eye_mesh))


class IrisLandmarkModel:
    """Iris refiner bound to one engine. Not safe for concurrent calls."""

    def __init__(self, engine: InferenceEngine, color_order: str = "bgr") -> None:
        self.engine = engine
        self.color_order = color_order
        self.input_height, self.input_width = engine.input_size

    def __call__(self, eye_crop: npt.NDArray[Any], is_right: bool = False) -> list[Point]:
        """Return 76 crop-normalized points: 71 eye mesh then 5 iris.

        The right-eye crop is mirrored here; mirroring x back is done by
        :func:`transform_iris_to_absolute`.
        """
        if is_right:
            eye_crop = cv2.flip(eye_crop, 1)
        pack = convert_image_to_tensor(
            eye_crop, self.input_width, self.input_height, self.color_order
        )
        outputs = self.engine.run(pack.tensor)

        # Eye mesh output is larger than the iris output.
        ordered = sorted(
            (o for o in outputs if o.size % 3 == 0), key=lambda o: o.size, reverse=True
        )
        points: list[Point] = []
        for out in ordered:
            points.extend(
                unpack_landmarks(out, self.input_width, self.input_height, pack.padding)
            )
        expected = EYE_MESH_POINT_COUNT + _IRIS_POINT_COUNT
        if len(points) < expected:
            raise ModelMismatchError(
                f"Iris model returned {len(points)} points, need {expected}"
            )
        return points[:expected]

    def close(self) -> None:
        self.engine.close()
