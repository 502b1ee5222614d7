"""
Core value types shared by every stage of the face pipeline.

All result types are immutable and carry no reference back into the model
engines that produced them. ``Face`` and ``Detection`` can be flattened to plain
maps (lists, dicts, floats, strings) and rebuilt without loss; malformed maps
raise :class:`~lumen_facemesh.exceptions.InvalidInputError` with a message
naming the offending key.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

import numpy as np
import numpy.typing as npt

from .exceptions import InvalidInputError

# --------------------------------------------------------------------------- #
# Guaranteed constants
# --------------------------------------------------------------------------- #

MESH_POINT_COUNT = 468
EMBEDDING_DIMENSION = 192
EMBEDDING_INPUT_SIZE = 112
MIN_SEGMENTATION_INPUT_SIZE = 16
IRIS_CONTOUR_POINT_COUNT = 4
EYE_MESH_POINT_COUNT = 71

RAW_SCORE_LIMIT = 80.0
MIN_DETECTION_SCORE = 0.5
MIN_SUPPRESSION_THRESHOLD = 0.3

# Eyelid contour segments over the first 16 points of the 71-point eye mesh:
# upper lid 0..8, lower lid 9..15, joined at the inner corner.
EYE_LANDMARK_CONNECTIONS: tuple[tuple[int, int], ...] = (
    (0, 1),
    (1, 2),
    (2, 3),
    (3, 4),
    (4, 5),
    (5, 6),
    (6, 7),
    (7, 8),
    (9, 10),
    (10, 11),
    (11, 12),
    (12, 13),
    (13, 14),
    (14, 15),
    (0, 9),
)


class FaceKeypoint(str, Enum):
    """Named detector keypoints, in detector output order."""

    LEFT_EYE = "left_eye"
    RIGHT_EYE = "right_eye"
    NOSE_TIP = "nose_tip"
    MOUTH = "mouth"
    LEFT_EYE_TRAGION = "left_eye_tragion"
    RIGHT_EYE_TRAGION = "right_eye_tragion"

    @property
    def index(self) -> int:
        return _KEYPOINT_ORDER.index(self)


_KEYPOINT_ORDER: tuple[FaceKeypoint, ...] = tuple(FaceKeypoint)


class DetectionModelVariant(str, Enum):
    """Available short/long range face detector models."""

    FRONT_CAMERA = "front_camera"
    BACK_CAMERA = "back_camera"
    SHORT_RANGE = "short_range"
    FULL_RANGE = "full_range"
    FULL_RANGE_SPARSE = "full_range_sparse"


class FaceDetectionMode(str, Enum):
    """Pipeline depth: detector only, plus mesh, plus mesh and iris."""

    FAST = "fast"
    STANDARD = "standard"
    FULL = "full"


# --------------------------------------------------------------------------- #
# Map helpers
# --------------------------------------------------------------------------- #


def _require(mapping: Mapping[str, Any], key: str, context: str) -> Any:
    if not isinstance(mapping, Mapping):
        raise InvalidInputError(
            f"{context} map must be a mapping, got {type(mapping).__name__}"
        )
    if key not in mapping:
        raise InvalidInputError(f"Missing key '{key}' in {context} map")
    return mapping[key]


def _as_float(value: Any, context: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"{context} must be numeric, got {value!r}") from exc


def _as_int(value: Any, context: str) -> int:
    if isinstance(value, bool):
        raise InvalidInputError(f"{context} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"{context} must be an integer, got {value!r}") from exc


def _as_points(
    values: Any, expected: int | None, context: str
) -> tuple[Point, ...]:
    if not isinstance(values, Sequence) or isinstance(values, (str, bytes)):
        raise InvalidInputError(f"{context} must be a list of points")
    if expected is not None and len(values) != expected:
        raise InvalidInputError(
            f"{context} must contain {expected} points, got {len(values)}"
        )
    return tuple(Point.from_list(v, context) for v in values)


# --------------------------------------------------------------------------- #
# Geometry primitives
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class RectF:
    """Axis-aligned rectangle ``(xmin, ymin, xmax, ymax)``."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def center(self) -> tuple[float, float]:
        return ((self.xmin + self.xmax) * 0.5, (self.ymin + self.ymax) * 0.5)

    @property
    def is_valid(self) -> bool:
        return self.xmin <= self.xmax and self.ymin <= self.ymax

    def scale(self, sx: float, sy: float) -> RectF:
        return RectF(self.xmin * sx, self.ymin * sy, self.xmax * sx, self.ymax * sy)

    def expand(self, fraction: float) -> RectF:
        """Grow the rectangle around its center by ``fraction`` of each side."""
        cx, cy = self.center
        hw = self.width * (1.0 + fraction) * 0.5
        hh = self.height * (1.0 + fraction) * 0.5
        return RectF(cx - hw, cy - hh, cx + hw, cy + hh)

    def to_map(self) -> dict[str, float]:
        return {
            "xmin": float(self.xmin),
            "ymin": float(self.ymin),
            "xmax": float(self.xmax),
            "ymax": float(self.ymax),
        }

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> RectF:
        return cls(
            *(
                _as_float(_require(data, key, "RectF"), f"RectF.{key}")
                for key in ("xmin", "ymin", "xmax", "ymax")
            )
        )


@dataclass(frozen=True)
class Point:
    """A landmark. ``z`` is relative depth and is never clamped."""

    x: float
    y: float
    z: float | None = None

    def distance_to(self, other: Point) -> float:
        return math.hypot(other.x - self.x, other.y - self.y)

    def to_list(self) -> list[float]:
        if self.z is None:
            return [float(self.x), float(self.y)]
        return [float(self.x), float(self.y), float(self.z)]

    @classmethod
    def from_list(cls, values: Any, context: str = "Point") -> Point:
        if not isinstance(values, Sequence) or len(values) not in (2, 3):
            raise InvalidInputError(
                f"{context} entries must be [x, y] or [x, y, z], got {values!r}"
            )
        x = _as_float(values[0], context)
        y = _as_float(values[1], context)
        z = _as_float(values[2], context) if len(values) == 3 else None
        return cls(x, y, z)


@dataclass(frozen=True)
class AlignedRoi:
    """Rotated square region: center, side length and rotation in radians."""

    cx: float
    cy: float
    size: float
    theta: float


@dataclass(frozen=True)
class LetterboxResult:
    """Aspect-preserving resize onto a fixed canvas.

    Attributes:
        image: The ``out_h x out_w`` canvas with the resized source centered on it.
        scale: Factor applied to the source image.
        pad_top, pad_bottom, pad_left, pad_right: Border sizes in pixels.
    """

    image: npt.NDArray[np.uint8]
    scale: float
    pad_top: int
    pad_bottom: int
    pad_left: int
    pad_right: int

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def padding(self) -> tuple[float, float, float, float]:
        """Normalized padding fractions ``(top, bottom, left, right)``."""
        h = float(self.height)
        w = float(self.width)
        return (
            self.pad_top / h,
            self.pad_bottom / h,
            self.pad_left / w,
            self.pad_right / w,
        )


@dataclass(frozen=True)
class ImageTensor:
    """A model-ready NHWC float32 tensor and the padding needed to undo it."""

    tensor: npt.NDArray[np.float32]
    padding: tuple[float, float, float, float]
    width: int
    height: int


# --------------------------------------------------------------------------- #
# Detection
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class Detection:
    """A detector candidate in normalized image coordinates."""

    bounding_box: RectF
    score: float
    keypoints_xy: tuple[float, ...] = ()

    @property
    def num_keypoints(self) -> int:
        return len(self.keypoints_xy) // 2

    def keypoint(self, which: FaceKeypoint | int) -> tuple[float, float]:
        idx = which.index if isinstance(which, FaceKeypoint) else int(which)
        return (self.keypoints_xy[idx * 2], self.keypoints_xy[idx * 2 + 1])

    def to_map(self) -> dict[str, Any]:
        return {
            "bounding_box": self.bounding_box.to_map(),
            "score": float(self.score),
            "keypoints": [float(v) for v in self.keypoints_xy],
        }

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> Detection:
        box = RectF.from_map(_require(data, "bounding_box", "Detection"))
        score = _as_float(_require(data, "score", "Detection"), "Detection.score")
        keypoints = _require(data, "keypoints", "Detection")
        if not isinstance(keypoints, Sequence) or len(keypoints) % 2:
            raise InvalidInputError(
                "Detection.keypoints must be a flat list of x, y pairs"
            )
        return cls(
            bounding_box=box,
            score=score,
            keypoints_xy=tuple(_as_float(v, "Detection.keypoints") for v in keypoints),
        )


# --------------------------------------------------------------------------- #
# Face aggregate
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class EyeLandmarks:
    """Iris refinement output for one eye, in image pixels."""

    iris_center: Point
    iris_contour: tuple[Point, ...]
    mesh: tuple[Point, ...]

    def to_map(self) -> dict[str, Any]:
        return {
            "iris_center": self.iris_center.to_list(),
            "iris_contour": [p.to_list() for p in self.iris_contour],
            "mesh": [p.to_list() for p in self.mesh],
        }

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> EyeLandmarks:
        return cls(
            iris_center=Point.from_list(
                _require(data, "iris_center", "EyeLandmarks"), "iris_center"
            ),
            iris_contour=_as_points(
                _require(data, "iris_contour", "EyeLandmarks"),
                IRIS_CONTOUR_POINT_COUNT,
                "iris_contour",
            ),
            mesh=_as_points(
                _require(data, "mesh", "EyeLandmarks"),
                EYE_MESH_POINT_COUNT,
                "eye mesh",
            ),
        )


@dataclass(frozen=True)
class IrisPair:
    """Both eyes; a side is ``None`` when its refinement failed."""

    left: EyeLandmarks | None = None
    right: EyeLandmarks | None = None

    def to_map(self) -> dict[str, Any]:
        return {
            "left": self.left.to_map() if self.left else None,
            "right": self.right.to_map() if self.right else None,
        }

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> IrisPair:
        left = _require(data, "left", "IrisPair")
        right = _require(data, "right", "IrisPair")
        return cls(
            left=EyeLandmarks.from_map(left) if left is not None else None,
            right=EyeLandmarks.from_map(right) if right is not None else None,
        )


@dataclass(frozen=True, eq=False)
class Face:
    """A fully assembled face result in original-image pixel coordinates.

    Attributes:
        bounding_box: Face box in pixels.
        score: Detector confidence of the seed detection.
        keypoints: The six named detector keypoints in pixels. In full mode the
            eye keypoints are replaced by the refined iris centers.
        mesh: 468 mesh points (x, y in pixels, z scaled by the crop size) or
            ``None`` when the mesh stage did not run or failed for this face.
        irises: Per-eye iris results, or ``None`` outside full mode.
        embedding: L2-normalized identity vector, if requested.
        original_size: ``(width, height)`` of the source image.
    """

    bounding_box: RectF
    score: float
    keypoints: Mapping[FaceKeypoint, Point]
    original_size: tuple[int, int]
    mesh: tuple[Point, ...] | None = None
    irises: IrisPair | None = None
    embedding: npt.NDArray[np.float32] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "keypoints", MappingProxyType(dict(self.keypoints)))

    def keypoint(self, which: FaceKeypoint) -> Point:
        return self.keypoints[which]

    @property
    def has_mesh(self) -> bool:
        return self.mesh is not None

    def with_embedding(self, embedding: npt.NDArray[np.float32] | None) -> Face:
        return replace(self, embedding=embedding)

    def eye_landmark_contour(self, side: str) -> list[tuple[Point, Point]]:
        """Eyelid line segments for ``side`` ("left" or "right"), empty if absent."""
        if side not in ("left", "right"):
            raise InvalidInputError(f"Unknown eye side '{side}'")
        if self.irises is None:
            return []
        eye = self.irises.left if side == "left" else self.irises.right
        if eye is None:
            return []
        return [(eye.mesh[a], eye.mesh[b]) for a, b in EYE_LANDMARK_CONNECTIONS]

    def to_map(self) -> dict[str, Any]:
        return {
            "bounding_box": self.bounding_box.to_map(),
            "score": float(self.score),
            "keypoints": {k.value: p.to_list() for k, p in self.keypoints.items()},
            "mesh": [p.to_list() for p in self.mesh] if self.mesh is not None else None,
            "irises": self.irises.to_map() if self.irises is not None else None,
            "embedding": (
                [float(v) for v in self.embedding]
                if self.embedding is not None
                else None
            ),
            "original_size": [int(self.original_size[0]), int(self.original_size[1])],
        }

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> Face:
        box = RectF.from_map(_require(data, "bounding_box", "Face"))
        score = _as_float(_require(data, "score", "Face"), "Face.score")

        raw_keypoints = _require(data, "keypoints", "Face")
        if not isinstance(raw_keypoints, Mapping):
            raise InvalidInputError("Face.keypoints must be a mapping")
        keypoints: dict[FaceKeypoint, Point] = {}
        for name, value in raw_keypoints.items():
            try:
                key = FaceKeypoint(name)
            except ValueError as exc:
                raise InvalidInputError(f"Unknown face keypoint '{name}'") from exc
            keypoints[key] = Point.from_list(value, f"keypoint {name}")

        raw_mesh = data.get("mesh")
        mesh = (
            _as_points(raw_mesh, MESH_POINT_COUNT, "Face.mesh")
            if raw_mesh is not None
            else None
        )

        raw_irises = data.get("irises")
        irises = IrisPair.from_map(raw_irises) if raw_irises is not None else None

        raw_embedding = data.get("embedding")
        embedding = None
        if raw_embedding is not None:
            try:
                embedding = np.asarray(raw_embedding, dtype=np.float32).reshape(-1)
            except (TypeError, ValueError) as exc:
                raise InvalidInputError("Face.embedding must be numeric") from exc

        size = _require(data, "original_size", "Face")
        if not isinstance(size, Sequence) or isinstance(size, (str, bytes)) or len(size) != 2:
            raise InvalidInputError("Face.original_size must be [width, height]")
        original_size = (
            _as_int(size[0], "Face.original_size"),
            _as_int(size[1], "Face.original_size"),
        )

        return cls(
            bounding_box=box,
            score=score,
            keypoints=keypoints,
            original_size=original_size,
            mesh=mesh,
            irises=irises,
            embedding=embedding,
        )
