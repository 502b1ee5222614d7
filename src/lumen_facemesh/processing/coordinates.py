"""
Coordinate mapping between original images and model input space.

Every model in the pipeline consumes a fixed-size square (or fixed-aspect)
tensor. Images are letterboxed onto that canvas, and everything the models
predict is mapped back through the inverse of the same padding:

    original = (padded - pad_before) / (1 - pad_before - pad_after)

The functions here are pure geometry on NumPy arrays and OpenCV buffers; they
do not raise on well-formed numeric input.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from typing import Any

import cv2
import numpy as np
import numpy.typing as npt

from ..exceptions import InvalidInputError
from ..types import Detection, ImageTensor, LetterboxResult, RectF

# Smallest denominator allowed when undoing padding.
MIN_UNPAD_DENOMINATOR = 1e-6


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# --------------------------------------------------------------------------- #
# Pixel format helpers
# --------------------------------------------------------------------------- #


def convert_image_to_uint8(image: npt.NDArray[Any]) -> npt.NDArray[np.uint8]:
    """Ensure the image array is contiguous uint8."""
    arr = np.asarray(image)
    if arr.dtype != np.uint8:
        if np.issubdtype(arr.dtype, np.floating):
            max_val = float(arr.max()) if arr.size else 1.0
            scale = 255.0 if max_val <= 1.0 else 1.0
            arr = np.clip(arr * scale, 0.0, 255.0).astype(np.uint8)
        else:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
    return np.ascontiguousarray(arr)


def to_rgb(image: npt.NDArray[Any], color_order: str = "bgr") -> npt.NDArray[np.uint8]:
    """Convert a gray, 3-channel or 4-channel image to 3-channel RGB uint8.

    Alpha is dropped. ``color_order`` describes the channel order of the input
    ("bgr" for OpenCV-decoded buffers, "rgb" otherwise).
    """
    arr = convert_image_to_uint8(image)
    if arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr[:, :, 0]

    if arr.ndim == 2:
        return cv2.cvtColor(arr, cv2.COLOR_GRAY2RGB)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise InvalidInputError(
            f"Unsupported image shape {arr.shape}; expected HxW, HxWx3 or HxWx4"
        )

    bgr_order = color_order.lower() == "bgr"
    if arr.shape[2] == 4:
        code = cv2.COLOR_BGRA2RGB if bgr_order else cv2.COLOR_RGBA2RGB
        return cv2.cvtColor(arr, code)
    if bgr_order:
        return cv2.cvtColor(arr, cv2.COLOR_BGR2RGB)
    return arr


def decode_image(data: bytes) -> npt.NDArray[np.uint8]:
    """Decode encoded image bytes into a BGR array with OpenCV."""
    if not data:
        raise InvalidInputError("image bytes cannot be empty")
    decoded = cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_COLOR)
    if decoded is None:
        raise InvalidInputError(f"Failed to decode image bytes (length: {len(data)})")
    return decoded


def normalize_pixels(image: npt.NDArray[np.uint8]) -> npt.NDArray[np.float32]:
    """Map uint8 pixels to ``[-1, 1]`` as ``px / 127.5 - 1``."""
    return image.astype(np.float32) / 127.5 - 1.0


# --------------------------------------------------------------------------- #
# Letterbox
# --------------------------------------------------------------------------- #


def keep_aspect_resize_and_pad(
    image: npt.NDArray[Any],
    out_w: int,
    out_h: int,
    border_value: int = 0,
) -> LetterboxResult:
    """Resize preserving aspect ratio and center the result on an ``out_w x out_h`` canvas."""
    src_h, src_w = image.shape[:2]
    if src_w <= 0 or src_h <= 0:
        raise InvalidInputError(f"Cannot letterbox an empty image of shape {image.shape}")

    scale = min(out_w / src_w, out_h / src_h)
    new_w = min(out_w, max(1, _round_half_up(src_w * scale)))
    new_h = min(out_h, max(1, _round_half_up(src_h * scale)))

    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    resized = resized.reshape((new_h, new_w) + image.shape[2:])

    dx = (out_w - new_w) // 2
    dy = (out_h - new_h) // 2
    canvas = np.full((out_h, out_w) + image.shape[2:], border_value, dtype=image.dtype)
    canvas[dy : dy + new_h, dx : dx + new_w] = resized

    return LetterboxResult(
        image=canvas,
        scale=scale,
        pad_top=dy,
        pad_bottom=out_h - dy - new_h,
        pad_left=dx,
        pad_right=out_w - dx - new_w,
    )


def letterbox(
    image: npt.NDArray[Any], out_w: int, out_h: int
) -> tuple[npt.NDArray[Any], tuple[float, float, float, float]]:
    """Letterbox and return the canvas plus normalized ``(top, bottom, left, right)`` padding."""
    result = keep_aspect_resize_and_pad(image, out_w, out_h)
    return result.image, result.padding


def convert_image_to_tensor(
    image: npt.NDArray[Any],
    out_w: int,
    out_h: int,
    color_order: str = "bgr",
) -> ImageTensor:
    """Letterbox an image into a ``[1, out_h, out_w, 3]`` float32 tensor in ``[-1, 1]``."""
    rgb = to_rgb(image, color_order)
    boxed = keep_aspect_resize_and_pad(rgb, out_w, out_h)
    tensor = normalize_pixels(boxed.image)[np.newaxis, ...]
    return ImageTensor(
        tensor=np.ascontiguousarray(tensor, dtype=np.float32),
        padding=boxed.padding,
        width=out_w,
        height=out_h,
    )


def stretch_image_to_tensor(
    image: npt.NDArray[Any],
    out_w: int,
    out_h: int,
    color_order: str = "bgr",
) -> ImageTensor:
    """Resize without preserving aspect ratio; padding is all zero."""
    rgb = to_rgb(image, color_order)
    resized = cv2.resize(rgb, (out_w, out_h), interpolation=cv2.INTER_LINEAR)
    tensor = normalize_pixels(resized)[np.newaxis, ...]
    return ImageTensor(
        tensor=np.ascontiguousarray(tensor, dtype=np.float32),
        padding=(0.0, 0.0, 0.0, 0.0),
        width=out_w,
        height=out_h,
    )


# --------------------------------------------------------------------------- #
# Inversion
# --------------------------------------------------------------------------- #


def unpad_coordinate(value: Any, pad_before: float, pad_after: float) -> Any:
    """Map a padded-space coordinate (scalar or array) back to unpadded space."""
    denom = max(1.0 - pad_before - pad_after, MIN_UNPAD_DENOMINATOR)
    return (value - pad_before) / denom


def remove_letterbox_from_detection(
    detection: Detection, padding: Sequence[float]
) -> Detection:
    pt, pb, pl, pr = padding
    box = detection.bounding_box
    keypoints = list(detection.keypoints_xy)
    for i in range(0, len(keypoints) - 1, 2):
        keypoints[i] = unpad_coordinate(keypoints[i], pl, pr)
        keypoints[i + 1] = unpad_coordinate(keypoints[i + 1], pt, pb)
    return Detection(
        bounding_box=RectF(
            unpad_coordinate(box.xmin, pl, pr),
            unpad_coordinate(box.ymin, pt, pb),
            unpad_coordinate(box.xmax, pl, pr),
            unpad_coordinate(box.ymax, pt, pb),
        ),
        score=detection.score,
        keypoints_xy=tuple(keypoints),
    )


def remove_letterbox(
    detections: Iterable[Detection], padding: Sequence[float]
) -> list[Detection]:
    """Apply the padding inversion to every box corner and keypoint."""
    if not any(padding):
        return list(detections)
    return [remove_letterbox_from_detection(d, padding) for d in detections]


# --------------------------------------------------------------------------- #
# Crops
# --------------------------------------------------------------------------- #


def extract_aligned_square(
    image: npt.NDArray[Any],
    cx: float,
    cy: float,
    size: float,
    theta: float,
    border_value: int = 0,
) -> npt.NDArray[Any] | None:
    """Sample a rotated ``size x size`` square centered on ``(cx, cy)``.

    The crop's x axis runs along direction ``theta`` (radians) in the source
    image, so a crop pixel ``(u, v)`` comes from
    ``center + R(theta) @ (u - size/2, v - size/2)``. Areas outside the source
    are filled with ``border_value``. Returns ``None`` when ``size`` rounds to
    zero or less.
    """
    side = _round_half_up(size)
    if side <= 0:
        return None

    matrix = cv2.getRotationMatrix2D((float(cx), float(cy)), math.degrees(theta), 1.0)
    matrix[0, 2] += side * 0.5 - cx
    matrix[1, 2] += side * 0.5 - cy

    channels = image.shape[2] if image.ndim == 3 else 1
    return cv2.warpAffine(
        image,
        matrix,
        (side, side),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(border_value,) * channels,
    )


def crop_rect(
    image: npt.NDArray[Any], x1: float, y1: float, x2: float, y2: float
) -> npt.NDArray[Any]:
    """Pixel crop with coordinates clamped to the image; never empty."""
    h, w = image.shape[:2]
    left = min(max(_round_half_up(x1), 0), w - 1)
    top = min(max(_round_half_up(y1), 0), h - 1)
    right = min(max(_round_half_up(x2), left + 1), w)
    bottom = min(max(_round_half_up(y2), top + 1), h)
    return image[top:bottom, left:right].copy()


def crop_from_normalized_roi(image: npt.NDArray[Any], roi: RectF) -> npt.NDArray[Any]:
    h, w = image.shape[:2]
    return crop_rect(image, roi.xmin * w, roi.ymin * h, roi.xmax * w, roi.ymax * h)


def face_detection_to_roi(box: RectF, expand_fraction: float = 0.6) -> RectF:
    """Expand a face box and square it around its center."""
    expanded = box.expand(expand_fraction)
    cx, cy = expanded.center
    half = max(expanded.width, expanded.height) * 0.5
    return RectF(cx - half, cy - half, cx + half, cy + half)
