"""
Anchor-relative detection decoding.

The detector emits one regressor row and one logit per anchor. A regressor
row holds ``(dx, dy, w, h, kx0, ky0, kx1, ky1, ...)`` in model-input pixels,
where centers and keypoints are offsets from the anchor center.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import numpy as np
import numpy.typing as npt

from ..exceptions import ModelMismatchError
from ..types import RAW_SCORE_LIMIT, Detection, RectF
from .coordinates import unpad_coordinate

logger = logging.getLogger(__name__)


def sigmoid_clipped(x: Any, limit: float = RAW_SCORE_LIMIT) -> Any:
    """Logistic function with the logit clipped to ``[-limit, limit]`` first.

    Accepts scalars or arrays; scalars come back as ``float``.
    """
    clipped = np.clip(np.asarray(x, dtype=np.float64), -limit, limit)
    result = 1.0 / (1.0 + np.exp(-clipped))
    if np.ndim(result) == 0:
        return float(result)
    return result


def decode_boxes(
    raw_boxes: npt.NDArray[Any],
    anchors: npt.NDArray[np.float32],
    input_w: int,
    input_h: int,
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Decode regressor rows into ``[N, 4]`` boxes and ``[N, 2K]`` keypoints.

    Coordinates are normalized to the (possibly letterboxed) model input.
    """
    num_anchors = anchors.shape[0]
    raw = np.asarray(raw_boxes, dtype=np.float64).reshape(num_anchors, -1)
    if raw.shape[1] < 4:
        raise ModelMismatchError(
            f"Detector regressor rows need at least 4 values, got {raw.shape[1]}"
        )

    ax = anchors[:, 0].astype(np.float64)
    ay = anchors[:, 1].astype(np.float64)

    xc = raw[:, 0] / input_w + ax
    yc = raw[:, 1] / input_h + ay
    w = raw[:, 2] / input_w
    h = raw[:, 3] / input_h
    boxes = np.stack([xc - w * 0.5, yc - h * 0.5, xc + w * 0.5, yc + h * 0.5], axis=1)

    extra = raw.shape[1] - 4
    keypoints = raw[:, 4 : 4 + extra - (extra % 2)].copy()
    keypoints[:, 0::2] = keypoints[:, 0::2] / input_w + ax[:, None]
    keypoints[:, 1::2] = keypoints[:, 1::2] / input_h + ay[:, None]
    return boxes, keypoints


def decode_detections(
    raw_boxes: npt.NDArray[Any],
    raw_scores: npt.NDArray[Any],
    anchors: npt.NDArray[np.float32],
    input_w: int,
    input_h: int,
    padding: Sequence[float] | None = None,
    min_score: float | None = None,
    score_limit: float = RAW_SCORE_LIMIT,
) -> list[Detection]:
    """Turn raw detector tensors into candidate detections.

    Args:
        raw_boxes: Regressor output, any shape holding ``N * K`` values.
        raw_scores: Classifier logits, any shape holding ``N`` values.
        anchors: ``[N, 2]`` anchor centers.
        input_w: Model input width in pixels.
        input_h: Model input height in pixels.
        padding: Letterbox padding ``(top, bottom, left, right)``. When given,
            boxes and keypoints are mapped back to original-image space.
        min_score: Optional early score filter; NMS applies it regardless.
        score_limit: Logit clipping bound for :func:`sigmoid_clipped`.

    Returns:
        Detections in anchor order. Geometrically empty boxes are dropped.
    """
    num_anchors = anchors.shape[0]
    logits = np.asarray(raw_scores, dtype=np.float64).reshape(-1)
    if logits.size != num_anchors:
        raise ModelMismatchError(
            f"Detector produced {logits.size} scores for {num_anchors} anchors"
        )

    scores = sigmoid_clipped(logits, score_limit)
    boxes, keypoints = decode_boxes(raw_boxes, anchors, input_w, input_h)

    keep = (boxes[:, 2] > boxes[:, 0]) & (boxes[:, 3] > boxes[:, 1])
    if min_score is not None:
        keep &= scores >= min_score
    indices = np.flatnonzero(keep)
    if indices.size == 0:
        return []

    boxes = boxes[indices]
    keypoints = keypoints[indices]
    scores = scores[indices]

    if padding is not None and any(padding):
        pt, pb, pl, pr = padding
        boxes[:, 0::2] = unpad_coordinate(boxes[:, 0::2], pl, pr)
        boxes[:, 1::2] = unpad_coordinate(boxes[:, 1::2], pt, pb)
        keypoints[:, 0::2] = unpad_coordinate(keypoints[:, 0::2], pl, pr)
        keypoints[:, 1::2] = unpad_coordinate(keypoints[:, 1::2], pt, pb)

    logger.debug("Decoded %d candidate detections", len(indices))
    return [
        Detection(
            bounding_box=RectF(*(float(v) for v in boxes[i])),
            score=float(scores[i]),
            keypoints_xy=tuple(float(v) for v in keypoints[i]),
        )
        for i in range(len(indices))
    ]
