"""Unpacking of flat landmark tensors into normalized points."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from ..types import Point
from .coordinates import unpad_coordinate


def unpack_landmarks(
    flat: Any,
    model_w: int,
    model_h: int,
    padding: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
    clamp: bool = False,
) -> list[Point]:
    """Convert ``(x_px, y_px, z)`` triples into normalized points.

    Args:
        flat: Any array-like holding consecutive triples in model-input pixels.
            A trailing partial triple is ignored.
        model_w: Model input width used to normalize x.
        model_h: Model input height used to normalize y.
        padding: Letterbox padding fractions ``(top, bottom, left, right)``
            applied to the model input.
        clamp: Clamp x and y to ``[0, 1]``. z is passed through untouched.

    Returns:
        Points in input order.
    """
    values = np.asarray(flat, dtype=np.float64).reshape(-1)
    count = values.size // 3
    if count == 0:
        return []
    triples = values[: count * 3].reshape(count, 3)

    pt, pb, pl, pr = padding
    xs = unpad_coordinate(triples[:, 0] / float(model_w), pl, pr)
    ys = unpad_coordinate(triples[:, 1] / float(model_h), pt, pb)
    if clamp:
        xs = np.clip(xs, 0.0, 1.0)
        ys = np.clip(ys, 0.0, 1.0)
    zs = triples[:, 2]

    return [Point(float(x), float(y), float(z)) for x, y, z in zip(xs, ys, zs)]
