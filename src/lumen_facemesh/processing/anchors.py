"""
SSD anchor generation for the BlazeFace family of detectors.

Anchors are fixed-size (1x1) reference centers laid out on one feature grid
per stride group. Only centers matter: the detector regresses box size
directly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

from ..types import DetectionModelVariant


@dataclass(frozen=True)
class AnchorOptions:
    num_layers: int
    input_size_width: int
    input_size_height: int
    strides: tuple[int, ...]
    anchor_offset_x: float = 0.5
    anchor_offset_y: float = 0.5
    interpolated_scale_aspect_ratio: float = 1.0


ANCHOR_OPTIONS: dict[DetectionModelVariant, AnchorOptions] = {
    DetectionModelVariant.FRONT_CAMERA: AnchorOptions(
        num_layers=4, input_size_width=128, input_size_height=128, strides=(8, 16, 16, 16)
    ),
    DetectionModelVariant.SHORT_RANGE: AnchorOptions(
        num_layers=4, input_size_width=128, input_size_height=128, strides=(8, 16, 16, 16)
    ),
    DetectionModelVariant.BACK_CAMERA: AnchorOptions(
        num_layers=4, input_size_width=256, input_size_height=256, strides=(16, 32, 32, 32)
    ),
    DetectionModelVariant.FULL_RANGE: AnchorOptions(
        num_layers=1,
        input_size_width=192,
        input_size_height=192,
        strides=(4,),
        interpolated_scale_aspect_ratio=0.0,
    ),
    DetectionModelVariant.FULL_RANGE_SPARSE: AnchorOptions(
        num_layers=1,
        input_size_width=192,
        input_size_height=192,
        strides=(4,),
        interpolated_scale_aspect_ratio=0.0,
    ),
}


def generate_anchors(options: AnchorOptions) -> npt.NDArray[np.float32]:
    """Return anchor centers as an ``[N, 2]`` array of normalized ``(x, y)``."""
    centers: list[tuple[float, float]] = []
    layer_id = 0
    while layer_id < options.num_layers:
        # Consecutive layers sharing a stride collapse onto one grid.
        last_same_stride = layer_id
        repeats = 0
        while (
            last_same_stride < options.num_layers
            and options.strides[last_same_stride] == options.strides[layer_id]
        ):
            last_same_stride += 1
            repeats += 2 if options.interpolated_scale_aspect_ratio == 1.0 else 1

        stride = options.strides[layer_id]
        feature_h = int(math.ceil(options.input_size_height / stride))
        feature_w = int(math.ceil(options.input_size_width / stride))
        for y in range(feature_h):
            y_center = (y + options.anchor_offset_y) / feature_h
            for x in range(feature_w):
                x_center = (x + options.anchor_offset_x) / feature_w
                centers.extend([(x_center, y_center)] * repeats)
        layer_id = last_same_stride

    return np.asarray(centers, dtype=np.float32).reshape(-1, 2)


def anchors_for(variant: DetectionModelVariant) -> npt.NDArray[np.float32]:
    return generate_anchors(ANCHOR_OPTIONS[variant])
