"""
Segmentation masks.

A :class:`SegmentationMask` always exposes a per-pixel person probability
plane (``data``). The model head it came from is captured once, at
construction, as a tagged payload:

- :class:`BinaryMaskData` for single-channel sigmoid heads;
- :class:`MulticlassMaskData` for C-channel softmax heads, which also carries
  the per-class probabilities (background, hair, body skin, face skin,
  clothes, other for C=6).

All output helpers (``to_binary``, ``to_uint8``, ``to_rgba``, ``class_mask``)
dispatch through the payload, so nothing re-inspects the variant per call.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

import cv2
import numpy as np
import numpy.typing as npt

from ..exceptions import InvalidInputError


class SegmentationClass:
    """Channel indices of the 6-class selfie model."""

    BACKGROUND = 0
    HAIR = 1
    BODY_SKIN = 2
    FACE_SKIN = 3
    CLOTHES = 4
    OTHER = 5

    ALL_PERSON = (HAIR, BODY_SKIN, FACE_SKIN, CLOTHES, OTHER)


class MaskKind(str, Enum):
    BINARY = "binary"
    MULTICLASS = "multiclass"


class SegmentationOutputFormat(str, Enum):
    """Wire format for masks crossing a transport boundary."""

    FLOAT32 = "float32"
    UINT8 = "uint8"
    BINARY = "binary"


def _round_half_up(value: float) -> int:
    return int(np.floor(value + 0.5))


def _resize_plane(
    plane: npt.NDArray[np.float32], width: int, height: int
) -> npt.NDArray[np.float32]:
    resized = cv2.resize(
        np.ascontiguousarray(plane), (width, height), interpolation=cv2.INTER_LINEAR
    )
    return resized.reshape((height, width) + plane.shape[2:]).astype(np.float32)


@dataclass(frozen=True, eq=False)
class BinaryMaskData:
    """Single-channel person probability."""

    data: npt.NDArray[np.float32]

    kind: ClassVar[MaskKind] = MaskKind.BINARY

    @property
    def channels(self) -> int:
        return 1

    def class_plane(self, index: int) -> npt.NDArray[np.float32]:
        raise InvalidInputError(
            "Class masks are only available for multiclass segmentation"
        )

    def resized(
        self, rows: slice, cols: slice, width: int, height: int
    ) -> BinaryMaskData:
        return BinaryMaskData(
            np.clip(_resize_plane(self.data[rows, cols], width, height), 0.0, 1.0)
        )

    def map_fields(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, eq=False)
class MulticlassMaskData:
    """Softmax class probabilities ``[H, W, C]`` plus the derived person plane."""

    data: npt.NDArray[np.float32]
    class_data: npt.NDArray[np.float32]

    kind: ClassVar[MaskKind] = MaskKind.MULTICLASS

    @classmethod
    def from_probabilities(cls, class_data: npt.NDArray[np.float32]) -> MulticlassMaskData:
        probs = np.asarray(class_data, dtype=np.float32)
        person = np.clip(1.0 - probs[..., SegmentationClass.BACKGROUND], 0.0, 1.0)
        return cls(person.astype(np.float32), probs)

    @property
    def channels(self) -> int:
        return int(self.class_data.shape[-1])

    def class_plane(self, index: int) -> npt.NDArray[np.float32]:
        if index < 0 or index >= self.channels:
            raise InvalidInputError(
                f"Class index {index} out of range for {self.channels} channels"
            )
        return self.class_data[..., index]

    def resized(
        self, rows: slice, cols: slice, width: int, height: int
    ) -> MulticlassMaskData:
        # Bilinear weights sum to one, so resized rows remain distributions.
        return MulticlassMaskData.from_probabilities(
            _resize_plane(self.class_data[rows, cols], width, height)
        )

    def map_fields(self) -> dict[str, Any]:
        return {
            "channels": self.channels,
            "class_data": self.class_data.reshape(-1).astype(float).tolist(),
        }


MaskPayload = BinaryMaskData | MulticlassMaskData


class SegmentationMask:
    """Per-pixel person probabilities at model (or upsampled) resolution.

    Attributes:
        width, height: Mask resolution.
        original_width, original_height: Size of the image that was segmented.
        padding: Letterbox fractions ``(top, bottom, left, right)`` still present
            in the mask; zero after :meth:`upsample`.
        max_output_size: Default cap used by :meth:`upsample` when no explicit
            ``max_size`` is passed (0 = unlimited).
    """

    def __init__(
        self,
        payload: MaskPayload,
        original_width: int,
        original_height: int,
        padding: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
        max_output_size: int = 0,
    ) -> None:
        if payload.data.ndim != 2:
            raise InvalidInputError(
                f"Mask data must be 2-D [height, width], got shape {payload.data.shape}"
            )
        if len(padding) != 4:
            raise InvalidInputError("Mask padding must have 4 entries")
        self._payload = payload
        self.height, self.width = (int(v) for v in payload.data.shape)
        self.original_width = int(original_width)
        self.original_height = int(original_height)
        self.padding = tuple(float(p) for p in padding)
        self.max_output_size = int(max_output_size)

    @classmethod
    def binary(
        cls,
        data: npt.ArrayLike,
        original_width: int,
        original_height: int,
        padding: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
        max_output_size: int = 0,
    ) -> SegmentationMask:
        plane = np.clip(np.asarray(data, dtype=np.float32), 0.0, 1.0)
        return cls(
            BinaryMaskData(plane), original_width, original_height, padding, max_output_size
        )

    @classmethod
    def multiclass(
        cls,
        class_data: npt.ArrayLike,
        original_width: int,
        original_height: int,
        padding: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
        max_output_size: int = 0,
    ) -> SegmentationMask:
        probs = np.asarray(class_data, dtype=np.float32)
        if probs.ndim != 3:
            raise InvalidInputError(
                f"Class data must be [height, width, channels], got shape {probs.shape}"
            )
        return cls(
            MulticlassMaskData.from_probabilities(probs),
            original_width,
            original_height,
            padding,
            max_output_size,
        )

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def data(self) -> npt.NDArray[np.float32]:
        return self._payload.data

    @property
    def kind(self) -> MaskKind:
        return self._payload.kind

    @property
    def is_multiclass(self) -> bool:
        return self._payload.kind is MaskKind.MULTICLASS

    @property
    def channels(self) -> int:
        return self._payload.channels

    def class_mask(self, index: int) -> npt.NDArray[np.float32]:
        return self._payload.class_plane(index)

    def background_mask(self) -> npt.NDArray[np.float32]:
        return self.class_mask(SegmentationClass.BACKGROUND)

    def hair_mask(self) -> npt.NDArray[np.float32]:
        return self.class_mask(SegmentationClass.HAIR)

    def body_skin_mask(self) -> npt.NDArray[np.float32]:
        return self.class_mask(SegmentationClass.BODY_SKIN)

    def face_skin_mask(self) -> npt.NDArray[np.float32]:
        return self.class_mask(SegmentationClass.FACE_SKIN)

    def clothes_mask(self) -> npt.NDArray[np.float32]:
        return self.class_mask(SegmentationClass.CLOTHES)

    def other_mask(self) -> npt.NDArray[np.float32]:
        return self.class_mask(SegmentationClass.OTHER)

    # ------------------------------------------------------------------ #
    # Resampling
    # ------------------------------------------------------------------ #

    def upsample(
        self,
        target_width: int | None = None,
        target_height: int | None = None,
        max_size: int | None = None,
    ) -> SegmentationMask:
        """Strip letterbox padding and resize toward the original image size.

        Args:
            target_width: Output width; defaults to ``original_width``.
            target_height: Output height; defaults to ``original_height``.
            max_size: Cap for the larger output side, scaling both sides
                proportionally. ``0`` means unlimited; ``None`` uses
                :attr:`max_output_size`.
        """
        tw = int(target_width or self.original_width)
        th = int(target_height or self.original_height)
        if tw <= 0 or th <= 0:
            raise InvalidInputError(f"Invalid upsample target {tw}x{th}")

        cap = self.max_output_size if max_size is None else int(max_size)
        if cap > 0 and max(tw, th) > cap:
            scale = cap / max(tw, th)
            tw = max(1, _round_half_up(tw * scale))
            th = max(1, _round_half_up(th * scale))

        pt, pb, pl, pr = self.padding
        top = min(_round_half_up(pt * self.height), self.height - 1)
        left = min(_round_half_up(pl * self.width), self.width - 1)
        bottom = max(self.height - _round_half_up(pb * self.height), top + 1)
        right = max(self.width - _round_half_up(pr * self.width), left + 1)

        payload = self._payload.resized(slice(top, bottom), slice(left, right), tw, th)
        return SegmentationMask(
            payload,
            self.original_width,
            self.original_height,
            (0.0, 0.0, 0.0, 0.0),
            self.max_output_size,
        )

    # ------------------------------------------------------------------ #
    # Output formats
    # ------------------------------------------------------------------ #

    def to_binary(self, threshold: float = 0.5) -> npt.NDArray[np.uint8]:
        """``255`` where probability >= threshold, else ``0``."""
        return np.where(self.data >= threshold, 255, 0).astype(np.uint8)

    def to_uint8(self) -> npt.NDArray[np.uint8]:
        return np.clip(np.rint(self.data * 255.0), 0, 255).astype(np.uint8)

    def to_rgba(
        self,
        foreground: Sequence[int] = (255, 255, 255, 255),
        background: Sequence[int] = (0, 0, 0, 0),
        threshold: float = 0.5,
    ) -> npt.NDArray[np.uint8]:
        """Composite into an ``H x W x 4`` image.

        ``threshold >= 0`` picks foreground or background per pixel; a negative
        threshold blends the two using the probability as alpha.
        """
        fg = _rgba(foreground)
        bg = _rgba(background)
        if threshold >= 0:
            mask = (self.data >= threshold)[..., np.newaxis]
            out = np.where(mask, fg, bg)
        else:
            alpha = self.data[..., np.newaxis]
            out = fg * alpha + bg * (1.0 - alpha)
        return np.clip(np.rint(out), 0, 255).astype(np.uint8)

    def to_format(self, output_format: SegmentationOutputFormat, threshold: float = 0.5):
        if output_format is SegmentationOutputFormat.BINARY:
            return self.to_binary(threshold)
        if output_format is SegmentationOutputFormat.UINT8:
            return self.to_uint8()
        return self.data.copy()

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #

    def to_map(self) -> dict[str, Any]:
        result = {
            "kind": self.kind.value,
            "width": self.width,
            "height": self.height,
            "original_width": self.original_width,
            "original_height": self.original_height,
            "padding": list(self.padding),
            "max_output_size": self.max_output_size,
            "data": self.data.reshape(-1).astype(float).tolist(),
        }
        result.update(self._payload.map_fields())
        return result

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> SegmentationMask:
        if not isinstance(data, Mapping):
            raise InvalidInputError(
                f"SegmentationMask map must be a mapping, got {type(data).__name__}"
            )

        def require(key: str) -> Any:
            if key not in data:
                raise InvalidInputError(f"Missing key '{key}' in SegmentationMask map")
            return data[key]

        def as_int(key: str, default: Any = None) -> int:
            value = require(key) if default is None else data.get(key, default)
            if isinstance(value, bool):
                raise InvalidInputError(f"SegmentationMask.{key} must be an integer")
            try:
                return int(value)
            except (TypeError, ValueError) as exc:
                raise InvalidInputError(
                    f"SegmentationMask.{key} must be an integer, got {value!r}"
                ) from exc

        def as_values(key: str) -> npt.NDArray[np.float32]:
            try:
                return np.asarray(require(key), dtype=np.float32).reshape(-1)
            except (TypeError, ValueError) as exc:
                raise InvalidInputError(
                    f"SegmentationMask.{key} must be a flat list of numbers"
                ) from exc

        try:
            kind = MaskKind(require("kind"))
        except ValueError as exc:
            raise InvalidInputError(f"Unknown mask kind '{data['kind']}'") from exc

        width = as_int("width")
        height = as_int("height")
        if width <= 0 or height <= 0:
            raise InvalidInputError(f"Invalid mask size {width}x{height}")
        raw_padding = require("padding")
        if not isinstance(raw_padding, Sequence) or isinstance(raw_padding, (str, bytes)):
            raise InvalidInputError("SegmentationMask.padding must be a list of 4 numbers")
        try:
            padding = tuple(float(p) for p in raw_padding)
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(
                "SegmentationMask.padding must be a list of 4 numbers"
            ) from exc
        ow = as_int("original_width")
        oh = as_int("original_height")
        max_output_size = as_int("max_output_size", 0)

        if kind is MaskKind.MULTICLASS:
            channels = as_int("channels")
            if channels <= 0:
                raise InvalidInputError(f"Invalid channel count {channels}")
            values = as_values("class_data")
            expected = width * height * channels
            if values.size != expected:
                raise InvalidInputError(
                    f"class_data length {values.size} does not match "
                    f"{width}x{height}x{channels}"
                )
            return cls.multiclass(
                values.reshape(height, width, channels), ow, oh, padding, max_output_size
            )

        values = as_values("data")
        if values.size != width * height:
            raise InvalidInputError(
                f"data length {values.size} does not match {width}x{height}"
            )
        return cls.binary(values.reshape(height, width), ow, oh, padding, max_output_size)

    def __repr__(self) -> str:
        return (
            f"SegmentationMask(kind={self.kind.value}, size={self.width}x{self.height}, "
            f"original={self.original_width}x{self.original_height})"
        )


def _rgba(color: Sequence[int]) -> npt.NDArray[np.float32]:
    values = [float(c) for c in color]
    if len(values) == 3:
        values.append(255.0)
    if len(values) != 4:
        raise InvalidInputError(f"Colors must be RGB or RGBA, got {tuple(color)}")
    return np.asarray(values, dtype=np.float32)
