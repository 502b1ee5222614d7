"""
Base model-execution engine for the face mesh pipeline.

This module defines the contract every inference runtime must honor. The
pipeline never loads or compiles models itself; it hands a tensor to an
engine and reads tensors back. Engines are *not* required to be safe for
concurrent use: callers serialize access through
:class:`~lumen_facemesh.backends.pool.InterpreterPool`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt

from ..exceptions import InvalidInputError, UseAfterDisposeError


@dataclass
class BackendInfo:
    """Runtime configuration and model metadata for one engine.

    Attributes:
        runtime: Runtime framework name (e.g., "onnx").
        device: Target device identifier (e.g., "cuda", "coreml", "cpu").
        model_id: Stable model identifier, usually the model filename.
        version: Runtime version string.
        input_shape: Logical NHWC input shape.
        output_shapes: Output tensor shapes; dynamic dims are reported as -1.
        extra: Additional metadata as key-value pairs.
    """

    runtime: str
    device: str | None = None
    model_id: str | None = None
    version: str | None = None
    input_shape: tuple[int, ...] = ()
    output_shapes: list[tuple[int, ...]] = field(default_factory=list)
    extra: dict[str, str | None] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        """Convert to a plain dict (safe for JSON serialization)."""
        return {
            "runtime": self.runtime,
            "device": self.device,
            "model_id": self.model_id,
            "version": self.version,
            "input_shape": list(self.input_shape),
            "output_shapes": [list(s) for s in self.output_shapes],
            "extra": dict(self.extra),
        }


class InferenceEngine(ABC):
    """Abstract single-input model executor.

    Concrete engines expose a logical NHWC input ``[1, H, W, C]`` regardless of
    the layout the underlying runtime uses, and return every output tensor of
    the model in declaration order.

    Lifecycle:
        Engines are ready after construction. ``close()`` releases runtime
        resources and is idempotent; ``run`` afterwards raises
        :class:`UseAfterDisposeError`.
    """

    def __init__(self) -> None:
        self._closed = False

    @property
    @abstractmethod
    def input_shape(self) -> tuple[int, ...]:
        """Logical NHWC input shape, e.g. ``(1, 128, 128, 3)``."""

    @property
    @abstractmethod
    def output_shapes(self) -> list[tuple[int, ...]]:
        """Shapes of every output tensor."""

    @property
    def input_size(self) -> tuple[int, int]:
        """Input ``(height, width)``."""
        shape = self.input_shape
        return int(shape[1]), int(shape[2])

    @property
    def is_closed(self) -> bool:
        return self._closed

    def run(self, tensor: npt.NDArray[np.float32]) -> list[npt.NDArray[np.float32]]:
        """Run one inference.

        Args:
            tensor: NHWC float32 input matching :attr:`input_shape`.

        Returns:
            All model outputs as float32 arrays.

        Raises:
            UseAfterDisposeError: If the engine was closed.
            InvalidInputError: If the tensor shape does not match.
        """
        if self._closed:
            raise UseAfterDisposeError("Cannot run inference on a closed engine")
        expected = tuple(self.input_shape)
        if tuple(tensor.shape[1:]) != expected[1:]:
            raise InvalidInputError(
                f"Input tensor shape {tuple(tensor.shape)} does not match engine input {expected}"
            )
        return [np.asarray(out, dtype=np.float32) for out in self._run(tensor)]

    @abstractmethod
    def _run(self, tensor: npt.NDArray[np.float32]) -> list[npt.NDArray]:
        """Runtime-specific inference."""

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()

    def _release(self) -> None:
        """Release runtime resources; called once by ``close()``."""

    @abstractmethod
    def get_runtime_info(self) -> BackendInfo:
        """Describe the runtime, device and tensor layout."""
