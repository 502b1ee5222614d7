"""
ONNX Runtime inference engine.

Wraps a single ``onnxruntime.InferenceSession`` behind the
:class:`~lumen_facemesh.backends.base.InferenceEngine` contract. Models
converted from TFLite keep their NHWC input; models exported from PyTorch
usually take NCHW. Both are accepted and the engine transposes as needed, so
the rest of the pipeline only ever builds NHWC tensors.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

import numpy as np
import numpy.typing as npt
import onnxruntime as ort

from ..exceptions import InferenceError, ModelLoadingError
from .base import BackendInfo, InferenceEngine

logger = logging.getLogger(__name__)


_PROVIDER_PRIORITY = [
    "CUDAExecutionProvider",
    "CoreMLExecutionProvider",
    "DmlExecutionProvider",
    "OpenVINOExecutionProvider",
    "CPUExecutionProvider",
]

_PREFERENCE_MAP = {
    "cuda": "CUDAExecutionProvider",
    "coreml": "CoreMLExecutionProvider",
    "directml": "DmlExecutionProvider",
    "openvino": "OpenVINOExecutionProvider",
    "cpu": "CPUExecutionProvider",
}


def default_providers(device_preference: str | None = None) -> list[str]:
    """Available providers in priority order, the preferred device first."""
    available = set(ort.get_available_providers())
    selected = [prov for prov in _PROVIDER_PRIORITY if prov in available]

    desired = _PREFERENCE_MAP.get((device_preference or "").lower())
    if desired and desired in selected:
        selected.insert(0, selected.pop(selected.index(desired)))

    return selected or ["CPUExecutionProvider"]


def infer_device(providers: list[str]) -> str:
    provs = [p.lower() for p in providers]
    if any("cuda" in p for p in provs):
        return "cuda"
    if any("coreml" in p for p in provs):
        return "coreml"
    if any("dml" in p for p in provs):
        return "directml"
    if any("openvino" in p for p in provs):
        return "openvino"
    return "cpu"


def _static_dim(value: Any) -> int:
    return value if isinstance(value, int) and value > 0 else -1


class ONNXRTEngine(InferenceEngine):
    """Single-session ONNX Runtime engine."""

    def __init__(
        self,
        model_path: str | Path,
        providers: list[str] | None = None,
        device_preference: str | None = None,
        intra_op_threads: int | None = None,
        fallback_input_size: tuple[int, int] | None = None,
    ) -> None:
        super().__init__()
        self.model_path = Path(model_path)
        self._providers = providers or default_providers(device_preference)

        if not self.model_path.exists():
            raise ModelLoadingError(f"Model not found: {self.model_path}")

        start = time.time()
        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = (
            ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        if intra_op_threads:
            sess_options.intra_op_num_threads = int(intra_op_threads)

        try:
            self._session = ort.InferenceSession(
                str(self.model_path), sess_options, providers=self._providers
            )
        except Exception as exc:
            raise ModelLoadingError(
                f"Failed to create ONNX session for {self.model_path.name}: {exc}"
            ) from exc

        model_input = self._session.get_inputs()[0]
        self._input_name = model_input.name
        self._channels_first, self._input_shape = self._resolve_input_layout(
            list(model_input.shape), fallback_input_size
        )
        self._output_shapes = [
            tuple(_static_dim(d) for d in out.shape) for out in self._session.get_outputs()
        ]

        logger.info(
            "ONNXRTEngine %s ready in %.2fs (input=%s, layout=%s, providers=%s)",
            self.model_path.name,
            time.time() - start,
            self._input_shape,
            "NCHW" if self._channels_first else "NHWC",
            ",".join(self._providers),
        )

    def _resolve_input_layout(
        self, shape: list[Any], fallback: tuple[int, int] | None
    ) -> tuple[bool, tuple[int, int, int, int]]:
        if len(shape) != 4:
            raise ModelLoadingError(
                f"{self.model_path.name}: expected a 4-D image input, got {shape}"
            )
        dims = [_static_dim(d) for d in shape]
        channels_first = dims[1] in (1, 3, 4) and dims[3] not in (1, 3, 4)
        if channels_first:
            channels, height, width = dims[1], dims[2], dims[3]
        else:
            height, width, channels = dims[1], dims[2], dims[3]

        if height <= 0 or width <= 0:
            if fallback is None:
                raise ModelLoadingError(
                    f"{self.model_path.name}: dynamic input size needs a fallback_input_size"
                )
            height, width = fallback
        if channels <= 0:
            channels = 3
        return channels_first, (1, height, width, channels)

    @property
    def input_shape(self) -> tuple[int, ...]:
        return self._input_shape

    @property
    def output_shapes(self) -> list[tuple[int, ...]]:
        return list(self._output_shapes)

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    def _run(self, tensor: npt.NDArray[np.float32]) -> list[npt.NDArray]:
        feed = np.ascontiguousarray(tensor, dtype=np.float32)
        if self._channels_first:
            feed = np.ascontiguousarray(np.transpose(feed, (0, 3, 1, 2)))
        try:
            return list(self._session.run(None, {self._input_name: feed}))
        except Exception as exc:
            raise InferenceError(
                f"ONNX inference failed for {self.model_path.name}: {exc}"
            ) from exc

    def _release(self) -> None:
        # InferenceSession frees native memory when collected.
        self._session = None
        logger.debug("ONNXRTEngine %s closed", self.model_path.name)

    def get_runtime_info(self) -> BackendInfo:
        return BackendInfo(
            runtime="onnx",
            device=infer_device(self._providers),
            model_id=self.model_path.name,
            version=getattr(ort, "__version__", None),
            input_shape=self._input_shape,
            output_shapes=self.output_shapes,
            extra={
                "providers": ",".join(self._providers),
                "layout": "NCHW" if self._channels_first else "NHWC",
            },
        )
