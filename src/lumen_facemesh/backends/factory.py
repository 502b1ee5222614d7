"""
Engine factory for creating inference engines based on configuration.

Engines are registered by runtime kind so that optional runtimes can be
plugged in without importing them unconditionally.
"""

from __future__ import annotations

import importlib.util
import logging
from pathlib import Path
from typing import Any

from .base import InferenceEngine

logger = logging.getLogger(__name__)


class RuntimeKind:
    """Runtime kinds for inference engines."""

    ONNXRT = "onnxrt"


# Global registry for engines
_ENGINE_REGISTRY: dict[str, type[InferenceEngine]] = {}


def register_engine(kind: str, engine_class: type[InferenceEngine]) -> None:
    """Register an engine class for a given runtime kind."""
    _ENGINE_REGISTRY[kind] = engine_class


def get_available_engines() -> list[str]:
    """Get a list of available runtime kinds."""
    if importlib.util.find_spec("onnxruntime") is not None:
        from .onnxrt_backend import ONNXRTEngine

        _ENGINE_REGISTRY.setdefault(RuntimeKind.ONNXRT, ONNXRTEngine)

    return list(_ENGINE_REGISTRY.keys())


def _normalize_runtime(runtime: str) -> str:
    normalized = runtime.lower()
    if normalized == "onnx":
        return RuntimeKind.ONNXRT
    return normalized


def create_engine(
    model_path: str | Path,
    runtime: str = RuntimeKind.ONNXRT,
    **options: Any,
) -> InferenceEngine:
    """
    Create an inference engine for one model file.

    Args:
        model_path: Path to the model file.
        runtime: The runtime kind to use (e.g., "onnx").
        **options: Engine-specific keyword arguments (providers,
            device_preference, intra_op_threads, ...).

    Returns:
        A ready engine instance.

    Raises:
        ValueError: If the specified runtime is not available.
    """
    get_available_engines()

    kind = _normalize_runtime(runtime)
    engine_class = _ENGINE_REGISTRY.get(kind)
    if engine_class is None:
        available = list(_ENGINE_REGISTRY.keys())
        raise ValueError(
            f"Runtime '{runtime}' is not available. Available runtimes: {available}"
        )

    logger.debug("Creating %s engine for %s", kind, Path(model_path).name)
    return engine_class(model_path, **options)
