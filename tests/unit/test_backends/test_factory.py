"""
Unit tests for the engine factory and runtime registry.
"""

import pytest

from lumen_facemesh.backends import factory
from lumen_facemesh.backends.factory import (
    RuntimeKind,
    create_engine,
    get_available_engines,
    register_engine,
)
from lumen_facemesh.backends.onnxrt_backend import ONNXRTEngine

from conftest import FakeEngine


class _RecordingEngine(FakeEngine):
    def __init__(self, model_path, **options):
        super().__init__((1, 8, 8, 3), [[0.0]], name=str(model_path))
        self.options = options


@pytest.fixture
def registry():
    """Snapshot and restore the global engine registry."""
    saved = dict(factory._ENGINE_REGISTRY)
    yield factory._ENGINE_REGISTRY
    factory._ENGINE_REGISTRY.clear()
    factory._ENGINE_REGISTRY.update(saved)


class TestCreateEngine:
    """Runtime selection in create_engine."""

    def test_onnxrt_registered_by_default(self):
        """onnxruntime is a hard dependency, so it is always available."""
        assert RuntimeKind.ONNXRT in get_available_engines()

    def test_unknown_runtime(self, tmp_path):
        """Unknown runtimes raise ValueError listing what is available."""
        with pytest.raises(ValueError, match="not available"):
            create_engine(tmp_path / "m.onnx", runtime="tensorrt")

    def test_onnx_alias(self, mock_onnx_session_class, mock_onnx_model_file):
        """'onnx' is accepted as an alias for 'onnxrt'."""
        engine = create_engine(
            mock_onnx_model_file, runtime="ONNX", providers=["CPUExecutionProvider"]
        )

        assert isinstance(engine, ONNXRTEngine)

    def test_registered_engine_receives_options(self, registry, tmp_path):
        """Custom runtimes get the model path and keyword options."""
        register_engine("recording", _RecordingEngine)
        engine = create_engine(tmp_path / "x.onnx", runtime="recording", intra_op_threads=2)

        assert isinstance(engine, _RecordingEngine)
        assert engine.options == {"intra_op_threads": 2}
        assert engine.name.endswith("x.onnx")
