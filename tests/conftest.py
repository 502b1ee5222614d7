"""
Pytest configuration and shared fixtures for lumen-facemesh tests.

No model weights are needed: every stage runs on ``FakeEngine``, an
``InferenceEngine`` that returns canned tensors shaped like the real models.
"""

import threading
import time
from unittest.mock import Mock, patch

import numpy as np
import pytest

from lumen_facemesh.backends.base import BackendInfo, InferenceEngine
from lumen_facemesh.models.detection import MODEL_FILENAMES
from lumen_facemesh.models.embedding import EMBEDDING_MODEL
from lumen_facemesh.models.face_landmark import FACE_LANDMARK_MODEL
from lumen_facemesh.models.iris_landmark import IRIS_LANDMARK_MODEL
from lumen_facemesh.resources.config import FaceMeshConfig, SegmentationModelVariant
from lumen_facemesh.segmentation.engine import SEGMENTATION_MODEL_FILES
from lumen_facemesh.types import DetectionModelVariant


class FakeEngine(InferenceEngine):
    """Deterministic engine returning fixed outputs.

    ``outputs`` is a list of arrays or a callable ``tensor -> list``. Tracks
    call count and peak concurrency so pool behaviour can be asserted.
    """

    def __init__(self, input_shape, outputs, name="fake", delay=0.0, fail=False):
        super().__init__()
        self.name = name
        self._input_shape = tuple(input_shape)
        self._outputs = outputs
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.last_tensor = None
        self._lock = threading.Lock()

    @property
    def input_shape(self):
        return self._input_shape

    @property
    def output_shapes(self):
        outputs = self._outputs(None) if callable(self._outputs) else self._outputs
        return [tuple(np.asarray(o).shape) for o in outputs]

    def _run(self, tensor):
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.last_tensor = tensor
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail:
                raise RuntimeError(f"{self.name} exploded")
            outputs = self._outputs(tensor) if callable(self._outputs) else self._outputs
            return [np.array(o, dtype=np.float32, copy=True) for o in outputs]
        finally:
            with self._lock:
                self.active -= 1

    def get_runtime_info(self):
        return BackendInfo(
            runtime="fake",
            model_id=self.name,
            input_shape=self._input_shape,
            output_shapes=self.output_shapes,
        )


# --------------------------------------------------------------------------- #
# Canned model outputs
# --------------------------------------------------------------------------- #

# front_camera detector: 128x128 input, 896 anchors. Anchor 272 sits at the
# image center (0.53125, 0.53125); anchor 420 at (0.15625, 0.84375).
CENTER_ANCHOR = 272
CORNER_ANCHOR = 420

# Keypoint offsets from the anchor in model pixels:
# left eye, right eye, nose, mouth, left tragion, right tragion.
KEYPOINT_OFFSETS = [(-16, -16), (16, -16), (0, 0), (0, 20), (-30, -10), (30, -10)]


def detector_outputs(faces=((CENTER_ANCHOR, 5.0, 64.0),)):
    """Regressor [1, 896, 16] and logits [1, 896, 1] for the given anchors."""
    boxes = np.zeros((1, 896, 16), dtype=np.float32)
    scores = np.full((1, 896, 1), -10.0, dtype=np.float32)
    for anchor, logit, size in faces:
        scores[0, anchor, 0] = logit
        boxes[0, anchor, 2] = size
        boxes[0, anchor, 3] = size
        for k, (dx, dy) in enumerate(KEYPOINT_OFFSETS):
            scale = size / 64.0
            boxes[0, anchor, 4 + 2 * k] = dx * scale
            boxes[0, anchor, 5 + 2 * k] = dy * scale
    return [boxes, scores]


def mesh_outputs():
    """468 points in 192x192 model pixels, x varying, y fixed at the crop center."""
    i = np.arange(468)
    points = np.stack([20.0 + (i % 150), np.full(468, 96.0), np.zeros(468)], axis=1)
    return [points.reshape(1, 1404), np.array([[8.0]])]


def iris_outputs():
    """71 eye-mesh points then 5 iris points (center first) in 64x64 model pixels."""
    i = np.arange(71)
    eye = np.stack([i % 64, np.full(71, 30.0), np.zeros(71)], axis=1)
    iris = np.array(
        [[32, 32, 0], [37, 32, 0], [32, 37, 0], [27, 32, 0], [32, 27, 0]],
        dtype=np.float32,
    )
    return [eye.reshape(1, 213), iris.reshape(1, 15)]


def embedding_outputs():
    return [np.arange(1, 193, dtype=np.float32).reshape(1, 192)]


def make_detector_engine(**kwargs):
    outputs = kwargs.pop("outputs", None) or detector_outputs()
    return FakeEngine((1, 128, 128, 3), outputs, name="detector", **kwargs)


def make_mesh_engine(**kwargs):
    return FakeEngine((1, 192, 192, 3), mesh_outputs(), name="mesh", **kwargs)


def make_iris_engine(**kwargs):
    return FakeEngine((1, 64, 64, 3), iris_outputs(), name="iris", **kwargs)


def make_embedding_engine(**kwargs):
    return FakeEngine((1, 112, 112, 3), embedding_outputs(), name="embedding", **kwargs)


def make_segmentation_engine(channels=1, width=256, height=256, outputs=None, **kwargs):
    if outputs is None:
        rng = np.random.default_rng(7)
        outputs = [rng.normal(0.5, 0.6, (1, height, width, channels)).astype(np.float32)]
    return FakeEngine(
        (1, height, width, 3), outputs, name=f"segmentation{channels}", **kwargs
    )


class EngineFactory:
    """Maps model filenames to fresh fake engines and remembers what it built."""

    def __init__(self, overrides=None):
        self.overrides = overrides or {}
        self.created = []

    def __call__(self, filename):
        builders = {
            MODEL_FILENAMES[DetectionModelVariant.FRONT_CAMERA]: make_detector_engine,
            FACE_LANDMARK_MODEL: make_mesh_engine,
            IRIS_LANDMARK_MODEL: make_iris_engine,
            EMBEDDING_MODEL: make_embedding_engine,
            SEGMENTATION_MODEL_FILES[SegmentationModelVariant.GENERAL]: make_segmentation_engine,
            SEGMENTATION_MODEL_FILES[SegmentationModelVariant.MULTICLASS]: (
                lambda **kw: make_segmentation_engine(channels=6, **kw)
            ),
        }
        if filename not in builders:
            raise FileNotFoundError(filename)
        engine = builders[filename](**self.overrides.get(filename, {}))
        self.created.append(engine)
        return engine

    def engines(self, name):
        return [e for e in self.created if e.name == name]


# --------------------------------------------------------------------------- #
# Fixtures
# --------------------------------------------------------------------------- #


@pytest.fixture
def sample_image():
    """Seeded 256x256 BGR image."""
    rng = np.random.default_rng(42)
    return rng.integers(0, 256, (256, 256, 3), dtype=np.uint8)


@pytest.fixture
def wide_image():
    rng = np.random.default_rng(43)
    return rng.integers(0, 256, (120, 320, 3), dtype=np.uint8)


@pytest.fixture
def facemesh_config(tmp_path):
    return FaceMeshConfig.model_validate(
        {
            "model_dir": str(tmp_path),
            "detection": {"variant": "front_camera"},
            "mesh_pool_size": 2,
        }
    )


@pytest.fixture
def engine_factory():
    return EngineFactory()


class MockONNXSession:
    """Mock ONNX session exposing an NCHW 128x128 input and two outputs."""

    def __init__(self, model_path, sess_options=None, providers=None):
        self.model_path = model_path
        self.providers = providers or ["CPUExecutionProvider"]
        self.feeds = []

        self.input_info = Mock()
        self.input_info.name = "input"
        self.input_info.shape = [1, 3, 128, 128]

        boxes = Mock()
        boxes.name = "regressors"
        boxes.shape = [1, 896, 16]
        scores = Mock()
        scores.name = "classificators"
        scores.shape = [1, 896, "n"]
        self.output_infos = [boxes, scores]

    def get_inputs(self):
        return [self.input_info]

    def get_outputs(self):
        return self.output_infos

    def run(self, output_names, input_feed):
        self.feeds.append(input_feed)
        return [
            np.zeros((1, 896, 16), dtype=np.float32),
            np.zeros((1, 896, 1), dtype=np.float32),
        ]


@pytest.fixture
def mock_onnx_session_class():
    """Patch onnxruntime.InferenceSession with MockONNXSession."""
    with patch(
        "lumen_facemesh.backends.onnxrt_backend.ort.InferenceSession", MockONNXSession
    ) as mock_session:
        yield mock_session


@pytest.fixture
def mock_onnx_model_file(tmp_path):
    model_path = tmp_path / "face_detection_front.onnx"
    model_path.write_bytes(b"mock_onnx_model_content")
    return model_path


# Custom pytest markers for categorizing tests
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line(
        "markers", "concurrency: marks tests exercising threads and pools"
    )
    config.addinivalue_line(
        "markers", "segmentation: marks tests for selfie segmentation"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on their location and names."""
    for item in items:
        if "unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        if "segmentation" in str(item.fspath):
            item.add_marker(pytest.mark.segmentation)
        if "concurren" in item.name:
            item.add_marker(pytest.mark.concurrency)
