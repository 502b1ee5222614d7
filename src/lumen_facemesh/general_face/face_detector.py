"""
Face pipeline orchestrator.

``FaceDetector`` sequences the model stages for every image:

    detect -> per face {align, mesh, eye align, iris} -> embed (optional)

Every model call borrows an engine from an :class:`InterpreterPool` for the
duration of one inference. The detector and embedding models are single
instances (pool size 1); mesh and iris models get ``mesh_pool_size`` instances
each so faces can be refined in parallel on a thread pool of the same size.

Failures inside the per-face refinement degrade only that face (or eye); a
detector failure aborts the call. Disposal is the exception: once the pools
are disposed every stage re-raises instead of degrading.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, NamedTuple

import numpy as np
import numpy.typing as npt

from ..backends.base import InferenceEngine
from ..backends.factory import create_engine
from ..backends.pool import InterpreterPool
from ..exceptions import (
    FaceMeshError,
    InferenceError,
    InvalidInputError,
    ModelMismatchError,
    NotInitializedError,
    UseAfterDisposeError,
)
from ..models.detection import MODEL_FILENAMES, FaceDetectionModel
from ..models.embedding import (
    EMBEDDING_MODEL,
    FaceEmbeddingModel,
    compute_embedding_alignment,
    cosine_similarity,
)
from ..models.face_landmark import (
    FACE_LANDMARK_MODEL,
    FaceLandmarkModel,
    estimate_aligned_face,
    transform_mesh_to_absolute,
)
from ..models.iris_landmark import (
    IRIS_LANDMARK_MODEL,
    LEFT_EYE_CORNERS,
    RIGHT_EYE_CORNERS,
    IrisLandmarkModel,
    build_eye_landmarks,
    eye_roi_from_mesh,
)
from ..processing.anchors import ANCHOR_OPTIONS
from ..processing.coordinates import (
    crop_from_normalized_roi,
    decode_image,
    extract_aligned_square,
    face_detection_to_roi,
)
from ..resources.config import FaceMeshConfig
from ..resources.loader import ModelResources
from ..segmentation.engine import (
    SEGMENTATION_INPUT_SIZES,
    SEGMENTATION_MODEL_FILES,
    SelfieSegmentation,
)
from ..segmentation.mask import SegmentationMask
from ..types import (
    EMBEDDING_INPUT_SIZE,
    Detection,
    EyeLandmarks,
    Face,
    FaceDetectionMode,
    FaceKeypoint,
    IrisPair,
    Point,
)
from .stats import PipelineStats

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], InferenceEngine]

_MESH_INPUT_SIZE = (192, 192)
_IRIS_INPUT_SIZE = (64, 64)


def _fallback_input_size(filename: str) -> tuple[int, int] | None:
    """Input ``(height, width)`` to assume for models exported with dynamic dims."""
    for variant, name in MODEL_FILENAMES.items():
        if name == filename:
            opts = ANCHOR_OPTIONS[variant]
            return opts.input_size_height, opts.input_size_width
    for variant, name in SEGMENTATION_MODEL_FILES.items():
        if name == filename:
            width, height = SEGMENTATION_INPUT_SIZES[variant]
            return height, width
    return {
        FACE_LANDMARK_MODEL: _MESH_INPUT_SIZE,
        IRIS_LANDMARK_MODEL: _IRIS_INPUT_SIZE,
        EMBEDDING_MODEL: (EMBEDDING_INPUT_SIZE, EMBEDDING_INPUT_SIZE),
    }.get(filename)


class DetectionWithSegmentation(NamedTuple):
    faces: list[Face]
    mask: SegmentationMask


class FaceDetector:
    """High-level face analysis pipeline.

    Example:
        ```python
        detector = FaceDetector(FaceMeshConfig(model_dir="models"))
        detector.initialize()
        faces = detector.detect_faces(image, mode=FaceDetectionMode.FULL)
        detector.dispose()
        ```

    Args:
        config: Pipeline configuration. Defaults to ``FaceMeshConfig()``.
        engine_factory: Builds one engine for a model filename. Defaults to
            resolving the file under ``config.model_dir`` and creating it with
            the configured runtime.
        stats: Counter sink; a fresh :class:`PipelineStats` if omitted.
    """

    def __init__(
        self,
        config: FaceMeshConfig | None = None,
        engine_factory: EngineFactory | None = None,
        stats: PipelineStats | None = None,
    ) -> None:
        self.config = config or FaceMeshConfig()
        self.stats = stats or PipelineStats()
        self._engine_factory = engine_factory or self._default_engine_factory
        self._resources = ModelResources(self.config.model_dir)

        self._detector_pool: InterpreterPool[FaceDetectionModel] | None = None
        self._mesh_pool: InterpreterPool[FaceLandmarkModel] | None = None
        self._iris_pool: InterpreterPool[IrisLandmarkModel] | None = None
        self._embedding_pool: InterpreterPool[FaceEmbeddingModel] | None = None
        self._segmentation: SelfieSegmentation | None = None
        self._executor: ThreadPoolExecutor | None = None

        self._lock = threading.RLock()
        self._load_time: float | None = None
        self.is_initialized = False
        self._disposed = False

    def _default_engine_factory(self, filename: str) -> InferenceEngine:
        backend = self.config.backend
        return create_engine(
            self._resources.get_model_file(filename),
            backend.runtime,
            fallback_input_size=_fallback_input_size(filename),
            **backend.engine_options(),
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        """Load every face model and build the pools. Idempotent.

        Raises:
            UseAfterDisposeError: If the detector was already disposed.
            ModelLoadingError: If a model file is missing or cannot be opened.
            ModelMismatchError: If a model's tensors do not fit its stage.
        """
        with self._lock:
            if self._disposed:
                raise UseAfterDisposeError("FaceDetector has been disposed")
            if self.is_initialized:
                logger.info("FaceDetector already initialized.")
                return

            t0 = time.time()
            det = self.config.detection
            pool_size = self.config.mesh_pool_size
            color = self.config.input_color_order
            logger.info(
                f"Initializing FaceDetector ({det.variant.value}, "
                f"mesh_pool_size={pool_size})..."
            )

            built: list[InterpreterPool[Any]] = []
            try:
                self._detector_pool = InterpreterPool.create(
                    lambda: FaceDetectionModel(
                        self._engine_factory(MODEL_FILENAMES[det.variant]),
                        det.variant,
                        det.min_score,
                        det.nms_threshold,
                        color,
                    ),
                    1,
                    name="detector",
                )
                built.append(self._detector_pool)
                self._mesh_pool = InterpreterPool.create(
                    lambda: FaceLandmarkModel(
                        self._engine_factory(FACE_LANDMARK_MODEL), color
                    ),
                    pool_size,
                    name="mesh",
                )
                built.append(self._mesh_pool)
                self._iris_pool = InterpreterPool.create(
                    lambda: IrisLandmarkModel(
                        self._engine_factory(IRIS_LANDMARK_MODEL), color
                    ),
                    pool_size,
                    name="iris",
                )
                built.append(self._iris_pool)
                self._embedding_pool = InterpreterPool.create(
                    lambda: FaceEmbeddingModel(
                        self._engine_factory(EMBEDDING_MODEL), color
                    ),
                    1,
                    name="embedding",
                )
                built.append(self._embedding_pool)
            except Exception as e:
                for pool in built:
                    pool.dispose()
                self._detector_pool = self._mesh_pool = None
                self._iris_pool = self._embedding_pool = None
                logger.error(f"Failed to initialize FaceDetector: {e}")
                raise

            self._executor = ThreadPoolExecutor(
                max_workers=pool_size, thread_name_prefix="facemesh"
            )
            self._load_time = time.time() - t0
            self.is_initialized = True
            logger.info(f"FaceDetector initialized in {self._load_time:.2f}s")

    def dispose(self) -> None:
        """Release every pool. In-flight calls finish; later calls fail."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            pools = [
                self._detector_pool,
                self._mesh_pool,
                self._iris_pool,
                self._embedding_pool,
            ]
            executor = self._executor
            segmentation = self._segmentation

        for pool in pools:
            if pool is not None:
                pool.dispose()
        if segmentation is not None:
            segmentation.dispose()
        if executor is not None:
            executor.shutdown(wait=False)
        logger.info("FaceDetector disposed")

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _ensure_ready(self) -> None:
        if self._disposed:
            raise UseAfterDisposeError("FaceDetector has been disposed")
        if not self.is_initialized:
            raise NotInitializedError(
                "FaceDetector not initialized. Call initialize() first."
            )

    # ------------------------------------------------------------------ #
    # Detection
    # ------------------------------------------------------------------ #

    def detect(self, image: npt.NDArray[Any]) -> list[Detection]:
        """Run the detector stage only; boxes and keypoints are normalized."""
        self._ensure_ready()
        _check_image(image)
        try:
            with self._detector_pool.lease() as model:
                detections = model(image)
        except FaceMeshError:
            raise
        except Exception as e:
            raise InferenceError(f"Face detection failed: {e}") from e
        logger.debug("Detected %d face(s)", len(detections))
        return detections

    def detect_faces(
        self,
        image: npt.NDArray[Any],
        mode: FaceDetectionMode = FaceDetectionMode.FULL,
        with_embedding: bool = False,
        stats: PipelineStats | None = None,
    ) -> list[Face]:
        """Detect faces and refine them according to ``mode``.

        Args:
            image: BGR (or gray / BGRA) image array.
            mode: ``fast`` stops after detection, ``standard`` adds the 468-point
                mesh, ``full`` adds iris refinement and moves the eye keypoints
                to the iris centers.
            with_embedding: Attach an identity embedding to every face. A
                failure leaves ``embedding=None`` on that face.
            stats: Counter sink for this call; defaults to ``self.stats``.

        Returns:
            One :class:`Face` per detection, in detection order.

        Raises:
            NotInitializedError: Before :meth:`initialize`.
            UseAfterDisposeError: After :meth:`dispose`.
            InvalidInputError: Empty image.
            InferenceError: The detector failed.
        """
        mode = FaceDetectionMode(mode)
        sink = stats or self.stats
        detections = self.detect(image)
        if not detections:
            return []

        if mode is FaceDetectionMode.FAST or len(detections) == 1:
            faces = [self._refine_face(image, d, mode, sink) for d in detections]
        else:
            try:
                faces = list(
                    self._executor.map(
                        lambda d: self._refine_face(image, d, mode, sink), detections
                    )
                )
            except RuntimeError as e:
                if self._disposed:
                    raise UseAfterDisposeError("FaceDetector has been disposed") from e
                raise

        if with_embedding:
            faces = [self._attach_embedding(face, image, sink) for face in faces]
        return faces

    def detect_faces_from_bytes(
        self,
        data: bytes,
        mode: FaceDetectionMode = FaceDetectionMode.FULL,
        with_embedding: bool = False,
        stats: PipelineStats | None = None,
    ) -> list[Face]:
        """Decode an encoded image (JPEG, PNG, ...) with OpenCV, then detect."""
        self._ensure_ready()
        return self.detect_faces(decode_image(data), mode, with_embedding, stats)

    def detect_faces_and_segment(
        self,
        image: npt.NDArray[Any],
        mode: FaceDetectionMode = FaceDetectionMode.FULL,
        with_embedding: bool = False,
        stats: PipelineStats | None = None,
    ) -> DetectionWithSegmentation:
        """Run face detection and person segmentation on the same image.

        The segmentation model is loaded on first use from
        ``config.segmentation``.
        """
        self._ensure_ready()
        faces = self.detect_faces(image, mode, with_embedding, stats)
        mask = self.segmentation.segment(image)
        return DetectionWithSegmentation(faces, mask)

    @property
    def segmentation(self) -> SelfieSegmentation:
        self._ensure_ready()
        with self._lock:
            if self._disposed:
                raise UseAfterDisposeError("FaceDetector has been disposed")
            if self._segmentation is None:
                seg_config = self.config.segmentation
                engine = self._engine_factory(SEGMENTATION_MODEL_FILES[seg_config.model])
                try:
                    self._segmentation = SelfieSegmentation(engine, seg_config)
                except Exception:
                    engine.close()
                    raise
            return self._segmentation

    # ------------------------------------------------------------------ #
    # Per-face refinement
    # ------------------------------------------------------------------ #

    def _refine_face(
        self,
        image: npt.NDArray[Any],
        detection: Detection,
        mode: FaceDetectionMode,
        stats: PipelineStats,
    ) -> Face:
        height, width = image.shape[:2]
        keypoints = _pixel_keypoints(detection, width, height)
        mesh: tuple[Point, ...] | None = None
        irises: IrisPair | None = None
        degraded = False

        if mode is not FaceDetectionMode.FAST:
            try:
                mesh = self._refine_mesh(image, keypoints)
            except UseAfterDisposeError:
                raise
            except Exception as e:
                logger.warning("Mesh refinement failed, keeping detection only: %s", e)
                degraded = True

        if mesh is not None and mode is FaceDetectionMode.FULL:
            irises = self._refine_irises(image, mesh, stats)
            if irises.left is not None and FaceKeypoint.LEFT_EYE in keypoints:
                keypoints[FaceKeypoint.LEFT_EYE] = irises.left.iris_center
            if irises.right is not None and FaceKeypoint.RIGHT_EYE in keypoints:
                keypoints[FaceKeypoint.RIGHT_EYE] = irises.right.iris_center

        stats.record_face(degraded)
        return Face(
            bounding_box=detection.bounding_box.scale(width, height),
            score=detection.score,
            keypoints=keypoints,
            original_size=(width, height),
            mesh=mesh,
            irises=irises,
        )

    def _refine_mesh(
        self, image: npt.NDArray[Any], keypoints: dict[FaceKeypoint, Point]
    ) -> tuple[Point, ...]:
        required = (FaceKeypoint.LEFT_EYE, FaceKeypoint.RIGHT_EYE, FaceKeypoint.MOUTH)
        if any(k not in keypoints for k in required):
            raise ModelMismatchError("Detection lacks eye and mouth keypoints")
        roi = estimate_aligned_face(
            keypoints[FaceKeypoint.LEFT_EYE],
            keypoints[FaceKeypoint.RIGHT_EYE],
            keypoints[FaceKeypoint.MOUTH],
        )
        crop = extract_aligned_square(image, roi.cx, roi.cy, roi.size, roi.theta)
        if crop is None:
            raise InvalidInputError("Aligned face crop is empty")
        with self._mesh_pool.lease() as model:
            points = model(crop)
        return transform_mesh_to_absolute(points, roi)

    def _refine_irises(
        self, image: npt.NDArray[Any], mesh: Sequence[Point], stats: PipelineStats
    ) -> IrisPair:
        eyes: dict[str, EyeLandmarks | None] = {}
        for side, corners, is_right in (
            ("left", LEFT_EYE_CORNERS, False),
            ("right", RIGHT_EYE_CORNERS, True),
        ):
            try:
                eyes[side] = self._refine_eye(image, mesh, corners, is_right)
                stats.record_iris(True)
            except UseAfterDisposeError:
                raise
            except Exception as e:
                logger.warning("Iris refinement failed for %s eye: %s", side, e)
                eyes[side] = None
                stats.record_iris(False)
        return IrisPair(left=eyes["left"], right=eyes["right"])

    def _refine_eye(
        self,
        image: npt.NDArray[Any],
        mesh: Sequence[Point],
        corners: tuple[int, int],
        is_right: bool,
    ) -> EyeLandmarks:
        roi = eye_roi_from_mesh(mesh, corners)
        crop = extract_aligned_square(image, roi.cx, roi.cy, roi.size, roi.theta)
        if crop is None:
            raise InvalidInputError("Eye crop is empty")
        with self._iris_pool.lease() as model:
            points = model(crop, is_right=is_right)
        return build_eye_landmarks(points, roi, is_right)

    # ------------------------------------------------------------------ #
    # Embeddings
    # ------------------------------------------------------------------ #

    def get_face_embedding(
        self, face: Face, image: npt.NDArray[Any]
    ) -> npt.NDArray[np.float32]:
        """L2-normalized identity embedding for one face.

        Raises:
            InvalidInputError: The face lacks eye keypoints or the crop is empty.
            InferenceError: The embedding model failed.
        """
        self._ensure_ready()
        _check_image(image)
        try:
            left = face.keypoints[FaceKeypoint.LEFT_EYE]
            right = face.keypoints[FaceKeypoint.RIGHT_EYE]
        except KeyError as e:
            raise InvalidInputError("Face lacks eye keypoints for alignment") from e

        roi = compute_embedding_alignment(left, right)
        crop = extract_aligned_square(image, roi.cx, roi.cy, roi.size, roi.theta)
        if crop is None:
            raise InvalidInputError("Embedding crop is empty")
        try:
            with self._embedding_pool.lease() as model:
                embedding = model(crop)
        except FaceMeshError:
            raise
        except Exception as e:
            raise InferenceError(f"Face embedding extraction failed: {e}") from e
        logger.debug("Extracted embedding with shape: %s", embedding.shape)
        return embedding

    def get_face_embeddings(
        self, faces: Sequence[Face], image: npt.NDArray[Any]
    ) -> list[npt.NDArray[np.float32] | None]:
        """Embeddings for several faces; a failed face yields ``None``."""
        results: list[npt.NDArray[np.float32] | None] = []
        for face in faces:
            try:
                results.append(self.get_face_embedding(face, image))
            except UseAfterDisposeError:
                raise
            except (InvalidInputError, InferenceError) as e:
                logger.warning(f"Failed to extract embedding for face: {e}")
                self.stats.record_embedding_failure()
                results.append(None)
        return results

    def _attach_embedding(
        self, face: Face, image: npt.NDArray[Any], stats: PipelineStats
    ) -> Face:
        try:
            return face.with_embedding(self.get_face_embedding(face, image))
        except UseAfterDisposeError:
            raise
        except Exception as e:
            logger.warning(f"Failed to extract embedding for face: {e}")
            stats.record_embedding_failure()
            return face

    # ------------------------------------------------------------------ #
    # Comparison helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def compare_faces(
        a: Face | npt.NDArray[np.float32], b: Face | npt.NDArray[np.float32]
    ) -> float:
        """Cosine similarity of two faces (or embeddings), in [-1, 1]."""
        return cosine_similarity(_embedding_of(a), _embedding_of(b))

    @classmethod
    def find_best_match(
        cls,
        query: Face | npt.NDArray[np.float32],
        candidates: Sequence[Face | npt.NDArray[np.float32]],
        threshold: float = 0.5,
    ) -> tuple[int, float] | None:
        """
        Find the most similar candidate.

        Returns:
            ``(index, similarity)`` of the best candidate, or ``None`` if there
            are no candidates or the best is below ``threshold``.
        """
        if not candidates:
            return None

        best_idx = -1
        best_similarity = -1.0
        for i, candidate in enumerate(candidates):
            similarity = cls.compare_faces(query, candidate)
            if similarity > best_similarity:
                best_similarity = similarity
                best_idx = i

        if best_similarity >= threshold:
            return best_idx, best_similarity
        return None

    @staticmethod
    def crop_face(
        face: Face, image: npt.NDArray[Any], expand_fraction: float = 0.6
    ) -> npt.NDArray[Any]:
        """Square crop around the face box expanded by ``expand_fraction``."""
        _check_image(image)
        height, width = image.shape[:2]
        normalized = face.bounding_box.scale(1.0 / width, 1.0 / height)
        return crop_from_normalized_roi(
            image, face_detection_to_roi(normalized, expand_fraction)
        )

    def info(self) -> dict[str, Any]:
        """Runtime description of every loaded stage."""
        self._ensure_ready()
        stages = {
            "detector": self._detector_pool,
            "mesh": self._mesh_pool,
            "iris": self._iris_pool,
            "embedding": self._embedding_pool,
        }
        return {
            "variant": self.config.detection.variant.value,
            "mesh_pool_size": self.config.mesh_pool_size,
            "load_time": self._load_time,
            "stages": {
                name: pool.contexts[0].engine.get_runtime_info().as_dict()
                for name, pool in stages.items()
                if pool is not None
            },
        }

    def __repr__(self) -> str:
        state = (
            "disposed"
            if self._disposed
            else "ready" if self.is_initialized else "uninitialized"
        )
        return (
            f"FaceDetector(variant={self.config.detection.variant.value}, "
            f"mesh_pool_size={self.config.mesh_pool_size}, state={state})"
        )


def _check_image(image: Any) -> None:
    if image is None or not hasattr(image, "shape") or image.ndim < 2 or image.size == 0:
        raise InvalidInputError("Input image is empty")


def _pixel_keypoints(
    detection: Detection, width: int, height: int
) -> dict[FaceKeypoint, Point]:
    keypoints: dict[FaceKeypoint, Point] = {}
    for kp in FaceKeypoint:
        if kp.index >= detection.num_keypoints:
            break
        x, y = detection.keypoint(kp)
        keypoints[kp] = Point(x * width, y * height)
    return keypoints


def _embedding_of(value: Face | npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
    if isinstance(value, Face):
        if value.embedding is None:
            raise InvalidInputError("Face has no embedding")
        return value.embedding
    return np.asarray(value, dtype=np.float32)
