"""
Transport-agnostic request dispatcher.

Requests and responses are small envelopes:

    request:  {"id": ..., "op": "detect", ...params}
    response: {"id": ..., "result": {...}}  or  {"id": ..., "error": {...}}

``FaceMeshService.handle`` routes a request to the handler registered for its
op and never raises for a failing request: every exception becomes an error
envelope carrying the error ``kind`` tag. Moving envelopes between processes
(queues, sockets, pipes) is left to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import numpy.typing as npt

from ..exceptions import FaceMeshError, InvalidInputError
from ..processing.coordinates import decode_image
from ..segmentation.engine import SelfieSegmentation
from ..segmentation.mask import SegmentationOutputFormat
from ..types import Face, FaceDetectionMode
from .face_detector import FaceDetector

logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], dict[str, Any]]


@dataclass
class ServiceRequest:
    id: Any
    op: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_map(self) -> dict[str, Any]:
        return {"id": self.id, "op": self.op, **self.payload}

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> ServiceRequest:
        if not isinstance(data, Mapping):
            raise InvalidInputError(
                f"Request must be a mapping, got {type(data).__name__}"
            )
        if "id" not in data:
            raise InvalidInputError("Request is missing 'id'")
        op = data.get("op")
        if not isinstance(op, str) or not op:
            raise InvalidInputError("Request is missing 'op'")
        payload = {k: v for k, v in data.items() if k not in ("id", "op")}
        return cls(id=data["id"], op=op, payload=payload)


@dataclass
class ServiceResponse:
    """Exactly one of ``result`` or ``error`` is set."""

    id: Any
    result: dict[str, Any] | None = None
    error: dict[str, str] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, request_id: Any, exc: BaseException) -> ServiceResponse:
        kind = exc.kind if isinstance(exc, FaceMeshError) else "Internal"
        return cls(id=request_id, error={"kind": kind, "message": str(exc)})

    def to_map(self) -> dict[str, Any]:
        if self.error is not None:
            return {"id": self.id, "error": dict(self.error)}
        return {"id": self.id, "result": self.result}

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> ServiceResponse:
        if "id" not in data:
            raise InvalidInputError("Response is missing 'id'")
        has_result = "result" in data
        has_error = data.get("error") is not None
        if has_result == has_error:
            raise InvalidInputError(
                "Response must carry exactly one of 'result' or 'error'"
            )
        if has_error:
            error = data["error"]
            if not isinstance(error, Mapping) or "kind" not in error:
                raise InvalidInputError("Response error must be a mapping with 'kind'")
            return cls(
                id=data["id"],
                error={"kind": str(error["kind"]), "message": str(error.get("message", ""))},
            )
        return cls(id=data["id"], result=data["result"])


class FaceMeshService:
    """Synchronous op dispatcher over a :class:`FaceDetector`.

    Supported ops: ``detect``, ``embedding``, ``embeddings``, ``segment``,
    ``detect_and_segment``, ``dispose``. Image parameters are either
    ``image`` (an ndarray) or ``image_bytes`` (encoded bytes).
    """

    def __init__(
        self,
        detector: FaceDetector,
        segmentation: SelfieSegmentation | None = None,
    ) -> None:
        self.detector = detector
        self._segmentation = segmentation
        self._handlers: dict[str, Handler] = {}
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        self._handlers = {
            "detect": self._handle_detect,
            "embedding": self._handle_embedding,
            "embeddings": self._handle_embeddings,
            "segment": self._handle_segment,
            "detect_and_segment": self._handle_detect_and_segment,
            "dispose": self._handle_dispose,
        }

    @property
    def ops(self) -> list[str]:
        return list(self._handlers)

    @property
    def segmentation(self) -> SelfieSegmentation:
        if self._segmentation is None:
            self._segmentation = self.detector.segmentation
        return self._segmentation

    def handle(self, request: ServiceRequest | Mapping[str, Any]) -> ServiceResponse:
        """Dispatch one request; failures come back as error envelopes."""
        if isinstance(request, ServiceRequest):
            request_id = request.id
        elif isinstance(request, Mapping):
            request_id = request.get("id")
        else:
            request_id = None
        t0 = time.time()
        try:
            if not isinstance(request, ServiceRequest):
                request = ServiceRequest.from_map(request)
            handler = self._handlers.get(request.op)
            if handler is None:
                raise InvalidInputError(
                    f"Unsupported op: {request.op}. Available ops: {self.ops}"
                )
            result = handler(request.payload)
        except FaceMeshError as e:
            logger.warning("Request %s failed (%s): %s", request_id, e.kind, e)
            return ServiceResponse.failure(request_id, e)
        except Exception as e:
            logger.error(f"Error processing request {request_id}: {e}", exc_info=True)
            return ServiceResponse.failure(request_id, e)

        logger.debug(
            "Request %s (%s) handled in %.1f ms",
            request_id,
            request.op,
            (time.time() - t0) * 1000,
        )
        return ServiceResponse(id=request_id, result=result)

    # -------- Handlers ----------

    def _handle_detect(self, params: Mapping[str, Any]) -> dict[str, Any]:
        image = _image_param(params)
        faces = self.detector.detect_faces(
            image,
            mode=_mode_param(params),
            with_embedding=bool(params.get("with_embedding", False)),
        )
        return {"faces": [face.to_map() for face in faces], "count": len(faces)}

    def _handle_embedding(self, params: Mapping[str, Any]) -> dict[str, Any]:
        image = _image_param(params)
        face = Face.from_map(_require(params, "face"))
        embedding = self.detector.get_face_embedding(face, image)
        return {"embedding": embedding.astype(float).tolist()}

    def _handle_embeddings(self, params: Mapping[str, Any]) -> dict[str, Any]:
        image = _image_param(params)
        faces = [Face.from_map(f) for f in _require(params, "faces")]
        embeddings = self.detector.get_face_embeddings(faces, image)
        return {
            "embeddings": [
                e.astype(float).tolist() if e is not None else None for e in embeddings
            ]
        }

    def _handle_segment(self, params: Mapping[str, Any]) -> dict[str, Any]:
        image = _image_param(params)
        mask = self.segmentation.segment(image)
        return _mask_result(mask, params)

    def _handle_detect_and_segment(self, params: Mapping[str, Any]) -> dict[str, Any]:
        image = _image_param(params)
        faces = self.detector.detect_faces(
            image,
            mode=_mode_param(params),
            with_embedding=bool(params.get("with_embedding", False)),
        )
        mask = self.segmentation.segment(image)
        return {
            "faces": [face.to_map() for face in faces],
            "count": len(faces),
            "segmentation": _mask_result(mask, params),
        }

    def _handle_dispose(self, params: Mapping[str, Any]) -> dict[str, Any]:
        if self._segmentation is not None:
            self._segmentation.dispose()
        self.detector.dispose()
        return {"disposed": True}


def _require(params: Mapping[str, Any], key: str) -> Any:
    if key not in params:
        raise InvalidInputError(f"Missing parameter '{key}'")
    return params[key]


def _mode_param(params: Mapping[str, Any]) -> FaceDetectionMode:
    value = params.get("mode", FaceDetectionMode.FULL.value)
    try:
        return FaceDetectionMode(value)
    except ValueError as e:
        raise InvalidInputError(f"Unknown detection mode '{value}'") from e


def _image_param(params: Mapping[str, Any]) -> npt.NDArray[Any]:
    if params.get("image") is not None:
        image = params["image"]
        if not isinstance(image, np.ndarray):
            raise InvalidInputError("Parameter 'image' must be a numpy array")
        return image
    data = params.get("image_bytes")
    if not data:
        raise InvalidInputError("Request needs 'image' or 'image_bytes'")
    return decode_image(bytes(data))


def _mask_result(mask, params: Mapping[str, Any]) -> dict[str, Any]:
    try:
        output_format = SegmentationOutputFormat(params.get("output_format", "float32"))
    except ValueError as e:
        raise InvalidInputError(
            f"Unknown output_format '{params.get('output_format')}'"
        ) from e
    if params.get("upsample", False):
        mask = mask.upsample(max_size=params.get("max_size"))

    if output_format is SegmentationOutputFormat.FLOAT32:
        return {"format": output_format.value, "mask": mask.to_map()}

    threshold = float(params.get("threshold", 0.5))
    pixels = mask.to_format(output_format, threshold)
    return {
        "format": output_format.value,
        "width": mask.width,
        "height": mask.height,
        "original_width": mask.original_width,
        "original_height": mask.original_height,
        "data": pixels.reshape(-1).tolist(),
    }
