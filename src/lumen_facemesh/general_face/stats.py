"""Diagnostic counters for the face pipeline."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass


@dataclass
class _Counters:
    iris_ok: int = 0
    iris_failed: int = 0
    iris_fallback: int = 0
    faces_processed: int = 0
    faces_degraded: int = 0
    embedding_failures: int = 0


class PipelineStats:
    """Thread-safe counters injected into :class:`FaceDetector`.

    ``iris_ok`` / ``iris_failed`` count eyes; ``iris_fallback`` counts eyes whose
    detector keypoint was kept because iris refinement failed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters = _Counters()

    def record_iris(self, ok: bool) -> None:
        with self._lock:
            if ok:
                self._counters.iris_ok += 1
            else:
                self._counters.iris_failed += 1
                self._counters.iris_fallback += 1

    def record_face(self, degraded: bool) -> None:
        with self._lock:
            self._counters.faces_processed += 1
            if degraded:
                self._counters.faces_degraded += 1

    def record_embedding_failure(self) -> None:
        with self._lock:
            self._counters.embedding_failures += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return asdict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = _Counters()

    def __repr__(self) -> str:
        return f"PipelineStats({self.snapshot()})"
