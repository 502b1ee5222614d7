"""
Bounded pool of reusable, non-thread-safe model execution contexts.

A pool owns exactly N contexts for one model. Each context runs one inference
at a time; up to N run in parallel. Callers that find every context busy wait
in FIFO order and a released context is handed straight to the longest
waiter, so a late caller can never overtake one that is already queued.

With N=1 the pool is a plain FIFO mutex, which is how single-instance models
(detector, embedding, segmentation) are serialized.

Disposal:
    ``dispose()`` is idempotent. It wakes every waiter with
    :class:`PoolDisposedError` and closes idle contexts immediately. Contexts
    that are checked out keep running; each is closed when its in-flight call
    releases it. New ``acquire()`` calls fail fast.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from ..exceptions import InvalidInputError, PoolDisposedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _default_close(context: Any) -> None:
    close = getattr(context, "close", None)
    if callable(close):
        close()


class _Waiter:
    __slots__ = ("event", "context", "disposed")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.context: Any = None
        self.disposed = False


class InterpreterPool(Generic[T]):
    """Fixed-size FIFO pool of execution contexts."""

    def __init__(
        self,
        contexts: Sequence[T],
        name: str = "interpreter",
        close: Callable[[T], None] | None = None,
    ) -> None:
        if not contexts:
            raise InvalidInputError("InterpreterPool needs at least one context")
        self.name = name
        self._contexts = list(contexts)
        self._free: deque[T] = deque(self._contexts)
        self._busy: set[int] = set()
        self._waiters: deque[_Waiter] = deque()
        self._lock = threading.Lock()
        self._disposed = False
        self._close = close or _default_close

    @classmethod
    def create(
        cls,
        factory: Callable[[], T],
        size: int,
        name: str = "interpreter",
        close: Callable[[T], None] | None = None,
    ) -> InterpreterPool[T]:
        """Build ``size`` contexts with ``factory``; partial builds are closed on failure."""
        if size < 1:
            raise InvalidInputError(f"Pool size must be >= 1, got {size}")
        closer = close or _default_close
        contexts: list[T] = []
        try:
            for _ in range(size):
                contexts.append(factory())
        except Exception:
            for ctx in contexts:
                closer(ctx)
            raise
        logger.debug("Created %s pool with %d context(s)", name, size)
        return cls(contexts, name=name, close=close)

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def size(self) -> int:
        return len(self._contexts)

    @property
    def available(self) -> int:
        with self._lock:
            return len(self._free)

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._busy)

    @property
    def waiting(self) -> int:
        with self._lock:
            return len(self._waiters)

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def contexts(self) -> list[T]:
        return list(self._contexts)

    # ------------------------------------------------------------------ #
    # Borrow / return
    # ------------------------------------------------------------------ #

    def acquire(self, timeout: float | None = None) -> T:
        """Check out a context, waiting FIFO when all are busy.

        Raises:
            PoolDisposedError: The pool is, or becomes while waiting, disposed.
            TimeoutError: ``timeout`` seconds elapsed without a free context.
        """
        with self._lock:
            if self._disposed:
                raise PoolDisposedError(f"{self.name} pool has been disposed")
            if self._free and not self._waiters:
                context = self._free.popleft()
                self._busy.add(id(context))
                return context
            waiter = _Waiter()
            self._waiters.append(waiter)

        signaled = waiter.event.wait(timeout)

        with self._lock:
            if not signaled and waiter.context is None and not waiter.disposed:
                self._waiters.remove(waiter)
                raise TimeoutError(
                    f"Timed out after {timeout}s waiting for a {self.name} context"
                )
        if waiter.disposed:
            raise PoolDisposedError(f"{self.name} pool was disposed while waiting")
        return waiter.context

    def release(self, context: T) -> None:
        """Return a context; wakes the longest-waiting acquire if any."""
        to_close = None
        with self._lock:
            key = id(context)
            if key not in self._busy:
                raise InvalidInputError(
                    f"Context is not checked out from the {self.name} pool"
                )
            if self._disposed:
                self._busy.discard(key)
                to_close = context
            elif self._waiters:
                waiter = self._waiters.popleft()
                waiter.context = context
                waiter.event.set()
            else:
                self._busy.discard(key)
                self._free.append(context)

        if to_close is not None:
            self._safe_close(to_close)

    @contextmanager
    def lease(self, timeout: float | None = None) -> Iterator[T]:
        """Scoped acquisition; the context is released on every exit path."""
        context = self.acquire(timeout)
        try:
            yield context
        finally:
            self.release(context)

    def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``fn(context, *args, **kwargs)`` on a leased context."""
        with self.lease() as context:
            return fn(context, *args, **kwargs)

    # ------------------------------------------------------------------ #
    # Disposal
    # ------------------------------------------------------------------ #

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            waiters = list(self._waiters)
            self._waiters.clear()
            for waiter in waiters:
                waiter.disposed = True
                waiter.event.set()
            idle = list(self._free)
            self._free.clear()
            busy = len(self._busy)

        for context in idle:
            self._safe_close(context)
        logger.debug(
            "Disposed %s pool (%d idle closed, %d in flight, %d waiter(s) woken)",
            self.name,
            len(idle),
            busy,
            len(waiters),
        )

    def _safe_close(self, context: T) -> None:
        try:
            self._close(context)
        except Exception as exc:
            logger.warning("Failed to close %s context: %s", self.name, exc)

    def __repr__(self) -> str:
        return (
            f"InterpreterPool(name={self.name!r}, size={self.size}, "
            f"disposed={self._disposed})"
        )
