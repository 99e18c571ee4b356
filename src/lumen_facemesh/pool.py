"""
Concurrent model pool.

Inference runners keep fixed input/output buffers that are rewritten on every
call, so a runner must never serve two calls at once. ``ExclusiveHandle``
wraps one runner with a mutex and a single-thread executor: submissions run
strictly one after another in submission order. ``ModelPool`` round-robins
work over N such handles so up to N calls progress in parallel.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Generic, TypeVar

from .exceptions import DisposedError, PoolNotInitializedError

logger = logging.getLogger(__name__)

H = TypeVar("H")
R = TypeVar("R")


def _default_release(handle: object) -> None:
    close = getattr(handle, "close", None)
    if callable(close):
        close()


class ExclusiveHandle(Generic[H]):
    """A single handle whose calls are serialized in FIFO order."""

    def __init__(
        self,
        handle: H,
        name: str = "handle",
        release: Callable[[H], None] | None = None,
    ) -> None:
        self.handle = handle
        self.name = name
        self._release = release or _default_release
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._state_lock = threading.Lock()
        self._disposed = False
        self._released = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _call(self, fn: Callable[[H], R]) -> R:
        if self._disposed:
            raise DisposedError(f"{self.name} disposed")
        with self._lock:
            return fn(self.handle)

    def submit(self, fn: Callable[[H], R]) -> Future[R]:
        """Queue ``fn(handle)`` behind every earlier submission."""
        with self._state_lock:
            if self._disposed:
                raise DisposedError(f"{self.name} disposed")
            return self._executor.submit(self._call, fn)

    def run(self, fn: Callable[[H], R]) -> R:
        return self.submit(fn).result()

    def dispose(self) -> None:
        """Fail queued work, wait for the running call, release the handle once."""
        with self._state_lock:
            if self._disposed:
                return
            self._disposed = True
        try:
            self._executor.shutdown(wait=True)
        finally:
            self._release_once()

    def _release_once(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._release(self.handle)
        except Exception:
            logger.exception("Failed to release %s", self.name)


class ModelPool(Generic[H]):
    """Round-robin pool of interchangeable handles.

    Args:
        factory: Called with the slot index to create each handle.
        size: Number of handles; must be at least 1.
        release: Called exactly once per handle on disposal. Defaults to the
            handle's ``close()`` when present.
        name: Label used for worker threads and log lines.
    """

    def __init__(
        self,
        factory: Callable[[int], H],
        size: int = 3,
        release: Callable[[H], None] | None = None,
        name: str = "pool",
    ) -> None:
        if size < 1:
            raise ValueError(f"Pool size must be >= 1, got {size}")
        self._factory = factory
        self._size = size
        self._release = release
        self.name = name
        self._slots: list[ExclusiveHandle[H]] = []
        self._counter = itertools.count()
        self._counter_lock = threading.Lock()
        self._initialized = False
        self._disposed = False

    @property
    def size(self) -> int:
        return self._size

    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def handles(self) -> list[H]:
        return [slot.handle for slot in self._slots]

    def initialize(self) -> None:
        """Create every handle; a failure releases the ones already built."""
        if self._initialized:
            return
        if self._disposed:
            raise DisposedError(f"{self.name} disposed")
        slots: list[ExclusiveHandle[H]] = []
        try:
            for idx in range(self._size):
                handle = self._factory(idx)
                slots.append(
                    ExclusiveHandle(handle, name=f"{self.name}-{idx}", release=self._release)
                )
        except Exception:
            for slot in slots:
                slot.dispose()
            raise
        self._slots = slots
        self._initialized = True
        logger.info("%s pool ready with %d handles", self.name, self._size)

    def next_index(self) -> int:
        """Select ``counter mod N`` and advance the counter."""
        with self._counter_lock:
            return next(self._counter) % self._size

    def submit(self, fn: Callable[[H], R]) -> Future[R]:
        if self._disposed:
            raise DisposedError(f"{self.name} disposed")
        if not self._initialized:
            raise PoolNotInitializedError(f"{self.name} pool not initialized")
        return self._slots[self.next_index()].submit(fn)

    def run(self, fn: Callable[[H], R]) -> R:
        return self.submit(fn).result()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for slot in self._slots:
            slot.dispose()
        self._initialized = False
        logger.info("%s pool disposed", self.name)
