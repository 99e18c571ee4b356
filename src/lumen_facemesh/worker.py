"""
Background worker for the face pipeline.

``FaceWorker`` runs a ``FacePipeline`` in a separate process and talks to it
only through two queues. Each call becomes a ``WorkerRequest`` with a fresh
id; the worker answers with a ``WorkerResponse`` carrying the same id, and a
reader thread resolves the matching future in the ``PendingTable``.

Large buffers do not travel through the queues. The caller copies image
bytes once into a ``multiprocessing.shared_memory`` segment and sends its
name; the worker maps the segment and reads the pixels in place, and the
caller unlinks it when the request settles. In the other direction the
worker places mesh points and segmentation masks in segments of its own and
sends ``SharedArray`` references; the caller copies each one out once and
unlinks it.
"""

from __future__ import annotations

import itertools
import logging
import queue
import sys
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from multiprocessing import get_context, shared_memory
from typing import Any

import numpy as np
import numpy.typing as npt

from .config import FaceDetectionMode, PipelineConfig
from .exceptions import (
    DisposedError,
    PoolNotInitializedError,
    WorkerError,
    WorkerTimeoutError,
)
from .imaging import decode_image, ensure_rgb_image
from .pipeline import FacePipeline
from .types import Detection, Face, FaceMesh, SegmentationMask

logger = logging.getLogger(__name__)

HANDSHAKE_ID = 0
DISPOSE_ID = -1
DISPOSE_JOIN_TIMEOUT = 5.0


class WorkerOp:
    """Operations understood by the worker loop."""

    DETECT = "detect"
    EMBEDDING = "embedding"
    EMBEDDINGS = "embeddings"
    SEGMENT = "segment"
    DISPOSE = "dispose"


@dataclass(frozen=True)
class SharedImage:
    """Reference to image bytes placed in a shared memory segment."""

    name: str
    kind: str  # "encoded" or "pixels"
    shape: tuple[int, ...]
    nbytes: int


@dataclass(frozen=True)
class SharedArray:
    """Reference to a result array the worker placed in shared memory."""

    name: str
    shape: tuple[int, ...]
    dtype: str


@dataclass(frozen=True)
class WorkerRequest:
    id: int
    op: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerResponse:
    id: int
    result: Any = None
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PendingTable:
    """Outstanding requests keyed by a monotonically increasing id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(HANDSHAKE_ID + 1)
        self._entries: dict[int, Future] = {}

    def register(self) -> tuple[int, Future]:
        future: Future = Future()
        with self._lock:
            request_id = next(self._ids)
            self._entries[request_id] = future
        return request_id, future

    def _pop(self, request_id: int) -> Future | None:
        with self._lock:
            return self._entries.pop(request_id, None)

    def resolve(self, request_id: int, result: Any) -> bool:
        future = self._pop(request_id)
        if future is None:
            return False
        future.set_result(result)
        return True

    def reject(self, request_id: int, error: BaseException) -> bool:
        future = self._pop(request_id)
        if future is None:
            return False
        future.set_exception(error)
        return True

    def fail_all(self, error: BaseException) -> int:
        with self._lock:
            entries, self._entries = self._entries, {}
        for future in entries.values():
            future.set_exception(error)
        return len(entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# --------------------------------------------------------------------------- #
# Shared memory helpers
# --------------------------------------------------------------------------- #


def share_image(image: bytes | bytearray | memoryview | np.ndarray) -> tuple[
    shared_memory.SharedMemory, SharedImage
]:
    """Copy ``image`` into a new shared memory segment owned by the caller."""
    if isinstance(image, np.ndarray):
        data = np.ascontiguousarray(image, dtype=np.uint8)
        kind, shape = "pixels", tuple(data.shape)
    else:
        data = np.frombuffer(image, dtype=np.uint8)
        kind, shape = "encoded", (data.size,)
    shm = shared_memory.SharedMemory(create=True, size=max(data.nbytes, 1))
    np.ndarray(shape, dtype=np.uint8, buffer=shm.buf)[...] = data
    return shm, SharedImage(name=shm.name, kind=kind, shape=shape, nbytes=data.nbytes)


def _attach(name: str) -> shared_memory.SharedMemory:
    # The creating process owns the segment's lifetime
    if sys.version_info >= (3, 13):
        return shared_memory.SharedMemory(name=name, track=False)
    return shared_memory.SharedMemory(name=name)


@contextmanager
def attached_image(ref: SharedImage) -> Iterator[npt.NDArray[np.uint8]]:
    """Map a shared image as an RGB array for the duration of the block."""
    shm = _attach(ref.name)
    view = np.ndarray(ref.shape, dtype=np.uint8, buffer=shm.buf)
    try:
        if ref.kind == "encoded":
            yield decode_image(view)
        else:
            yield ensure_rgb_image(view)
    finally:
        del view
        try:
            shm.close()
        except BufferError:
            logger.debug("Shared image %s still referenced; closing at exit", ref.name)


def export_array(array: np.ndarray) -> SharedArray:
    """Copy ``array`` into a new segment whose lifetime passes to the reader."""
    data = np.ascontiguousarray(array)
    shm = shared_memory.SharedMemory(create=True, size=max(data.nbytes, 1))
    try:
        np.ndarray(data.shape, dtype=data.dtype, buffer=shm.buf)[...] = data
    except Exception:
        shm.close()
        shm.unlink()
        raise
    shm.close()
    return SharedArray(name=shm.name, shape=tuple(data.shape), dtype=data.dtype.str)


def import_array(ref: SharedArray) -> np.ndarray:
    """Copy a shared result array into an owned array and unlink its segment."""
    shm = shared_memory.SharedMemory(name=ref.name)
    try:
        return np.ndarray(ref.shape, dtype=np.dtype(ref.dtype), buffer=shm.buf).copy()
    finally:
        shm.close()
        try:
            shm.unlink()
        except FileNotFoundError:
            pass


def discard_array(ref: SharedArray) -> None:
    try:
        shm = shared_memory.SharedMemory(name=ref.name)
    except FileNotFoundError:
        return
    shm.close()
    try:
        shm.unlink()
    except FileNotFoundError:
        pass


def _export_result(result: Any, exported: list[SharedArray]) -> Any:
    """Swap mesh points and mask planes for shared memory references."""

    def share(array: np.ndarray) -> SharedArray:
        ref = export_array(array)
        exported.append(ref)
        return ref

    if isinstance(result, list):
        return [_export_result(item, exported) for item in result]
    if isinstance(result, Face) and result.mesh is not None:
        return replace(result, mesh=share(result.mesh.points))
    if isinstance(result, SegmentationMask):
        class_data = result.class_data
        return replace(
            result,
            data=share(result.data),
            class_data=share(class_data) if class_data is not None else None,
        )
    return result


def _import_result(result: Any) -> Any:
    if isinstance(result, list):
        return [_import_result(item) for item in result]
    if isinstance(result, Face) and isinstance(result.mesh, SharedArray):
        return replace(result, mesh=FaceMesh(import_array(result.mesh)))
    if isinstance(result, SegmentationMask) and isinstance(result.data, SharedArray):
        class_data = result.class_data
        return replace(
            result,
            data=import_array(result.data),
            class_data=import_array(class_data) if class_data is not None else None,
        )
    return result


def _shared_refs(result: Any) -> Iterator[SharedArray]:
    if isinstance(result, list):
        for item in result:
            yield from _shared_refs(item)
    elif isinstance(result, Face) and isinstance(result.mesh, SharedArray):
        yield result.mesh
    elif isinstance(result, SegmentationMask):
        for ref in (result.data, result.class_data):
            if isinstance(ref, SharedArray):
                yield ref


# --------------------------------------------------------------------------- #
# Worker process
# --------------------------------------------------------------------------- #


def _dispatch(pipeline: FacePipeline, request: WorkerRequest) -> Any:
    payload = request.payload
    with attached_image(payload["image"]) as image:
        if request.op == WorkerOp.DETECT:
            return pipeline.detect_faces(image, payload.get("mode"))
        if request.op == WorkerOp.EMBEDDING:
            return pipeline.get_face_embedding(image, payload["face"])
        if request.op == WorkerOp.EMBEDDINGS:
            return pipeline.get_face_embeddings(image, payload["faces"])
        if request.op == WorkerOp.SEGMENT:
            return pipeline.get_segmentation_mask(image)
    raise ValueError(f"Unknown worker operation '{request.op}'")


def _worker_main(
    config_data: dict[str, Any],
    pipeline_factory: Callable[[PipelineConfig], FacePipeline],
    requests: Any,
    responses: Any,
    log_level: int | None,
) -> None:
    if log_level is not None:
        from .logging_setup import setup_logging

        setup_logging(log_level)

    try:
        pipeline = pipeline_factory(PipelineConfig.model_validate(config_data))
        pipeline.initialize()
    except Exception as exc:
        responses.put(
            WorkerResponse(HANDSHAKE_ID, error=str(exc), error_type=type(exc).__name__)
        )
        return
    responses.put(WorkerResponse(HANDSHAKE_ID, result="ready"))

    try:
        while True:
            request: WorkerRequest = requests.get()
            if request.op == WorkerOp.DISPOSE:
                break
            exported: list[SharedArray] = []
            try:
                result = _export_result(_dispatch(pipeline, request), exported)
                response = WorkerResponse(request.id, result=result)
            except Exception as exc:
                for ref in exported:
                    discard_array(ref)
                response = WorkerResponse(
                    request.id, error=str(exc), error_type=type(exc).__name__
                )
            responses.put(response)
    finally:
        pipeline.dispose()


# --------------------------------------------------------------------------- #
# Caller side
# --------------------------------------------------------------------------- #


class FaceWorker:
    """Runs a ``FacePipeline`` in a background process.

    Args:
        config: Pipeline configuration; ``worker_init_timeout`` bounds the
            startup handshake.
        pipeline_factory: Module-level callable building the pipeline inside
            the worker. It must be importable by reference.
        log_level: Configure logging inside the worker when given.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        pipeline_factory: Callable[[PipelineConfig], FacePipeline] = FacePipeline,
        log_level: int | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self._pipeline_factory = pipeline_factory
        self._log_level = log_level
        self._ctx = get_context("spawn")
        self._requests: Any = None
        self._responses: Any = None
        self._process: Any = None
        self._reader: threading.Thread | None = None
        self._pending = PendingTable()
        self._segments: dict[int, shared_memory.SharedMemory] = {}
        self._segments_lock = threading.Lock()
        self._lifecycle_lock = threading.RLock()
        self._initialized = False
        self._disposed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        if self._initialized:
            return
        if self._disposed:
            raise DisposedError("FaceWorker disposed")

        self._requests = self._ctx.Queue()
        self._responses = self._ctx.Queue()
        self._process = self._ctx.Process(
            target=_worker_main,
            args=(
                self.config.model_dump(mode="json"),
                self._pipeline_factory,
                self._requests,
                self._responses,
                self._log_level,
            ),
            name="lumen-facemesh-worker",
            daemon=True,
        )
        self._process.start()

        timeout = self.config.worker_init_timeout
        try:
            handshake: WorkerResponse = self._responses.get(timeout=timeout)
        except queue.Empty:
            self._teardown(kill=True)
            raise WorkerTimeoutError(
                f"Worker did not become ready within {timeout:.1f}s"
            ) from None

        if not handshake.ok:
            self._teardown(kill=True)
            raise WorkerError(
                f"Worker failed to initialize: {handshake.error}", handshake.error_type
            )

        self._reader = threading.Thread(
            target=self._read_responses, name="lumen-facemesh-reader", daemon=True
        )
        self._reader.start()
        with self._lifecycle_lock:
            if self._disposed:
                # dispose() ran during startup and already tore the process down
                raise DisposedError("FaceWorker disposed")
            self._initialized = True
        logger.info("FaceWorker started (pid=%s)", self._process.pid)

    def _read_responses(self) -> None:
        while True:
            try:
                response = self._responses.get()
            except (EOFError, OSError):
                break
            if response is None:
                break
            self._release_segment(response.id)
            if response.ok:
                try:
                    result = _import_result(response.result)
                except Exception as exc:
                    for ref in _shared_refs(response.result):
                        discard_array(ref)
                    self._pending.reject(
                        response.id,
                        WorkerError(
                            f"Failed to read worker result: {exc}", type(exc).__name__
                        ),
                    )
                    continue
                self._pending.resolve(response.id, result)
            else:
                self._pending.reject(
                    response.id, WorkerError(response.error or "", response.error_type)
                )

    def _teardown(self, kill: bool) -> None:
        process = self._process
        if process is not None:
            if kill and process.is_alive():
                process.kill()
            process.join(DISPOSE_JOIN_TIMEOUT)
            if process.is_alive():
                process.kill()
                process.join()
        for q in (self._requests, self._responses):
            if q is not None:
                q.close()
                q.cancel_join_thread()
        with self._segments_lock:
            segments, self._segments = self._segments, {}
        for shm in segments.values():
            self._unlink(shm)

    def dispose(self) -> None:
        """Fail pending requests, stop the worker and release its resources."""
        with self._lifecycle_lock:
            if self._disposed:
                return
            self._disposed = True
            was_running = self._initialized
            self._initialized = False
            failed = self._pending.fail_all(DisposedError("disposed"))
            if was_running:
                try:
                    self._requests.put(WorkerRequest(DISPOSE_ID, WorkerOp.DISPOSE))
                except (ValueError, OSError):
                    logger.debug("Request queue already closed; killing worker")

        if failed:
            logger.info("Failed %d pending worker requests on dispose", failed)
        if was_running:
            self._process.join(DISPOSE_JOIN_TIMEOUT)
            # Wake the reader so it can exit
            self._responses.put(None)
            if self._reader is not None:
                self._reader.join(DISPOSE_JOIN_TIMEOUT)
        self._teardown(kill=True)
        logger.info("FaceWorker disposed")

    def __enter__(self) -> FaceWorker:
        self.initialize()
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def _check_open(self) -> None:
        if self._disposed:
            raise DisposedError("FaceWorker disposed")
        if not self._initialized:
            raise PoolNotInitializedError(
                "FaceWorker not initialized. Call initialize() first."
            )

    @staticmethod
    def _unlink(shm: shared_memory.SharedMemory) -> None:
        shm.close()
        try:
            shm.unlink()
        except FileNotFoundError:
            pass

    def _release_segment(self, request_id: int) -> None:
        with self._segments_lock:
            shm = self._segments.pop(request_id, None)
        if shm is not None:
            self._unlink(shm)

    def submit(
        self,
        op: str,
        image: bytes | bytearray | memoryview | np.ndarray,
        **payload: Any,
    ) -> Future:
        """Send one request and return the future that its response settles."""
        self._check_open()
        shm, ref = share_image(image)
        with self._lifecycle_lock:
            try:
                self._check_open()
            except (DisposedError, PoolNotInitializedError):
                self._unlink(shm)
                raise
            request_id, future = self._pending.register()
            with self._segments_lock:
                self._segments[request_id] = shm
            try:
                self._requests.put(WorkerRequest(request_id, op, {"image": ref, **payload}))
            except (ValueError, OSError):
                # Queue closed underneath us
                self._release_segment(request_id)
                self._pending.reject(request_id, DisposedError("disposed"))
            except Exception as exc:
                self._release_segment(request_id)
                self._pending.reject(request_id, exc)
        return future

    def detect_faces(
        self,
        image: bytes | np.ndarray,
        mode: FaceDetectionMode | str | None = None,
        timeout: float | None = None,
    ) -> list[Face]:
        mode_value = FaceDetectionMode(mode).value if mode is not None else None
        return self.submit(WorkerOp.DETECT, image, mode=mode_value).result(timeout)

    def get_face_embedding(
        self,
        image: bytes | np.ndarray,
        face: Face | Detection,
        timeout: float | None = None,
    ) -> npt.NDArray[np.float32]:
        return self.submit(WorkerOp.EMBEDDING, image, face=face).result(timeout)

    def get_face_embeddings(
        self,
        image: bytes | np.ndarray,
        faces: Sequence[Face | Detection],
        timeout: float | None = None,
    ) -> list[npt.NDArray[np.float32] | None]:
        return self.submit(WorkerOp.EMBEDDINGS, image, faces=list(faces)).result(timeout)

    def get_segmentation_mask(
        self, image: bytes | np.ndarray, timeout: float | None = None
    ) -> SegmentationMask:
        return self.submit(WorkerOp.SEGMENT, image).result(timeout)
