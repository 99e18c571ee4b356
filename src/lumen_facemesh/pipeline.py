"""
Face pipeline orchestrator.

Per image the pipeline runs detection once, then for every detected face:

1. derives the aligned face crop from the detection keypoints,
2. runs the mesh model through a round-robin ``ModelPool``,
3. derives both eye crops from the mesh and runs the left and right iris
   models concurrently on their own exclusive handles.

Detection failures abort the call. Failures in steps 1-3 only affect the
face they happened on: they are recorded as a failed ``StageResult`` and the
face is returned without that feature.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np
import numpy.typing as npt

from .alignment import (
    AlignedRoi,
    compute_embedding_alignment,
    compute_face_alignment,
    crop_to_image,
    extract_roi,
    eye_rois_from_mesh,
    iris_center_index,
)
from .backends.base import ModelRunner
from .backends.factory import create_runner
from .config import (
    FACE_EMBEDDING_FILE,
    FACE_LANDMARK_FILE,
    IRIS_LANDMARK_FILE,
    FaceDetectionMode,
    PipelineConfig,
)
from .exceptions import DisposedError, PoolNotInitializedError
from .imaging import ImageInput, load_image
from .models import (
    FaceDetectionModel,
    FaceEmbeddingModel,
    FaceMeshModel,
    IrisModel,
    SegmentationModel,
)
from .pool import ExclusiveHandle, ModelPool
from .types import (
    EYE_MESH_POINT_COUNT,
    AlignedCrop,
    Detection,
    Eye,
    EyePair,
    Face,
    FaceLandmarkType,
    FaceMesh,
    PipelineStats,
    Point3,
    SegmentationMask,
    StageResult,
)

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[Path, "tuple[int, int] | None"], ModelRunner]

# Fallback input sizes for models exported with dynamic spatial dims
MESH_INPUT_SIZE = (192, 192)
IRIS_INPUT_SIZE = (64, 64)
EMBEDDING_INPUT_SIZE = (112, 112)
SEGMENTATION_INPUT_SIZE = (256, 256)


@dataclass(frozen=True)
class FaceResult:
    """Per-face outcome of every sub-stage that ran."""

    detection: Detection
    alignment: StageResult[AlignedRoi] | None = None
    mesh: StageResult[FaceMesh] | None = None
    eyes: StageResult[EyePair] | None = None

    def to_face(self) -> Face:
        eyes = self.eyes.value_or_none() if self.eyes else None
        detection = _refine_eye_keypoints(self.detection, eyes) if eyes else self.detection
        return Face(
            detection=detection,
            mesh=self.mesh.value_or_none() if self.mesh else None,
            eyes=eyes,
        )


@dataclass(frozen=True)
class FaceBatch:
    """All per-face results for one image."""

    results: list[FaceResult] = field(default_factory=list)

    @property
    def faces(self) -> list[Face]:
        return [r.to_face() for r in self.results]

    @property
    def stats(self) -> PipelineStats:
        def _count(attr: str, ok: bool) -> int:
            return sum(
                1
                for r in self.results
                if getattr(r, attr) is not None and getattr(r, attr).ok == ok
            )

        return PipelineStats(
            faces=len(self.results),
            alignment_failed=_count("alignment", False),
            mesh_ok=_count("mesh", True),
            mesh_failed=_count("mesh", False),
            iris_ok=_count("eyes", True),
            iris_failed=_count("eyes", False),
        )


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #


def _refine_eye_keypoints(det: Detection, eyes: EyePair) -> Detection:
    """Replace the detector's eye keypoints with the iris centers."""
    if det.image_size is None:
        return det
    width, height = det.image_size
    keypoints = list(det.keypoints)
    for kind, eye in (
        (FaceLandmarkType.LEFT_EYE, eyes.left),
        (FaceLandmarkType.RIGHT_EYE, eyes.right),
    ):
        if eye is None:
            continue
        idx = int(kind) * 2
        keypoints[idx] = eye.iris_center.x / width
        keypoints[idx + 1] = eye.iris_center.y / height
    return replace(det, keypoints=tuple(keypoints))


def _points(arr: npt.NDArray[np.float32]) -> tuple[Point3, ...]:
    return tuple(Point3(float(x), float(y), float(z)) for x, y, z in arr)


def build_eye(points_px: npt.NDArray[np.float32]) -> Eye:
    """Split 76 pixel-space iris-model points into an ``Eye``."""
    eye_mesh = _points(points_px[:EYE_MESH_POINT_COUNT])
    iris = _points(points_px[EYE_MESH_POINT_COUNT:])
    center = iris_center_index(points_px[EYE_MESH_POINT_COUNT:])
    contour = tuple(p for i, p in enumerate(iris) if i != center)
    return Eye(iris_center=iris[center], iris_contour=contour, mesh=eye_mesh)


def _capture(future: Future) -> StageResult:
    try:
        return StageResult.success(future.result())
    except Exception as exc:
        return StageResult.failure(exc)


# --------------------------------------------------------------------------- #
# Pipeline
# --------------------------------------------------------------------------- #


class FacePipeline:
    """Detection, mesh and iris pipeline over a set of model runners.

    Args:
        config: Pipeline configuration.
        runner_factory: Builds an uninitialized runner from a model path and
            a fallback ``(h, w)`` input size. Defaults to ONNX Runtime
            runners created with the configured providers.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        runner_factory: RunnerFactory | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self._runner_factory = runner_factory or self._default_runner_factory
        self._detector: ExclusiveHandle[FaceDetectionModel] | None = None
        self._mesh_pool: ModelPool[FaceMeshModel] | None = None
        self._iris_left: ExclusiveHandle[IrisModel] | None = None
        self._iris_right: ExclusiveHandle[IrisModel] | None = None
        self._embedding: ExclusiveHandle[FaceEmbeddingModel] | None = None
        self._segmentation: ExclusiveHandle[SegmentationModel] | None = None
        self._initialized = False
        self._disposed = False

    def _default_runner_factory(
        self, path: Path, fallback: tuple[int, int] | None
    ) -> ModelRunner:
        return create_runner(
            path,
            providers=self.config.providers,
            device_preference=self.config.device_preference,
            fallback_size=fallback,
        )

    def _runner(self, filename: str | Path, fallback: tuple[int, int] | None) -> ModelRunner:
        path = filename if isinstance(filename, Path) else self.config.model_path(filename)
        return self._runner_factory(path, fallback)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        """Load every model; on failure everything built so far is released."""
        if self._initialized:
            return
        if self._disposed:
            raise DisposedError("FacePipeline disposed")

        start = time.time()
        cfg = self.config
        try:
            options = cfg.anchor_options
            detector = FaceDetectionModel(
                self._runner(cfg.detection_model_path, (options.input_height, options.input_width)),
                options,
                min_score=cfg.min_score,
                nms_threshold=cfg.nms_threshold,
                raw_score_limit=cfg.raw_score_limit,
                mirror_output=cfg.mirror_output,
            )
            self._detector = ExclusiveHandle(detector, name="detector")
            detector.initialize()

            self._mesh_pool = ModelPool(
                self._new_mesh_model, size=cfg.mesh_pool_size, name="mesh"
            )
            self._mesh_pool.initialize()

            self._iris_left = self._exclusive(
                IrisModel(self._runner(IRIS_LANDMARK_FILE, IRIS_INPUT_SIZE)), "iris-left"
            )
            self._iris_right = self._exclusive(
                IrisModel(self._runner(IRIS_LANDMARK_FILE, IRIS_INPUT_SIZE)), "iris-right"
            )

            if cfg.enable_embedding:
                self._embedding = self._exclusive(
                    FaceEmbeddingModel(self._runner(FACE_EMBEDDING_FILE, EMBEDDING_INPUT_SIZE)),
                    "embedding",
                )
            if cfg.enable_segmentation:
                self._segmentation = self._exclusive(
                    SegmentationModel(
                        self._runner(cfg.segmentation_model_path, SEGMENTATION_INPUT_SIZE),
                        multiclass=cfg.segmentation_multiclass,
                    ),
                    "segmentation",
                )
        except Exception:
            self._release_all()
            raise

        self._initialized = True
        logger.info(
            "FacePipeline ready in %.2fs (detector=%s, mesh_pool=%d, mode=%s)",
            time.time() - start,
            cfg.detection_model.value,
            cfg.mesh_pool_size,
            cfg.mode.value,
        )

    def _new_mesh_model(self, index: int) -> FaceMeshModel:
        model = FaceMeshModel(self._runner(FACE_LANDMARK_FILE, MESH_INPUT_SIZE))
        try:
            model.initialize()
        except Exception:
            model.close()
            raise
        return model

    @staticmethod
    def _exclusive(stage, name: str) -> ExclusiveHandle:
        handle = ExclusiveHandle(stage, name=name)
        try:
            stage.initialize()
        except Exception:
            handle.dispose()
            raise
        return handle

    def is_initialized(self) -> bool:
        return self._initialized

    def _ensure_ready(self) -> None:
        if self._disposed:
            raise DisposedError("FacePipeline disposed")
        if not self._initialized:
            raise PoolNotInitializedError(
                "FacePipeline not initialized. Call initialize() first."
            )

    def _release_all(self) -> None:
        for handle in (
            self._detector,
            self._iris_left,
            self._iris_right,
            self._embedding,
            self._segmentation,
        ):
            if handle is not None:
                handle.dispose()
        if self._mesh_pool is not None:
            self._mesh_pool.dispose()

    def dispose(self) -> None:
        """Release every model exactly once. Further calls raise DisposedError."""
        if self._disposed:
            return
        self._disposed = True
        self._initialized = False
        self._release_all()
        logger.info("FacePipeline disposed")

    def __enter__(self) -> FacePipeline:
        self.initialize()
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    # ------------------------------------------------------------------ #
    # Detection pipeline
    # ------------------------------------------------------------------ #

    def detect(self, image: ImageInput) -> list[Detection]:
        """Run the detector only. Errors here abort the call."""
        self._ensure_ready()
        assert self._detector is not None
        rgb = load_image(image)
        return self._detector.run(lambda model: model.detect(rgb))

    def detect_faces(
        self, image: ImageInput, mode: FaceDetectionMode | str | None = None
    ) -> list[Face]:
        """Detect faces and, depending on ``mode``, their mesh and irises."""
        return self.process(image, mode).faces

    def process(
        self, image: ImageInput, mode: FaceDetectionMode | str | None = None
    ) -> FaceBatch:
        """Like ``detect_faces`` but keeps every per-face stage result."""
        self._ensure_ready()
        assert self._detector is not None
        mode = FaceDetectionMode(mode) if mode is not None else self.config.mode

        rgb = load_image(image)
        detections = self._detector.run(lambda model: model.detect(rgb))
        if not mode.wants_mesh or not detections:
            return FaceBatch([FaceResult(det) for det in detections])

        alignments = [self._align_face(rgb, det) for det in detections]
        meshes = self._run_meshes(alignments)

        if mode.wants_iris:
            eyes = self._run_irises(rgb, meshes)
        else:
            eyes = [None] * len(detections)

        results = [
            FaceResult(detection=det, alignment=aligned[0], mesh=mesh, eyes=eye)
            for det, aligned, mesh, eye in zip(detections, alignments, meshes, eyes)
        ]
        batch = FaceBatch(results)
        logger.debug("Processed image: %s", batch.stats.as_dict())
        return batch

    def _align_face(
        self, image: npt.NDArray[np.uint8], det: Detection
    ) -> tuple[StageResult[AlignedRoi], AlignedCrop | None]:
        img_h, img_w = image.shape[:2]
        try:
            roi = compute_face_alignment(det, img_w, img_h)
            return StageResult.success(roi), extract_roi(image, roi)
        except Exception as exc:
            logger.warning("Face alignment failed: %s", exc)
            return StageResult.failure(exc), None

    def _run_meshes(
        self, alignments: Sequence[tuple[StageResult[AlignedRoi], AlignedCrop | None]]
    ) -> list[StageResult[FaceMesh] | None]:
        assert self._mesh_pool is not None
        pending: list[Future | None] = [
            self._mesh_pool.submit(lambda model, crop=crop: model.predict(crop.take()))
            if crop is not None
            else None
            for _, crop in alignments
        ]

        # All mesh calls are awaited before any crop buffer is dropped
        outcomes = [_capture(f) if f is not None else None for f in pending]
        for _, crop in alignments:
            if crop is not None:
                crop.release()

        results: list[StageResult[FaceMesh] | None] = []
        for (roi, _), outcome in zip(alignments, outcomes):
            if outcome is None:
                results.append(None)
                continue
            if outcome.ok:
                try:
                    outcome = StageResult.success(
                        FaceMesh(crop_to_image(outcome.value, roi.value))
                    )
                except Exception as exc:
                    outcome = StageResult.failure(exc)
            if not outcome.ok:
                logger.warning("Face mesh failed: %s", outcome.error)
            results.append(outcome)
        return results

    def _run_irises(
        self,
        image: npt.NDArray[np.uint8],
        meshes: Sequence[StageResult[FaceMesh] | None],
    ) -> list[StageResult[EyePair] | None]:
        assert self._iris_left is not None and self._iris_right is not None
        jobs: list[tuple[AlignedRoi, AlignedRoi, Future, Future] | StageResult | None] = []
        for mesh in meshes:
            if mesh is None or not mesh.ok:
                jobs.append(None)
                continue
            try:
                left_roi, right_roi = eye_rois_from_mesh(mesh.value)
                left_crop = extract_roi(image, left_roi)
                right_crop = extract_roi(image, right_roi, flip=True)
            except Exception as exc:
                logger.warning("Eye alignment failed: %s", exc)
                jobs.append(StageResult.failure(exc))
                continue
            jobs.append(
                (
                    left_roi,
                    right_roi,
                    self._iris_left.submit(lambda m, c=left_crop: self._predict_and_release(m, c)),
                    self._iris_right.submit(lambda m, c=right_crop: self._predict_and_release(m, c)),
                )
            )

        results: list[StageResult[EyePair] | None] = []
        for job in jobs:
            if job is None or isinstance(job, StageResult):
                results.append(job)
                continue
            left_roi, right_roi, left_future, right_future = job
            left, right = _capture(left_future), _capture(right_future)
            if not (left.ok and right.ok):
                error = left.error or right.error
                logger.warning("Iris landmarks failed: %s", error)
                results.append(StageResult.failure(error))
                continue
            eyes = EyePair(
                left=build_eye(crop_to_image(left.value, left_roi, scale_z=False)),
                right=build_eye(
                    crop_to_image(right.value, right_roi, mirrored=True, scale_z=False)
                ),
            )
            results.append(StageResult.success(eyes))
        return results

    @staticmethod
    def _predict_and_release(model: IrisModel, crop: AlignedCrop) -> npt.NDArray[np.float32]:
        try:
            return model.predict(crop.take())
        finally:
            crop.release()

    # ------------------------------------------------------------------ #
    # Embedding & segmentation
    # ------------------------------------------------------------------ #

    def _require(self, handle: ExclusiveHandle | None, feature: str) -> ExclusiveHandle:
        self._ensure_ready()
        if handle is None:
            raise PoolNotInitializedError(
                f"{feature} is disabled; set enable_{feature}=True in the config"
            )
        return handle

    def get_face_embedding(
        self, image: ImageInput, face: Face | Detection
    ) -> npt.NDArray[np.float32]:
        """Embedding for one face. Raises on alignment or inference failure."""
        handle = self._require(self._embedding, "embedding")
        rgb = load_image(image)
        return self._embed(handle, rgb, face)

    def _embed(
        self,
        handle: ExclusiveHandle,
        rgb: npt.NDArray[np.uint8],
        face: Face | Detection,
    ) -> npt.NDArray[np.float32]:
        det = face.detection if isinstance(face, Face) else face
        img_h, img_w = rgb.shape[:2]
        crop = extract_roi(rgb, compute_embedding_alignment(det, img_w, img_h))
        try:
            return handle.run(lambda model: model.embed(crop.take()))
        finally:
            crop.release()

    def get_face_embeddings(
        self, image: ImageInput, faces: Sequence[Face | Detection]
    ) -> list[npt.NDArray[np.float32] | None]:
        """Embeddings for several faces; ``None`` where a face fails."""
        handle = self._require(self._embedding, "embedding")
        rgb = load_image(image)
        out: list[npt.NDArray[np.float32] | None] = []
        for face in faces:
            try:
                out.append(self._embed(handle, rgb, face))
            except Exception as exc:
                logger.warning("Face embedding failed: %s", exc)
                out.append(None)
        return out

    @staticmethod
    def compare_faces(a: npt.ArrayLike, b: npt.ArrayLike) -> float:
        return FaceEmbeddingModel.cosine_similarity(a, b)

    @staticmethod
    def face_distance(a: npt.ArrayLike, b: npt.ArrayLike) -> float:
        return FaceEmbeddingModel.euclidean_distance(a, b)

    def get_segmentation_mask(self, image: ImageInput) -> SegmentationMask:
        handle = self._require(self._segmentation, "segmentation")
        rgb = load_image(image)
        return handle.run(lambda model: model.segment(rgb))
