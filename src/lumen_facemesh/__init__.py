"""
lumen_facemesh: face detection, face mesh and iris landmarks on ONNX Runtime.

This package provides:
- ``FacePipeline``: detection, 468-point mesh and iris landmarks per face,
  plus optional face embeddings and selfie segmentation.
- ``FaceWorker``: the same pipeline hosted in a background process.
- The geometry building blocks (anchors, decoding, letterbox, alignment)
  and the concurrent ``ModelPool`` they run on.

Example:
    from lumen_facemesh import FacePipeline, PipelineConfig

    config = PipelineConfig(model_dir="~/.lumen/models/facemesh", mode="full")
    with FacePipeline(config) as pipeline:
        faces = pipeline.detect_faces(open("photo.jpg", "rb").read())
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from .anchors import generate_anchors
from .config import DetectionModel, FaceDetectionMode, PipelineConfig, SSDAnchorOptions
from .decoder import DetectionDecoder, weighted_nms
from .exceptions import (
    AlignmentError,
    ConfigError,
    DecodeError,
    DisposedError,
    FaceMeshError,
    InferenceError,
    ModelLoadingError,
    PoolNotInitializedError,
    WorkerError,
    WorkerTimeoutError,
)
from .logging_setup import get_logger, setup_logging
from .pipeline import FaceBatch, FacePipeline, FaceResult
from .pool import ExclusiveHandle, ModelPool
from .types import (
    Detection,
    Eye,
    EyePair,
    Face,
    FaceLandmarkType,
    FaceMesh,
    NormalizedRect,
    PipelineStats,
    Point3,
    SegmentationClass,
    SegmentationMask,
    StageResult,
)
from .worker import FaceWorker

try:
    __version__ = version("lumen-facemesh")
except PackageNotFoundError:
    __version__ = "0.0.0"

__author__ = "Lumen Team"

__all__ = [
    # Pipeline
    "FacePipeline",
    "FaceWorker",
    "FaceBatch",
    "FaceResult",
    "PipelineConfig",
    "DetectionModel",
    "FaceDetectionMode",
    "SSDAnchorOptions",
    # Building blocks
    "generate_anchors",
    "DetectionDecoder",
    "weighted_nms",
    "ModelPool",
    "ExclusiveHandle",
    # Types
    "Detection",
    "NormalizedRect",
    "Point3",
    "FaceMesh",
    "Eye",
    "EyePair",
    "Face",
    "FaceLandmarkType",
    "StageResult",
    "PipelineStats",
    "SegmentationClass",
    "SegmentationMask",
    # Errors
    "FaceMeshError",
    "DecodeError",
    "AlignmentError",
    "InferenceError",
    "ModelLoadingError",
    "PoolNotInitializedError",
    "WorkerTimeoutError",
    "WorkerError",
    "DisposedError",
    "ConfigError",
    # Logging
    "setup_logging",
    "get_logger",
]
