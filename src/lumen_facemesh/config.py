"""
Pipeline configuration (YAML)

@requires: Optional YAML file matching the PipelineConfig schema
@returns: Validated PipelineConfig and fixed SSD anchor options per model
@errors: ConfigError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


class DetectionModel(str, Enum):
    """Supported face detection model variants."""

    FRONT = "front"
    BACK = "back"
    SHORT_RANGE = "short_range"
    FULL_RANGE = "full_range"
    FULL_RANGE_SPARSE = "full_range_sparse"


class FaceDetectionMode(str, Enum):
    """How much of the pipeline runs per image."""

    FAST = "fast"  # detection only
    STANDARD = "standard"  # + mesh
    FULL = "full"  # + mesh + iris

    @property
    def wants_mesh(self) -> bool:
        return self is not FaceDetectionMode.FAST

    @property
    def wants_iris(self) -> bool:
        return self is FaceDetectionMode.FULL


@dataclass(frozen=True)
class SSDAnchorOptions:
    """Static anchor layout a detection model was trained against."""

    num_layers: int
    strides: tuple[int, ...]
    input_width: int
    input_height: int
    anchor_offset_x: float = 0.5
    anchor_offset_y: float = 0.5
    interpolated_scale_aspect_ratio: float = 1.0

    def __post_init__(self) -> None:
        if self.num_layers != len(self.strides):
            raise ValueError(
                f"num_layers={self.num_layers} does not match {len(self.strides)} strides"
            )
        if any(s <= 0 for s in self.strides):
            raise ValueError("strides must be positive")
        if self.input_width <= 0 or self.input_height <= 0:
            raise ValueError("input size must be positive")


_FRONT_OPTIONS = SSDAnchorOptions(
    num_layers=4,
    strides=(8, 16, 16, 16),
    input_width=128,
    input_height=128,
)

_BACK_OPTIONS = SSDAnchorOptions(
    num_layers=4,
    strides=(16, 32, 32, 32),
    input_width=256,
    input_height=256,
)

_FULL_OPTIONS = SSDAnchorOptions(
    num_layers=1,
    strides=(4,),
    input_width=192,
    input_height=192,
    interpolated_scale_aspect_ratio=0.0,
)

SSD_OPTIONS: dict[DetectionModel, SSDAnchorOptions] = {
    DetectionModel.FRONT: _FRONT_OPTIONS,
    DetectionModel.SHORT_RANGE: _FRONT_OPTIONS,
    DetectionModel.BACK: _BACK_OPTIONS,
    DetectionModel.FULL_RANGE: _FULL_OPTIONS,
    DetectionModel.FULL_RANGE_SPARSE: _FULL_OPTIONS,
}

# File names expected under PipelineConfig.model_dir
DETECTION_MODEL_FILES: dict[DetectionModel, str] = {
    DetectionModel.FRONT: "face_detection_front.onnx",
    DetectionModel.BACK: "face_detection_back.onnx",
    DetectionModel.SHORT_RANGE: "face_detection_short_range.onnx",
    DetectionModel.FULL_RANGE: "face_detection_full_range.onnx",
    DetectionModel.FULL_RANGE_SPARSE: "face_detection_full_range_sparse.onnx",
}
FACE_LANDMARK_FILE = "face_landmark.onnx"
IRIS_LANDMARK_FILE = "iris_landmark.onnx"
FACE_EMBEDDING_FILE = "face_embedding.onnx"
SEGMENTATION_FILE = "selfie_segmentation.onnx"
SEGMENTATION_MULTICLASS_FILE = "selfie_multiclass.onnx"


def ssd_options_for(model: DetectionModel | str) -> SSDAnchorOptions:
    return SSD_OPTIONS[DetectionModel(model)]


class PipelineConfig(BaseModel):
    """Runtime configuration for a FacePipeline.

    Example YAML:
        model_dir: ~/.lumen/models/facemesh
        detection_model: back
        mode: full
        mesh_pool_size: 3
        providers: [CPUExecutionProvider]
    """

    model_dir: Path = Path(".")
    detection_model: DetectionModel = DetectionModel.BACK
    mode: FaceDetectionMode = FaceDetectionMode.FULL

    min_score: float = Field(default=0.5, ge=0.0, le=1.0)
    nms_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    raw_score_limit: float = Field(default=80.0, gt=0.0)

    mesh_pool_size: int = Field(default=3, ge=1)
    providers: list[str] | None = None
    device_preference: str | None = None

    mirror_output: bool = False
    enable_embedding: bool = False
    enable_segmentation: bool = False
    segmentation_multiclass: bool = False

    worker_init_timeout: float = Field(default=30.0, gt=0.0)

    @property
    def anchor_options(self) -> SSDAnchorOptions:
        return ssd_options_for(self.detection_model)

    def model_path(self, filename: str) -> Path:
        return Path(self.model_dir).expanduser() / filename

    @property
    def detection_model_path(self) -> Path:
        return self.model_path(DETECTION_MODEL_FILES[self.detection_model])

    @property
    def segmentation_model_path(self) -> Path:
        name = (
            SEGMENTATION_MULTICLASS_FILE
            if self.segmentation_multiclass
            else SEGMENTATION_FILE
        )
        return self.model_path(name)

    @classmethod
    def from_yaml(cls, config_path: Path | str) -> PipelineConfig:
        """
        Parse and validate a pipeline configuration file.

        @requires: Valid YAML mapping at config_path
        @returns: Validated PipelineConfig
        @errors: ConfigError
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML format: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a mapping")

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid pipeline configuration: {e}") from e

        logger.debug("Loaded pipeline config from %s", config_path)
        return config
