"""Pre- and post-processing stages around the model runners."""

from .base import RunnerStage
from .detection import FaceDetectionModel
from .embedding import EMBEDDING_DIM, FaceEmbeddingModel
from .iris import IRIS_OUTPUT_POINTS, IrisModel
from .landmark import FaceMeshModel, unpack_landmarks
from .segmentation import SegmentationModel

__all__ = [
    "EMBEDDING_DIM",
    "IRIS_OUTPUT_POINTS",
    "FaceDetectionModel",
    "FaceEmbeddingModel",
    "FaceMeshModel",
    "IrisModel",
    "RunnerStage",
    "SegmentationModel",
    "unpack_landmarks",
]
