"""
Face embedding stage: identity vectors from aligned face crops.
"""

from __future__ import annotations

import cv2
import numpy as np
import numpy.typing as npt

from ..exceptions import InferenceError
from .base import RunnerStage

EMBEDDING_DIM = 192


class FaceEmbeddingModel(RunnerStage):
    """Produces L2-normalized embeddings (192-d for MobileFaceNet)."""

    def embed(self, crop: npt.NDArray[np.uint8]) -> npt.NDArray[np.float32]:
        h, w = self.input_size
        if crop.shape[:2] != (h, w):
            crop = cv2.resize(crop, (w, h), interpolation=cv2.INTER_LINEAR)
        packed = self._prepare(crop)
        outputs = self._infer(packed.tensor)
        if not outputs or outputs[0].size == 0:
            raise InferenceError("Embedding model produced no output")
        return self.normalize(outputs[0].reshape(-1))

    @staticmethod
    def normalize(vector: npt.ArrayLike) -> npt.NDArray[np.float32]:
        vec = np.asarray(vector, dtype=np.float32).reshape(-1)
        norm = float(np.linalg.norm(vec))
        if norm == 0.0:
            return vec
        return (vec / norm).astype(np.float32)

    @staticmethod
    def cosine_similarity(a: npt.ArrayLike, b: npt.ArrayLike) -> float:
        """Cosine similarity in [-1, 1]; 1.0 means the same direction."""
        va = np.asarray(a, dtype=np.float64).reshape(-1)
        vb = np.asarray(b, dtype=np.float64).reshape(-1)
        if va.size != vb.size:
            raise ValueError(
                f"Embedding length mismatch: {va.size} vs {vb.size}"
            )
        denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
        if denom == 0.0:
            return 0.0
        return float(np.dot(va, vb) / denom)

    @staticmethod
    def euclidean_distance(a: npt.ArrayLike, b: npt.ArrayLike) -> float:
        va = np.asarray(a, dtype=np.float64).reshape(-1)
        vb = np.asarray(b, dtype=np.float64).reshape(-1)
        if va.size != vb.size:
            raise ValueError(
                f"Embedding length mismatch: {va.size} vs {vb.size}"
            )
        return float(np.linalg.norm(va - vb))
