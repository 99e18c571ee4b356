"""
Core data types for the face mesh pipeline.

All geometry records are immutable. Detection coordinates are normalized to
the source image, mesh and iris coordinates are absolute pixels. Every
record can be flattened into plain Python containers with ``to_dict`` so it
can cross a process boundary or be written as JSON.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Generic, TypeVar

import cv2
import numpy as np
import numpy.typing as npt

T = TypeVar("T")

MESH_POINT_COUNT = 468
EYE_MESH_POINT_COUNT = 71
IRIS_POINT_COUNT = 5
EYELID_CONTOUR_COUNT = 15


class FaceLandmarkType(IntEnum):
    """Order of the six coarse keypoints emitted by the face detector."""

    LEFT_EYE = 0
    RIGHT_EYE = 1
    NOSE_TIP = 2
    MOUTH = 3
    LEFT_EYE_TRAGION = 4
    RIGHT_EYE_TRAGION = 5


@dataclass(frozen=True)
class Point3:
    """A 3D point; z is relative depth and 0.0 for 2D sources."""

    x: float
    y: float
    z: float = 0.0

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.x, self.y, self.z)

    def distance_to(self, other: Point3) -> float:
        return float(np.hypot(other.x - self.x, other.y - self.y))


def _points_from_list(values: Sequence[Sequence[float]]) -> tuple[Point3, ...]:
    return tuple(Point3(*(float(v) for v in p)) for p in values)


# --------------------------------------------------------------------------- #
# Detection records
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class NormalizedRect:
    """Axis aligned rectangle in fractional image coordinates."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def center(self) -> tuple[float, float]:
        return ((self.xmin + self.xmax) / 2.0, (self.ymin + self.ymax) / 2.0)

    @property
    def is_degenerate(self) -> bool:
        return self.xmax <= self.xmin or self.ymax <= self.ymin

    def to_pixels(self, width: int, height: int) -> tuple[float, float, float, float]:
        """Scale the rect to absolute pixel coordinates (x1, y1, x2, y2)."""
        return (
            self.xmin * width,
            self.ymin * height,
            self.xmax * width,
            self.ymax * height,
        )

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.xmin, self.ymin, self.xmax, self.ymax)


@dataclass(frozen=True)
class Detection:
    """A single face candidate produced by the detection decoder.

    Attributes:
        bounding_box: Face rectangle in normalized coordinates.
        score: Sigmoid confidence in [0, 1].
        keypoints: Flat ``(x0, y0, x1, y1, ...)`` normalized keypoints in
            ``FaceLandmarkType`` order.
        image_size: ``(width, height)`` of the source image once known.
    """

    bounding_box: NormalizedRect
    score: float
    keypoints: tuple[float, ...]
    image_size: tuple[int, int] | None = None

    @property
    def num_keypoints(self) -> int:
        return len(self.keypoints) // 2

    def keypoint(self, kind: FaceLandmarkType | int) -> tuple[float, float]:
        """Normalized (x, y) of one keypoint."""
        idx = int(kind)
        return (self.keypoints[2 * idx], self.keypoints[2 * idx + 1])

    def keypoint_px(self, kind: FaceLandmarkType | int) -> tuple[float, float]:
        """Pixel-space (x, y) of one keypoint; requires ``image_size``."""
        if self.image_size is None:
            raise ValueError("Detection has no image_size; pixel keypoints unavailable")
        x, y = self.keypoint(kind)
        return (x * self.image_size[0], y * self.image_size[1])

    def landmarks_px(self) -> dict[FaceLandmarkType, tuple[float, float]]:
        return {
            kind: self.keypoint_px(kind)
            for kind in FaceLandmarkType
            if int(kind) < self.num_keypoints
        }

    def with_image_size(self, width: int, height: int) -> Detection:
        return replace(self, image_size=(int(width), int(height)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "bounding_box": list(self.bounding_box.as_tuple()),
            "score": self.score,
            "keypoints": list(self.keypoints),
            "image_size": list(self.image_size) if self.image_size else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Detection:
        size = data.get("image_size")
        return cls(
            bounding_box=NormalizedRect(*(float(v) for v in data["bounding_box"])),
            score=float(data["score"]),
            keypoints=tuple(float(v) for v in data["keypoints"]),
            image_size=(int(size[0]), int(size[1])) if size else None,
        )


@dataclass
class AlignedCrop:
    """A rotation-corrected square patch owned by exactly one inference call.

    ``pixels`` is dropped by ``release()`` once the consuming call is done;
    a released crop cannot be read again.
    """

    cx: float
    cy: float
    size: float
    theta: float
    pixels: npt.NDArray[np.uint8] | None = field(default=None, repr=False)

    @property
    def released(self) -> bool:
        return self.pixels is None

    def take(self) -> npt.NDArray[np.uint8]:
        if self.pixels is None:
            raise ValueError("AlignedCrop already released")
        return self.pixels

    def release(self) -> None:
        self.pixels = None


# --------------------------------------------------------------------------- #
# Mesh and eyes
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class FaceMesh:
    """Exactly 468 pixel-space 3D points; the array is made read-only."""

    points: npt.NDArray[np.float32]

    def __post_init__(self) -> None:
        arr = np.array(self.points, dtype=np.float32)
        if arr.shape != (MESH_POINT_COUNT, 3):
            raise ValueError(
                f"FaceMesh requires shape ({MESH_POINT_COUNT}, 3), got {arr.shape}"
            )
        arr.setflags(write=False)
        object.__setattr__(self, "points", arr)

    def __len__(self) -> int:
        return MESH_POINT_COUNT

    def __getitem__(self, index: int) -> Point3:
        x, y, z = self.points[index]
        return Point3(float(x), float(y), float(z))

    def to_list(self) -> list[list[float]]:
        return self.points.tolist()


@dataclass(frozen=True)
class Eye:
    """Iris and eye-region landmarks for a single eye, in pixels."""

    iris_center: Point3
    iris_contour: tuple[Point3, ...]
    mesh: tuple[Point3, ...] = ()

    @property
    def contour(self) -> tuple[Point3, ...]:
        """Eyelid outline: the leading points of the eye mesh."""
        return self.mesh[:EYELID_CONTOUR_COUNT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "iris_center": list(self.iris_center.as_tuple()),
            "iris_contour": [list(p.as_tuple()) for p in self.iris_contour],
            "mesh": [list(p.as_tuple()) for p in self.mesh],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Eye:
        return cls(
            iris_center=Point3(*(float(v) for v in data["iris_center"])),
            iris_contour=_points_from_list(data.get("iris_contour", [])),
            mesh=_points_from_list(data.get("mesh", [])),
        )


@dataclass(frozen=True)
class EyePair:
    left: Eye | None = None
    right: Eye | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "left": self.left.to_dict() if self.left else None,
            "right": self.right.to_dict() if self.right else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EyePair:
        left = data.get("left")
        right = data.get("right")
        return cls(
            left=Eye.from_dict(left) if left else None,
            right=Eye.from_dict(right) if right else None,
        )


@dataclass(frozen=True)
class Face:
    """Aggregate result for one detected face.

    ``mesh`` and ``eyes`` are ``None`` when the mode skipped them or when
    that sub-stage failed for this face only.
    """

    detection: Detection
    mesh: FaceMesh | None = None
    eyes: EyePair | None = None

    @property
    def bounding_box(self) -> NormalizedRect:
        return self.detection.bounding_box

    @property
    def score(self) -> float:
        return self.detection.score

    def to_dict(self) -> dict[str, Any]:
        return {
            "detection": self.detection.to_dict(),
            "mesh": self.mesh.to_list() if self.mesh is not None else None,
            "eyes": self.eyes.to_dict() if self.eyes is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Face:
        mesh = data.get("mesh")
        eyes = data.get("eyes")
        return cls(
            detection=Detection.from_dict(data["detection"]),
            mesh=FaceMesh(np.asarray(mesh, dtype=np.float32)) if mesh else None,
            eyes=EyePair.from_dict(eyes) if eyes else None,
        )


# --------------------------------------------------------------------------- #
# Per-face stage results
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Outcome of one per-face sub-stage: a value or the error that stopped it."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None

    @classmethod
    def success(cls, value: T) -> StageResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: BaseException) -> StageResult[T]:
        return cls(error=error)

    def value_or_none(self) -> T | None:
        return self.value if self.ok else None


@dataclass(frozen=True)
class PipelineStats:
    """Counters derived from one batch of per-face results."""

    faces: int = 0
    alignment_failed: int = 0
    mesh_ok: int = 0
    mesh_failed: int = 0
    iris_ok: int = 0
    iris_failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "faces": self.faces,
            "alignment_failed": self.alignment_failed,
            "mesh_ok": self.mesh_ok,
            "mesh_failed": self.mesh_failed,
            "iris_ok": self.iris_ok,
            "iris_failed": self.iris_failed,
        }


# --------------------------------------------------------------------------- #
# Segmentation
# --------------------------------------------------------------------------- #


class SegmentationClass(IntEnum):
    """Channel order of the multiclass segmentation output."""

    BACKGROUND = 0
    HAIR = 1
    BODY_SKIN = 2
    FACE_SKIN = 3
    CLOTHES = 4
    OTHER = 5


@dataclass(frozen=True)
class SegmentationMask:
    """Per-pixel person probability in the model's letterboxed space.

    Attributes:
        data: ``(height, width)`` float32 probabilities.
        original_width / original_height: Size of the source image.
        padding: Letterbox fractions ``(top, bottom, left, right)``.
        class_data: ``(height, width, 6)`` softmax probabilities for the
            multiclass model, otherwise ``None``.
    """

    data: npt.NDArray[np.float32]
    width: int
    height: int
    original_width: int
    original_height: int
    padding: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    class_data: npt.NDArray[np.float32] | None = field(default=None, repr=False)

    def to_uint8(self) -> npt.NDArray[np.uint8]:
        return np.rint(np.clip(self.data, 0.0, 1.0) * 255.0).astype(np.uint8)

    def to_binary(self, threshold: float = 0.5) -> npt.NDArray[np.uint8]:
        return np.where(self.data >= threshold, 255, 0).astype(np.uint8)

    def class_mask(self, cls: SegmentationClass | int) -> npt.NDArray[np.float32]:
        if self.class_data is None:
            raise ValueError("class_mask requires a multiclass segmentation mask")
        return np.ascontiguousarray(self.class_data[..., int(cls)])

    def upsample(
        self, width: int | None = None, height: int | None = None
    ) -> npt.NDArray[np.float32]:
        """Strip the letterbox padding and resize to the original image size."""
        top, bottom, left, right = self.padding
        y0 = int(round(top * self.height))
        y1 = self.height - int(round(bottom * self.height))
        x0 = int(round(left * self.width))
        x1 = self.width - int(round(right * self.width))
        valid = self.data[y0:max(y1, y0 + 1), x0:max(x1, x0 + 1)]
        out_w = width or self.original_width
        out_h = height or self.original_height
        return cv2.resize(
            np.ascontiguousarray(valid, dtype=np.float32),
            (out_w, out_h),
            interpolation=cv2.INTER_LINEAR,
        )
