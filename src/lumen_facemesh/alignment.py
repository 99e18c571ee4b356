"""
Face and eye alignment geometry.

An ``AlignedRoi`` describes a square region of the source image: its pixel
center, edge length and the in-plane rotation of the content (radians, the
angle of the eye line). Extraction samples the region so that the rotation
is undone, and ``crop_to_image`` maps points predicted on such a crop back to
source pixels.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import cv2
import numpy as np
import numpy.typing as npt

from .exceptions import AlignmentError
from .types import AlignedCrop, Detection, FaceLandmarkType, FaceMesh, Point3

# Crop scale factors relative to facial distances
FACE_MOUTH_SCALE = 3.6
FACE_EYE_SCALE = 4.0
FACE_CENTER_SHIFT = 0.1
EMBEDDING_EYE_SCALE = 2.5
EMBEDDING_VERTICAL_SHIFT = 0.15
EYE_ROI_SCALE = 2.3

# Mesh indices of the two corners bounding each eye
LEFT_EYE_CORNERS = (33, 133)
RIGHT_EYE_CORNERS = (362, 263)


@dataclass(frozen=True)
class AlignedRoi:
    cx: float
    cy: float
    size: float
    theta: float

    def as_dict(self) -> dict[str, float]:
        return {"cx": self.cx, "cy": self.cy, "size": self.size, "theta": self.theta}


def _require_finite(*values: float) -> None:
    if not all(math.isfinite(v) for v in values):
        raise AlignmentError("Alignment geometry produced non-finite values")


# --------------------------------------------------------------------------- #
# ROI computation
# --------------------------------------------------------------------------- #


def compute_face_alignment(det: Detection, img_w: int, img_h: int) -> AlignedRoi:
    """Derive the face crop from the eye and mouth keypoints.

    The crop is rotated by the eye-line angle, sized to cover both the
    eye-mouth span and the eye distance, and centered slightly below the
    eye midpoint.
    """
    lx, ly = det.keypoint(FaceLandmarkType.LEFT_EYE)
    rx, ry = det.keypoint(FaceLandmarkType.RIGHT_EYE)
    mx, my = det.keypoint(FaceLandmarkType.MOUTH)
    lx, ly, rx, ry = lx * img_w, ly * img_h, rx * img_w, ry * img_h
    mx, my = mx * img_w, my * img_h

    eye_cx = (lx + rx) * 0.5
    eye_cy = (ly + ry) * 0.5
    theta = math.atan2(ry - ly, rx - lx)

    eye_dist = math.hypot(rx - lx, ry - ly)
    mouth_dist = math.hypot(mx - eye_cx, my - eye_cy)
    size = max(mouth_dist * FACE_MOUTH_SCALE, eye_dist * FACE_EYE_SCALE)

    cx = eye_cx + (mx - eye_cx) * FACE_CENTER_SHIFT
    cy = eye_cy + (my - eye_cy) * FACE_CENTER_SHIFT
    _require_finite(cx, cy, size, theta)
    return AlignedRoi(cx, cy, size, theta)


def compute_embedding_alignment(
    det: Detection, img_w: int, img_h: int
) -> AlignedRoi:
    """Tighter crop for the recognition model, shifted down from the eyes."""
    lx, ly = det.keypoint(FaceLandmarkType.LEFT_EYE)
    rx, ry = det.keypoint(FaceLandmarkType.RIGHT_EYE)
    lx, ly, rx, ry = lx * img_w, ly * img_h, rx * img_w, ry * img_h

    theta = math.atan2(ry - ly, rx - lx)
    size = math.hypot(rx - lx, ry - ly) * EMBEDDING_EYE_SCALE
    offset = size * EMBEDDING_VERTICAL_SHIFT

    cx = (lx + rx) * 0.5 - offset * math.sin(theta)
    cy = (ly + ry) * 0.5 + offset * math.cos(theta)
    _require_finite(cx, cy, size, theta)
    return AlignedRoi(cx, cy, size, theta)


def _eye_roi(points: npt.NDArray[np.float32], corners: tuple[int, int]) -> AlignedRoi:
    x0, y0 = float(points[corners[0], 0]), float(points[corners[0], 1])
    x1, y1 = float(points[corners[1], 0]), float(points[corners[1], 1])
    dx, dy = x1 - x0, y1 - y0
    return AlignedRoi(
        cx=(x0 + x1) * 0.5,
        cy=(y0 + y1) * 0.5,
        size=math.hypot(dx, dy) * EYE_ROI_SCALE,
        theta=math.atan2(dy, dx),
    )


def eye_rois_from_mesh(
    mesh: FaceMesh | npt.NDArray[np.float32],
) -> tuple[AlignedRoi, AlignedRoi]:
    """Return ``(left, right)`` eye ROIs from the eye-corner mesh points."""
    points = mesh.points if isinstance(mesh, FaceMesh) else np.asarray(mesh)
    if points.ndim != 2 or points.shape[0] <= max(LEFT_EYE_CORNERS + RIGHT_EYE_CORNERS):
        raise AlignmentError(f"Mesh of shape {points.shape} has no eye corners")
    return _eye_roi(points, LEFT_EYE_CORNERS), _eye_roi(points, RIGHT_EYE_CORNERS)


# --------------------------------------------------------------------------- #
# Extraction
# --------------------------------------------------------------------------- #


def extract_aligned_square(
    image: npt.NDArray[np.uint8],
    cx: float,
    cy: float,
    size: float,
    theta: float,
) -> npt.NDArray[np.uint8]:
    """Sample a ``size x size`` square centered at ``(cx, cy)``.

    The sampled content is rotated by ``theta`` radians (positive is
    counter-clockwise); pass ``-roi.theta`` to straighten a region. Pixels
    outside the source are black.

    Raises:
        AlignmentError: If ``size`` rounds to zero or below.
    """
    if not math.isfinite(size):
        raise AlignmentError(f"Invalid crop size {size}")
    size_int = int(round(size))
    if size_int <= 0:
        raise AlignmentError(f"Degenerate crop size {size:.3f}")

    rot = cv2.getRotationMatrix2D((float(cx), float(cy)), -math.degrees(theta), 1.0)
    out_center = size_int / 2.0
    rot[0, 2] += out_center - cx
    rot[1, 2] += out_center - cy
    return cv2.warpAffine(
        image,
        rot,
        (size_int, size_int),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )


def extract_roi(
    image: npt.NDArray[np.uint8], roi: AlignedRoi, flip: bool = False
) -> AlignedCrop:
    """Straighten ``roi`` into an owned crop, optionally mirrored horizontally."""
    pixels = extract_aligned_square(image, roi.cx, roi.cy, roi.size, -roi.theta)
    if flip:
        pixels = cv2.flip(pixels, 1)
    return AlignedCrop(cx=roi.cx, cy=roi.cy, size=roi.size, theta=roi.theta, pixels=pixels)


# --------------------------------------------------------------------------- #
# Back-projection
# --------------------------------------------------------------------------- #


def crop_to_image(
    points: npt.NDArray[np.float32],
    roi: AlignedRoi,
    mirrored: bool = False,
    scale_z: bool = True,
) -> npt.NDArray[np.float32]:
    """Map ``(N, 3)`` crop-normalized points back to source pixels.

    x/y are rotated by ``roi.theta`` about the ROI center, z is scaled by the
    ROI size unless ``scale_z`` is off. ``mirrored`` un-flips x for crops
    that were flipped before inference.
    """
    pts = np.asarray(points, dtype=np.float64)
    ct, st = math.cos(roi.theta), math.sin(roi.theta)
    px = 1.0 - pts[:, 0] if mirrored else pts[:, 0]
    lx = (px - 0.5) * roi.size
    ly = (pts[:, 1] - 0.5) * roi.size
    out = np.empty((len(pts), 3), dtype=np.float32)
    out[:, 0] = roi.cx + lx * ct - ly * st
    out[:, 1] = roi.cy + lx * st + ly * ct
    if pts.shape[1] > 2:
        out[:, 2] = pts[:, 2] * roi.size if scale_z else pts[:, 2]
    else:
        out[:, 2] = 0.0
    return out


def iris_center_index(points: npt.NDArray[np.float32]) -> int:
    """Index of the iris point closest to the centroid of all iris points."""
    pts = np.asarray(points, dtype=np.float32)
    centroid = pts[:, :2].mean(axis=0)
    return int(np.argmin(np.sum((pts[:, :2] - centroid) ** 2, axis=1)))


def iris_center(points: npt.NDArray[np.float32]) -> Point3:
    pts = np.asarray(points, dtype=np.float32)
    if len(pts) == 0:
        return Point3(0.0, 0.0, 0.0)
    best = iris_center_index(pts)
    x, y, z = (float(v) for v in pts[best, :3])
    return Point3(x, y, z)
