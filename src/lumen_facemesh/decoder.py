"""
Detection decoding for SSD-style face detectors.

Raw model output is a box tensor ``[1, num_anchors, k]`` and a score tensor
``[1, num_anchors, 1]``. Each box record holds ``(xc, yc, w, h)`` followed
by ``J`` keypoint pairs, all expressed in input-tensor pixels relative to
the matching anchor. Decoding turns these into ``Detection`` records in the
normalized space of the (letterboxed) model input and merges overlapping
candidates with weighted non-max suppression.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence

import numpy as np
import numpy.typing as npt

from .anchors import generate_anchors
from .config import SSDAnchorOptions
from .exceptions import InferenceError
from .types import Detection, NormalizedRect

logger = logging.getLogger(__name__)

RAW_SCORE_LIMIT = 80.0
MIN_SCORE = 0.5
MIN_SUPPRESSION_THRESHOLD = 0.3

# Candidate counts at or below this are compared pairwise without a grid
GRID_NMS_MIN_CANDIDATES = 8
NMS_GRID_SIZE = 10


# --------------------------------------------------------------------------- #
# Score and box decoding
# --------------------------------------------------------------------------- #


def sigmoid_clipped(
    x: npt.ArrayLike, limit: float = RAW_SCORE_LIMIT
) -> npt.NDArray[np.float32]:
    """Sigmoid with the logit clamped to ``[-limit, limit]``."""
    clipped = np.clip(np.asarray(x, dtype=np.float32), -limit, limit)
    return (1.0 / (1.0 + np.exp(-clipped))).astype(np.float32)


def decode_scores(
    raw_scores: npt.ArrayLike, limit: float = RAW_SCORE_LIMIT
) -> npt.NDArray[np.float32]:
    return sigmoid_clipped(np.asarray(raw_scores, dtype=np.float32).reshape(-1), limit)


def decode_boxes(
    raw_boxes: npt.NDArray[np.float32],
    anchors: npt.NDArray[np.float32],
    indices: npt.NDArray[np.intp],
    input_height: int,
) -> tuple[npt.NDArray[np.float32], npt.NDArray[np.float32]]:
    """Decode the selected anchor records into corner boxes and keypoints.

    Args:
        raw_boxes: ``(num_anchors, k)`` raw regressor output.
        anchors: ``(num_anchors, 2)`` anchor centers.
        indices: Anchor rows to decode.
        input_height: Model input height; every channel is divided by it.

    Returns:
        ``(boxes, keypoints)`` where boxes is ``(M, 4)`` as
        ``(xmin, ymin, xmax, ymax)`` and keypoints is ``(M, k - 4)``.
    """
    rows = raw_boxes[indices].astype(np.float32) / float(input_height)
    anchor_xy = anchors[indices]

    rows[:, 0:2] += anchor_xy
    num_kp = (rows.shape[1] - 4) // 2
    if num_kp > 0:
        kp = rows[:, 4 : 4 + 2 * num_kp].reshape(-1, num_kp, 2)
        kp += anchor_xy[:, np.newaxis, :]
        keypoints = kp.reshape(len(rows), -1)
    else:
        keypoints = np.empty((len(rows), 0), dtype=np.float32)

    xc, yc, w, h = rows[:, 0], rows[:, 1], rows[:, 2], rows[:, 3]
    boxes = np.stack(
        (xc - w * 0.5, yc - h * 0.5, xc + w * 0.5, yc + h * 0.5), axis=-1
    )
    return boxes.astype(np.float32), keypoints.astype(np.float32)


# --------------------------------------------------------------------------- #
# Weighted non-max suppression
# --------------------------------------------------------------------------- #


def iou(a: NormalizedRect, b: NormalizedRect) -> float:
    """Intersection over union; 0.0 when the union is not positive."""
    ix0 = max(a.xmin, b.xmin)
    iy0 = max(a.ymin, b.ymin)
    ix1 = min(a.xmax, b.xmax)
    iy1 = min(a.ymax, b.ymax)
    inter = max(0.0, ix1 - ix0) * max(0.0, iy1 - iy0)
    area_a = max(0.0, a.width) * max(0.0, a.height)
    area_b = max(0.0, b.width) * max(0.0, b.height)
    union = area_a + area_b - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def _grid_span(lo: float, hi: float) -> range:
    cell = 1.0 / NMS_GRID_SIZE
    first = min(max(math.floor(lo / cell), 0), NMS_GRID_SIZE - 1)
    last = min(max(math.floor(hi / cell), 0), NMS_GRID_SIZE - 1)
    return range(first, last + 1)


def _cells_for(rect: NormalizedRect) -> Iterable[int]:
    for row in _grid_span(rect.ymin, rect.ymax):
        for col in _grid_span(rect.xmin, rect.xmax):
            yield row * NMS_GRID_SIZE + col


def _build_grid(candidates: Sequence[Detection]) -> dict[int, list[int]]:
    cells: dict[int, list[int]] = {}
    for idx, det in enumerate(candidates):
        for key in _cells_for(det.bounding_box):
            cells.setdefault(key, []).append(idx)
    return cells


def weighted_nms(
    detections: Iterable[Detection],
    iou_threshold: float = MIN_SUPPRESSION_THRESHOLD,
    score_threshold: float = MIN_SCORE,
    weighted: bool = True,
) -> list[Detection]:
    """Merge overlapping detections.

    Candidates below ``score_threshold`` are dropped, the rest are visited in
    descending score order. Each still-active candidate seeds a cluster that
    absorbs every later candidate with IoU >= ``iou_threshold``. A cluster of
    one is emitted unchanged; a larger cluster emits the score-weighted mean
    rect with the seed's score and keypoints. With ``weighted=False`` the
    seed is kept as-is (classic hard NMS).

    Above a handful of candidates only boxes sharing a cell of a 10x10 grid
    over [0, 1]^2 are compared.
    """
    ordered = sorted(
        (d for d in detections if d.score >= score_threshold),
        key=lambda d: d.score,
        reverse=True,
    )
    n = len(ordered)
    if n == 0:
        return []

    grid = _build_grid(ordered) if n > GRID_NMS_MIN_CANDIDATES else None
    active = [True] * n
    kept: list[Detection] = []

    for i, seed in enumerate(ordered):
        if not active[i]:
            continue

        if grid is None:
            candidates: Iterable[int] = range(i + 1, n)
        else:
            found: set[int] = set()
            for key in _cells_for(seed.bounding_box):
                found.update(j for j in grid.get(key, ()) if j > i)
            candidates = sorted(found)

        box = seed.bounding_box
        total = seed.score
        acc = [v * seed.score for v in box.as_tuple()]
        merged = 0

        for j in candidates:
            if not active[j]:
                continue
            other = ordered[j]
            if iou(box, other.bounding_box) < iou_threshold:
                continue
            active[j] = False
            merged += 1
            total += other.score
            for c, v in enumerate(other.bounding_box.as_tuple()):
                acc[c] += v * other.score

        if merged == 0 or not weighted:
            kept.append(seed)
        else:
            kept.append(
                Detection(
                    bounding_box=NormalizedRect(*(v / total for v in acc)),
                    score=seed.score,
                    keypoints=seed.keypoints,
                    image_size=seed.image_size,
                )
            )

    return kept


def mirror_detection(det: Detection) -> Detection:
    """Flip a detection horizontally (``x -> 1 - x``)."""
    box = det.bounding_box
    keypoints = list(det.keypoints)
    for i in range(0, len(keypoints), 2):
        keypoints[i] = 1.0 - keypoints[i]
    return Detection(
        bounding_box=NormalizedRect(1.0 - box.xmax, box.ymin, 1.0 - box.xmin, box.ymax),
        score=det.score,
        keypoints=tuple(keypoints),
        image_size=det.image_size,
    )


# --------------------------------------------------------------------------- #
# Decoder
# --------------------------------------------------------------------------- #


class DetectionDecoder:
    """Turns one ``(raw_boxes, raw_scores)`` pair into deduplicated detections.

    The anchor grid is built once per model configuration and reused for
    every call. Output coordinates are normalized to the model input canvas;
    letterbox removal happens in the caller.
    """

    def __init__(
        self,
        options: SSDAnchorOptions,
        min_score: float = MIN_SCORE,
        nms_threshold: float = MIN_SUPPRESSION_THRESHOLD,
        raw_score_limit: float = RAW_SCORE_LIMIT,
    ) -> None:
        self.options = options
        self.min_score = min_score
        self.nms_threshold = nms_threshold
        self.raw_score_limit = raw_score_limit
        self.anchors = generate_anchors(options)

    @property
    def num_anchors(self) -> int:
        return len(self.anchors)

    def _as_records(
        self, raw_boxes: npt.ArrayLike, raw_scores: npt.ArrayLike
    ) -> tuple[npt.NDArray[np.float32], npt.NDArray[np.float32]]:
        boxes = np.asarray(raw_boxes, dtype=np.float32)
        scores = np.asarray(raw_scores, dtype=np.float32).reshape(-1)
        if boxes.size == 0 or boxes.size % self.num_anchors != 0:
            raise InferenceError(
                f"Box tensor of shape {boxes.shape} does not match {self.num_anchors} anchors"
            )
        boxes = boxes.reshape(self.num_anchors, -1)
        if boxes.shape[1] < 4:
            raise InferenceError(f"Box records need >= 4 channels, got {boxes.shape[1]}")
        if scores.size != self.num_anchors:
            raise InferenceError(
                f"Score tensor has {scores.size} entries, expected {self.num_anchors}"
            )
        return boxes, scores

    def decode(
        self, raw_boxes: npt.ArrayLike, raw_scores: npt.ArrayLike
    ) -> list[Detection]:
        boxes, raw = self._as_records(raw_boxes, raw_scores)

        scores = decode_scores(raw, self.raw_score_limit)
        indices = np.flatnonzero(scores >= self.min_score)
        if indices.size == 0:
            return []

        rects, keypoints = decode_boxes(
            boxes, self.anchors, indices, self.options.input_height
        )

        candidates: list[Detection] = []
        for row, idx in enumerate(indices):
            rect = NormalizedRect(*(float(v) for v in rects[row]))
            if rect.is_degenerate:
                continue
            candidates.append(
                Detection(
                    bounding_box=rect,
                    score=float(scores[idx]),
                    keypoints=tuple(float(v) for v in keypoints[row]),
                )
            )

        kept = weighted_nms(candidates, self.nms_threshold, self.min_score)
        logger.debug(
            "Decoded %d candidates above %.2f, %d after NMS",
            len(candidates),
            self.min_score,
            len(kept),
        )
        return kept
