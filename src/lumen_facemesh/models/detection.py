"""
Face detection stage.

Letterboxes the image into the detector input, runs the model and decodes
its ``(boxes, scores)`` output into detections normalized to the source
image.
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt

from ..backends.base import ModelRunner
from ..config import SSDAnchorOptions
from ..decoder import (
    MIN_SCORE,
    MIN_SUPPRESSION_THRESHOLD,
    RAW_SCORE_LIMIT,
    DetectionDecoder,
    mirror_detection,
)
from ..exceptions import InferenceError
from ..letterbox import remove_letterbox_detection
from ..types import Detection
from .base import RunnerStage

logger = logging.getLogger(__name__)


class FaceDetectionModel(RunnerStage):
    """Detector with SSD anchor decoding and weighted NMS.

    Args:
        runner: Runner for the detection model.
        options: Anchor layout the model was trained with.
        min_score: Candidates below this sigmoid score are discarded.
        nms_threshold: IoU at or above which candidates are merged.
        raw_score_limit: Logit clamp applied before the sigmoid.
        mirror_output: Flip detections horizontally as a final stage.
    """

    def __init__(
        self,
        runner: ModelRunner,
        options: SSDAnchorOptions,
        min_score: float = MIN_SCORE,
        nms_threshold: float = MIN_SUPPRESSION_THRESHOLD,
        raw_score_limit: float = RAW_SCORE_LIMIT,
        mirror_output: bool = False,
    ) -> None:
        super().__init__(runner)
        self.options = options
        self.mirror_output = mirror_output
        self.decoder = DetectionDecoder(
            options,
            min_score=min_score,
            nms_threshold=nms_threshold,
            raw_score_limit=raw_score_limit,
        )

    def initialize(self) -> None:
        super().initialize()
        expected = (self.options.input_height, self.options.input_width)
        if self.input_size != expected:
            logger.warning(
                "Detector input %s differs from anchor layout %s",
                self.input_size,
                expected,
            )

    def _split_outputs(
        self, outputs: list[npt.NDArray[np.float32]]
    ) -> tuple[npt.NDArray[np.float32], npt.NDArray[np.float32]]:
        n = self.decoder.num_anchors
        scores = next(
            (o for o in outputs if o.size == n and o.shape[-1] == 1), None
        )
        boxes = next(
            (o for o in outputs if o is not scores and o.size % n == 0 and o.size >= 4 * n),
            None,
        )
        if scores is None or boxes is None:
            raise InferenceError(
                "Detector outputs %s do not match %d anchors"
                % ([o.shape for o in outputs], n)
            )
        return boxes, scores

    def detect(self, image: npt.NDArray[np.uint8]) -> list[Detection]:
        """Detect faces in an RGB image.

        Returns:
            Detections with box and keypoints normalized to ``image`` and
            ``image_size`` set to its ``(width, height)``.
        """
        packed = self._prepare(image)
        boxes, scores = self._split_outputs(self._infer(packed.tensor))
        detections = self.decoder.decode(boxes, scores)

        img_h, img_w = image.shape[:2]
        results: list[Detection] = []
        for det in detections:
            det = remove_letterbox_detection(det, packed.padding)
            if self.mirror_output:
                det = mirror_detection(det)
            results.append(det.with_image_size(img_w, img_h))
        return results
