"""
Deterministic stand-ins for the pipeline's models.

``FakeRunner`` recognizes which model it replaces from the file name and
returns outputs with the right shapes and plausible geometry, so the whole
pipeline runs end to end without model files. The module-level
``build_*_pipeline`` functions are importable by reference and are what the
worker tests hand to the spawned process.
"""

import time
from pathlib import Path
from unittest.mock import Mock

import numpy as np

from lumen_facemesh import FacePipeline, PipelineConfig
from lumen_facemesh.anchors import generate_anchors
from lumen_facemesh.backends.base import ModelRunner, RunnerInfo
from lumen_facemesh.config import DETECTION_MODEL_FILES, ssd_options_for
from lumen_facemesh.exceptions import InferenceError, ModelLoadingError

IMAGE_SIZE = 256

# Face keypoints as offsets from the box center, in units of the box size
KEYPOINT_OFFSETS = (
    (-0.15, -0.10),  # left eye
    (0.15, -0.10),  # right eye
    (0.0, 0.05),  # nose tip
    (0.0, 0.20),  # mouth
    (-0.40, -0.05),  # left tragion
    (0.40, -0.05),  # right tragion
)

DEFAULT_FACES = ((0.25, 0.5, 0.3), (0.75, 0.5, 0.3))

# Eye corner positions on the 192x192 mesh input
MESH_EYE_CORNERS = {33: (70.0, 80.0), 133: (85.0, 80.0), 362: (107.0, 80.0), 263: (122.0, 80.0)}

_DETECTION_FILES = {name: model for model, name in DETECTION_MODEL_FILES.items()}


def two_face_image():
    """Left half bright, right half black: the right face's crop is blank."""
    image = np.zeros((IMAGE_SIZE, IMAGE_SIZE, 3), dtype=np.uint8)
    image[:, : IMAGE_SIZE // 2] = 200
    return image


def face_keypoints(cx, cy, size):
    return tuple(
        v for dx, dy in KEYPOINT_OFFSETS for v in (cx + dx * size, cy + dy * size)
    )


def detection_outputs(options, faces):
    """Raw ``(boxes, scores)`` placing one confident anchor on each face.

    Faces are ``(cx, cy, size)`` with an optional fourth keypoint scale.
    """
    anchors = generate_anchors(options)
    n = len(anchors)
    h = options.input_height
    boxes = np.zeros((1, n, 4 + 2 * len(KEYPOINT_OFFSETS)), dtype=np.float32)
    scores = np.full((1, n, 1), -10.0, dtype=np.float32)
    for cx, cy, size, *keypoint_scale in faces:
        idx = int(np.argmin(np.sum((anchors - (cx, cy)) ** 2, axis=1)))
        ax, ay = anchors[idx]
        kp_size = keypoint_scale[0] if keypoint_scale else size
        kps = np.asarray(face_keypoints(cx, cy, kp_size), dtype=np.float32).reshape(-1, 2)
        record = [(cx - ax) * h, (cy - ay) * h, size * h, size * h]
        record += [v for kx, ky in kps for v in ((kx - ax) * h, (ky - ay) * h)]
        boxes[0, idx] = record
        scores[0, idx, 0] = 10.0
    return [boxes, scores]


def mesh_outputs(width=192, height=192):
    k = np.arange(468, dtype=np.float32)
    points = np.stack(
        (
            width / 2 + 40.0 * np.cos(k * 0.1),
            height / 2 + 40.0 * np.sin(k * 0.1),
            k * 0.01,
        ),
        axis=-1,
    )
    for idx, (x, y) in MESH_EYE_CORNERS.items():
        points[idx, :2] = (x, y)
    # Second output mimics the face-presence flag
    return [points.reshape(1, 1, 1, -1), np.ones((1, 1, 1, 1), dtype=np.float32)]


def iris_outputs(width=64, height=64):
    cx, cy = width / 2, height / 2
    k = np.arange(71, dtype=np.float32)
    eye = np.stack(
        (cx + 20.0 * np.cos(k * 0.09), cy + 8.0 * np.sin(k * 0.09), np.zeros_like(k)),
        axis=-1,
    )
    iris = np.array(
        [
            (cx, cy, 0.0),
            (cx + 6, cy, 0.0),
            (cx, cy + 6, 0.0),
            (cx - 6, cy, 0.0),
            (cx, cy - 6, 0.0),
        ],
        dtype=np.float32,
    )
    return [eye.reshape(1, -1), iris.reshape(1, -1)]


class FakeRunner(ModelRunner):
    """Model runner returning canned outputs keyed by model file name."""

    def __init__(self, model_path, fallback_size=None, faces=DEFAULT_FACES, fail_blank=True):
        super().__init__()
        self.model_path = Path(model_path)
        self.faces = faces
        self.fail_blank = fail_blank
        self.calls = 0
        self.close_count = 0

        name = self.model_path.name
        self.options = None
        if name in _DETECTION_FILES:
            self.kind = "detection"
            self.options = ssd_options_for(_DETECTION_FILES[name])
            self._size = (self.options.input_height, self.options.input_width)
        elif name.startswith("face_landmark"):
            self.kind = "mesh"
            self._size = fallback_size or (192, 192)
        elif name.startswith("iris"):
            self.kind = "iris"
            self._size = fallback_size or (64, 64)
        elif name.startswith("face_embedding"):
            self.kind = "embedding"
            self._size = fallback_size or (112, 112)
        elif name.startswith("selfie_multiclass"):
            self.kind = "multiclass"
            self._size = fallback_size or (256, 256)
        elif name.startswith("selfie"):
            self.kind = "segmentation"
            self._size = fallback_size or (256, 256)
        else:
            raise ModelLoadingError(f"No fake for {name}")

    def initialize(self):
        self._initialized = True

    @property
    def input_size(self):
        return self._size

    def get_runtime_info(self):
        return RunnerInfo(runtime="fake", model_name=self.model_path.stem, input_size=self._size)

    def close(self):
        self.close_count += 1
        super().close()

    def run(self, tensor):
        self._ensure_initialized()
        self.calls += 1
        if self.kind == "detection":
            return detection_outputs(self.options, self.faces)
        if self.fail_blank and float(tensor.max()) <= -0.99:
            raise InferenceError(f"{self.kind} got a blank crop")
        h, w = self._size
        if self.kind == "mesh":
            return mesh_outputs(w, h)
        if self.kind == "iris":
            return iris_outputs(w, h)
        if self.kind == "embedding":
            mean = float(tensor.mean())
            return [np.cos(np.arange(192, dtype=np.float32) * (1.0 + mean))[np.newaxis]]
        brightness = (tensor[..., 0] + 1.0) / 2.0
        if self.kind == "segmentation":
            return [brightness[np.newaxis, ..., np.newaxis].astype(np.float32)]
        logits = np.zeros((1, h, w, 6), dtype=np.float32)
        logits[0, ..., 0] = 4.0 * (1.0 - brightness) - 2.0
        logits[0, ..., 3] = 4.0 * brightness - 2.0
        return [logits]


class FakeRunnerFactory:
    """Runner factory that remembers every runner it created."""

    def __init__(self, faces=DEFAULT_FACES, fail_blank=True):
        self.faces = faces
        self.fail_blank = fail_blank
        self.runners = []

    def __call__(self, path, fallback):
        runner = FakeRunner(path, fallback, faces=self.faces, fail_blank=self.fail_blank)
        self.runners.append(runner)
        return runner

    def of_kind(self, kind):
        return [r for r in self.runners if r.kind == kind]


# --------------------------------------------------------------------------- #
# Pipeline factories for the worker process
# --------------------------------------------------------------------------- #


def build_fake_pipeline(config: PipelineConfig) -> FacePipeline:
    return FacePipeline(config, runner_factory=FakeRunnerFactory())


def build_broken_pipeline(config: PipelineConfig) -> FacePipeline:
    raise ModelLoadingError("Model not found: face_detection_back.onnx")


def build_stalled_pipeline(config: PipelineConfig) -> FacePipeline:
    time.sleep(60)
    return build_fake_pipeline(config)


class SlowPipeline(FacePipeline):
    def detect_faces(self, image, mode=None):
        time.sleep(2.0)
        return super().detect_faces(image, mode)


def build_slow_pipeline(config: PipelineConfig) -> FacePipeline:
    return SlowPipeline(config, runner_factory=FakeRunnerFactory())


class MockONNXSession:
    """Mock ONNX session for testing."""

    input_shape = [1, 192, 192, 3]
    output_shapes = [[1, 1, 1, 1404], [1, 1, 1, 1]]

    def __init__(self, model_path, sess_options=None, providers=None):
        self.model_path = model_path
        self.providers = providers or ["CPUExecutionProvider"]
        self.last_feed = None

        # Mock input/output info
        self.input_info = Mock()
        self.input_info.name = "input_1"
        self.input_info.shape = list(self.input_shape)
        self.input_info.type = "tensor(float)"

        self.output_info = []
        for idx, shape in enumerate(self.output_shapes):
            info = Mock()
            info.name = f"output_{idx}"
            info.shape = list(shape)
            self.output_info.append(info)

    def get_inputs(self):
        return [self.input_info]

    def get_outputs(self):
        return self.output_info

    def run(self, output_names, input_feed):
        self.last_feed = input_feed
        value = float(np.mean(input_feed[self.input_info.name]))
        return [
            np.full(info.shape, value, dtype=np.float32) for info in self.output_info
        ]


