"""
Tests for the model stages: pre-processing, output parsing and
post-processing around a runner.
"""

import numpy as np
import pytest

from lumen_facemesh.backends.base import ModelRunner, RunnerInfo
from lumen_facemesh.config import DetectionModel, ssd_options_for
from lumen_facemesh.exceptions import InferenceError, PoolNotInitializedError
from lumen_facemesh.models import (
    EMBEDDING_DIM,
    IRIS_OUTPUT_POINTS,
    FaceDetectionModel,
    FaceEmbeddingModel,
    FaceMeshModel,
    IrisModel,
    SegmentationModel,
)
from lumen_facemesh.types import SegmentationClass

from fakes import DEFAULT_FACES, FakeRunner, detection_outputs


class StubRunner(ModelRunner):
    """Returns fixed outputs, or raises ``error`` when set."""

    def __init__(self, outputs=None, size=(64, 64), error=None):
        super().__init__()
        self.outputs = outputs or []
        self.size = size
        self.error = error
        self.tensors = []

    def initialize(self):
        self._initialized = True

    @property
    def input_size(self):
        return self.size

    def run(self, tensor):
        self.tensors.append(tensor.copy())
        if self.error is not None:
            raise self.error
        return self.outputs

    def get_runtime_info(self):
        return RunnerInfo(runtime="stub")


def _ready(stage):
    stage.initialize()
    return stage


BACK = ssd_options_for(DetectionModel.BACK)


class TestRunnerStage:
    def test_use_before_initialize(self):
        stage = FaceMeshModel(StubRunner(size=(192, 192)))
        with pytest.raises(PoolNotInitializedError):
            stage.predict(np.zeros((192, 192, 3), dtype=np.uint8))

    def test_runtime_errors_become_inference_errors(self):
        stage = _ready(FaceMeshModel(StubRunner(size=(192, 192), error=RuntimeError("oom"))))
        with pytest.raises(InferenceError, match="oom"):
            stage.predict(np.zeros((192, 192, 3), dtype=np.uint8))

    def test_tensor_buffer_reused(self):
        runner = StubRunner(outputs=[np.zeros((1, 1404), dtype=np.float32)], size=(192, 192))
        stage = _ready(FaceMeshModel(runner))

        stage.predict(np.zeros((192, 192, 3), dtype=np.uint8))
        first = stage._tensor
        stage.predict(np.full((192, 192, 3), 255, dtype=np.uint8))

        assert stage._tensor is first
        assert runner.tensors[0].max() == pytest.approx(-1.0)
        assert runner.tensors[1].min() == pytest.approx(1.0)

    def test_close_releases_runner(self):
        runner = FakeRunner("face_landmark.onnx")
        stage = _ready(FaceMeshModel(runner))

        stage.close()

        assert runner.close_count == 1
        assert not stage.is_initialized()


class TestFaceDetectionModel:
    def test_detects_both_faces(self, sample_image):
        model = _ready(FaceDetectionModel(FakeRunner("face_detection_back.onnx"), BACK))

        dets = model.detect(sample_image)

        assert len(dets) == 2
        left, right = sorted(dets, key=lambda d: d.bounding_box.xmin)
        assert left.bounding_box.as_tuple() == pytest.approx((0.1, 0.35, 0.4, 0.65), abs=1e-5)
        assert right.bounding_box.center == pytest.approx((0.75, 0.5), abs=1e-5)
        assert left.score > 0.99
        assert left.image_size == (256, 256)
        assert left.num_keypoints == 6

    def test_letterbox_removed(self):
        """On a 2:1 image the canvas y=0.5 still maps to source y=0.5."""
        model = _ready(FaceDetectionModel(FakeRunner("face_detection_back.onnx"), BACK))

        dets = model.detect(np.zeros((256, 512, 3), dtype=np.uint8))

        left = min(dets, key=lambda d: d.bounding_box.xmin)
        assert left.bounding_box.center == pytest.approx((0.25, 0.5), abs=1e-5)
        # Box height doubles once the padding is stripped
        assert left.bounding_box.height == pytest.approx(0.6, abs=1e-5)
        assert left.image_size == (512, 256)

    def test_mirror_output(self, sample_image):
        model = _ready(
            FaceDetectionModel(
                FakeRunner("face_detection_back.onnx", faces=((0.25, 0.5, 0.3),)),
                BACK,
                mirror_output=True,
            )
        )

        (det,) = model.detect(sample_image)

        assert det.bounding_box.center == pytest.approx((0.75, 0.5), abs=1e-5)
        left_eye_x, _ = det.keypoint(0)
        assert left_eye_x == pytest.approx(1.0 - (0.25 - 0.045), abs=1e-5)

    def test_no_faces(self, sample_image):
        model = _ready(FaceDetectionModel(FakeRunner("face_detection_back.onnx", faces=()), BACK))
        assert model.detect(sample_image) == []

    def test_unrecognized_outputs(self, sample_image):
        runner = StubRunner(outputs=[np.zeros((1, 10), dtype=np.float32)], size=(256, 256))
        model = _ready(FaceDetectionModel(runner, BACK))

        with pytest.raises(InferenceError, match="anchors"):
            model.detect(sample_image)

    def test_output_order_independent(self, sample_image):
        boxes, scores = detection_outputs(BACK, DEFAULT_FACES)
        model = _ready(FaceDetectionModel(StubRunner(outputs=[scores, boxes], size=(256, 256)), BACK))

        assert len(model.detect(sample_image)) == 2


class TestFaceMeshModel:
    def test_predict_normalized_points(self):
        model = _ready(FaceMeshModel(FakeRunner("face_landmark.onnx", (192, 192))))

        points = model.predict(np.full((192, 192, 3), 100, dtype=np.uint8))

        assert points.shape == (468, 3)
        assert points[33, :2] == pytest.approx((70 / 192, 80 / 192))
        assert points[10, 2] == pytest.approx(0.1)
        assert np.all((points[:, :2] >= 0.0) & (points[:, :2] <= 1.0))

    def test_points_clamped(self):
        flat = np.full((1, 1404), 500.0, dtype=np.float32)
        model = _ready(FaceMeshModel(StubRunner(outputs=[flat], size=(192, 192))))

        points = model.predict(np.zeros((192, 192, 3), dtype=np.uint8))

        assert np.all(points[:, :2] == 1.0)
        assert np.all(points[:, 2] == 500.0)

    def test_letterboxed_crop(self):
        """Points are un-letterboxed back into the crop's own frame."""
        flat = np.zeros((1, 1404), dtype=np.float32)
        flat[0, 0:3] = (96.0, 96.0, 0.0)
        model = _ready(FaceMeshModel(StubRunner(outputs=[flat], size=(192, 192))))

        points = model.predict(np.zeros((96, 192, 3), dtype=np.uint8))

        assert points[0, :2] == pytest.approx((0.5, 0.5))

    def test_too_few_points(self):
        model = _ready(
            FaceMeshModel(StubRunner(outputs=[np.zeros((1, 300), dtype=np.float32)], size=(192, 192)))
        )
        with pytest.raises(InferenceError, match="need 468"):
            model.predict(np.zeros((192, 192, 3), dtype=np.uint8))

    def test_no_landmark_output(self):
        model = _ready(
            FaceMeshModel(StubRunner(outputs=[np.zeros((1, 1), dtype=np.float32)], size=(192, 192)))
        )
        with pytest.raises(InferenceError):
            model.predict(np.zeros((192, 192, 3), dtype=np.uint8))


class TestIrisModel:
    def test_predict_concatenates_outputs(self):
        model = _ready(IrisModel(FakeRunner("iris_landmark.onnx", (64, 64))))

        points = model.predict(np.full((64, 64, 3), 100, dtype=np.uint8))

        assert points.shape == (IRIS_OUTPUT_POINTS, 3)
        assert points[71, :2] == pytest.approx((0.5, 0.5))
        assert points[72, :2] == pytest.approx((38 / 64, 0.5))

    def test_not_clamped(self):
        eye = np.full((1, 213), -32.0, dtype=np.float32)
        iris = np.zeros((1, 15), dtype=np.float32)
        model = _ready(IrisModel(StubRunner(outputs=[eye, iris])))

        points = model.predict(np.zeros((64, 64, 3), dtype=np.uint8))

        assert points[0, 0] == pytest.approx(-0.5)

    def test_missing_iris_points(self):
        model = _ready(IrisModel(StubRunner(outputs=[np.zeros((1, 213), dtype=np.float32)])))
        with pytest.raises(InferenceError, match="need 76"):
            model.predict(np.zeros((64, 64, 3), dtype=np.uint8))


class TestFaceEmbeddingModel:
    def test_unit_length(self):
        model = _ready(FaceEmbeddingModel(FakeRunner("face_embedding.onnx", (112, 112))))

        vector = model.embed(np.full((112, 112, 3), 90, dtype=np.uint8))

        assert vector.shape == (EMBEDDING_DIM,)
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)

    def test_resizes_crop(self):
        runner = FakeRunner("face_embedding.onnx", (112, 112))
        model = _ready(FaceEmbeddingModel(runner))

        model.embed(np.full((57, 57, 3), 90, dtype=np.uint8))

        assert runner.calls == 1

    def test_empty_output(self):
        model = _ready(FaceEmbeddingModel(StubRunner(outputs=[], size=(112, 112))))
        with pytest.raises(InferenceError):
            model.embed(np.zeros((112, 112, 3), dtype=np.uint8))

    def test_similarity_helpers(self):
        a = np.array([1.0, 0.0, 0.0])
        b = np.array([0.0, 1.0, 0.0])

        assert FaceEmbeddingModel.cosine_similarity(a, a) == pytest.approx(1.0)
        assert FaceEmbeddingModel.cosine_similarity(a, b) == pytest.approx(0.0)
        assert FaceEmbeddingModel.cosine_similarity(a, -a) == pytest.approx(-1.0)
        assert FaceEmbeddingModel.euclidean_distance(a, b) == pytest.approx(np.sqrt(2.0))
        assert FaceEmbeddingModel.cosine_similarity(a, np.zeros(3)) == 0.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="mismatch"):
            FaceEmbeddingModel.cosine_similarity(np.ones(3), np.ones(4))

    def test_normalize_zero_vector(self):
        assert np.all(FaceEmbeddingModel.normalize(np.zeros(4)) == 0.0)


class TestSegmentationModel:
    def test_binary_mask(self, sample_image):
        model = _ready(SegmentationModel(FakeRunner("selfie_segmentation.onnx", (256, 256))))

        mask = model.segment(sample_image)

        assert (mask.width, mask.height) == (256, 256)
        assert (mask.original_width, mask.original_height) == (256, 256)
        assert mask.class_data is None
        assert mask.data[10, 10] == pytest.approx(200 / 255, abs=1e-2)
        assert mask.data[10, 250] == pytest.approx(0.0, abs=1e-6)

    def test_multiclass_mask(self, sample_image):
        model = _ready(
            SegmentationModel(FakeRunner("selfie_multiclass.onnx", (256, 256)), multiclass=True)
        )

        mask = model.segment(sample_image)

        assert mask.class_data.shape == (256, 256, 6)
        np.testing.assert_allclose(mask.class_data.sum(axis=-1), 1.0, atol=1e-5)
        np.testing.assert_allclose(
            mask.data, 1.0 - mask.class_data[..., SegmentationClass.BACKGROUND], atol=1e-6
        )
        assert mask.data[10, 10] > mask.data[10, 250]

    def test_channels_first_output(self, sample_image):
        chw = np.zeros((1, 6, 32, 32), dtype=np.float32)
        chw[0, 3] = 5.0
        model = _ready(SegmentationModel(StubRunner(outputs=[chw], size=(32, 32)), multiclass=True))

        mask = model.segment(sample_image)

        assert mask.class_data.shape == (32, 32, 6)
        assert mask.class_mask(SegmentationClass.FACE_SKIN).min() > 0.9

    def test_padding_recorded(self):
        output = np.zeros((1, 64, 64, 1), dtype=np.float32)
        model = _ready(SegmentationModel(StubRunner(outputs=[output], size=(64, 64))))

        mask = model.segment(np.zeros((50, 100, 3), dtype=np.uint8))

        assert mask.padding == pytest.approx((0.25, 0.25, 0.0, 0.0))
        assert (mask.original_width, mask.original_height) == (100, 50)

    def test_wrong_channel_count(self, sample_image):
        output = np.zeros((1, 32, 32, 3), dtype=np.float32)
        model = _ready(SegmentationModel(StubRunner(outputs=[output], size=(32, 32))))
        with pytest.raises(InferenceError, match="channels"):
            model.segment(sample_image)
