"""
Pytest configuration and shared fixtures for lumen-facemesh tests.

This file provides common fixtures and configuration for all test modules.
"""

import numpy as np
import pytest
from unittest.mock import patch

from lumen_facemesh import PipelineConfig

from fakes import IMAGE_SIZE, FakeRunnerFactory, MockONNXSession, two_face_image


@pytest.fixture
def sample_image():
    """256x256 RGB image: bright left half, black right half."""
    return two_face_image()


@pytest.fixture
def bright_image():
    """Uniform mid-grey 256x256 RGB image."""
    return np.full((IMAGE_SIZE, IMAGE_SIZE, 3), 128, dtype=np.uint8)


@pytest.fixture
def runner_factory():
    """Fake runner factory producing two faces at x=0.25 and x=0.75."""
    return FakeRunnerFactory()


@pytest.fixture
def pipeline_config(tmp_path):
    """Pipeline config pointing at an (empty) temporary model dir."""
    return PipelineConfig(model_dir=tmp_path, mesh_pool_size=3)


@pytest.fixture
def mock_onnx_model_file(tmp_path):
    """Create a placeholder ONNX model file for testing."""
    model_path = tmp_path / "face_landmark.onnx"

    # Only existence is checked; the session itself is mocked
    model_path.write_bytes(b"mock_onnx_model_content")

    return model_path


@pytest.fixture
def mock_onnx_session_class():
    """Mock ONNXRuntime InferenceSession class."""
    with patch("onnxruntime.InferenceSession", MockONNXSession) as mock_session:
        yield mock_session


# Custom pytest markers for categorizing tests
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
    config.addinivalue_line(
        "markers", "concurrency: marks tests exercising parallel callers and exclusive handles"
    )
    config.addinivalue_line(
        "markers", "worker: marks tests that spawn the background worker process"
    )
    config.addinivalue_line(
        "markers", "geometry: marks tests for anchor, letterbox and alignment math"
    )
    config.addinivalue_line(
        "markers", "model_loading: marks tests for model loading"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on their location and names."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "worker" in str(item.fspath):
            item.add_marker(pytest.mark.worker)

        if any(key in str(item.fspath) for key in ("pool", "worker")) or any(
            key in item.name.lower() for key in ("concurrent", "parallel")
        ):
            item.add_marker(pytest.mark.concurrency)

        if any(key in str(item.fspath) for key in ("anchor", "letterbox", "alignment")):
            item.add_marker(pytest.mark.geometry)

        if "load" in item.name.lower() or "initialize" in item.name.lower():
            item.add_marker(pytest.mark.model_loading)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="run slow tests"
    )


def pytest_runtest_setup(item):
    """Skip slow tests unless --run-slow is specified."""
    if "slow" in item.keywords and not item.config.getoption("--run-slow"):
        pytest.skip("need --run-slow option to run")
