"""
Runner factory for creating model runners by runtime kind.

Backends register themselves lazily so that importing the pipeline does not
pull in every inference runtime unconditionally.
"""

from __future__ import annotations

import importlib.util
import logging
from pathlib import Path

from .base import ModelRunner

logger = logging.getLogger(__name__)


class RuntimeKind:
    """Runtime kinds for model runners."""

    ONNXRT = "onnxrt"


# Global registry for runners
_BACKEND_REGISTRY: dict[str, type[ModelRunner]] = {}


def register_backend(kind: str, runner_class: type[ModelRunner]) -> None:
    """Register a runner class for a given runtime kind."""
    _BACKEND_REGISTRY[kind] = runner_class


def get_available_backends() -> list[str]:
    """Get a list of available runtime kinds."""
    available = []

    if importlib.util.find_spec("onnxruntime") is not None:
        from .onnxrt_backend import ONNXRTRunner

        register_backend(RuntimeKind.ONNXRT, ONNXRTRunner)
        available.append(RuntimeKind.ONNXRT)

    return available


def create_runner(
    model_path: str | Path,
    runtime: str = "onnx",
    providers: list[str] | None = None,
    device_preference: str | None = None,
    fallback_size: tuple[int, int] | None = None,
) -> ModelRunner:
    """
    Create an uninitialized runner for one model file.

    Args:
        model_path: Path to the model file.
        runtime: Runtime kind ("onnx" and "onnxrt" are equivalent).
        providers: Explicit ONNX Runtime execution providers.
        device_preference: Preferred device when providers are not given.
        fallback_size: ``(h, w)`` used when the model input is dynamic.

    Returns:
        A runner instance; call ``initialize()`` before use.

    Raises:
        ValueError: If the runtime is not available.
    """
    get_available_backends()

    runtime_normalized = runtime.lower()
    if runtime_normalized == "onnx":
        runtime_normalized = RuntimeKind.ONNXRT

    if runtime_normalized not in _BACKEND_REGISTRY:
        available = list(_BACKEND_REGISTRY.keys())
        raise ValueError(
            f"Runtime '{runtime}' is not available. Available runtimes: {available}"
        )

    runner_class = _BACKEND_REGISTRY[runtime_normalized]
    logger.debug("Creating %s runner for %s", runtime_normalized, model_path)
    return runner_class(
        model_path,
        providers=providers,
        device_preference=device_preference,
        fallback_size=fallback_size,
    )
