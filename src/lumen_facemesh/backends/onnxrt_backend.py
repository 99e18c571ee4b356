"""
ONNX Runtime runner for the face pipeline models.

Wraps a single ``onnxruntime.InferenceSession``. The input layout (NHWC as
exported from MediaPipe, or NCHW) and the spatial size are read from the
session's first input. One float32 input buffer of that exact shape is
allocated at initialization and refilled on each call.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import numpy as np
import numpy.typing as npt
import onnxruntime as ort

from ..exceptions import InferenceError, ModelLoadingError
from .base import ModelRunner, RunnerInfo

logger = logging.getLogger(__name__)


class ONNXRTRunner(ModelRunner):
    """Single-model ONNX Runtime runner with a reusable input buffer."""

    def __init__(
        self,
        model_path: str | Path,
        providers: list[str] | None = None,
        device_preference: str | None = None,
        fallback_size: tuple[int, int] | None = None,
    ) -> None:
        super().__init__()
        self.model_path = Path(model_path)
        self._providers = providers or self._default_providers(device_preference)
        self._fallback_size = fallback_size
        self._session: ort.InferenceSession | None = None
        self._input_name: str | None = None
        self._input_size: tuple[int, int] | None = fallback_size
        self._layout = "nhwc"
        self._buffer: npt.NDArray[np.float32] | None = None
        self._load_time_seconds: float | None = None

    # ------------------------------------------------------------------ #
    # Provider utilities
    # ------------------------------------------------------------------ #

    @staticmethod
    def _default_providers(device_pref: str | None) -> list[str]:
        available = set(ort.get_available_providers())
        priority = [
            "CUDAExecutionProvider",
            "CoreMLExecutionProvider",
            "DmlExecutionProvider",
            "OpenVINOExecutionProvider",
            "CPUExecutionProvider",
        ]
        selected = [prov for prov in priority if prov in available]

        pref_map = {
            "cuda": "CUDAExecutionProvider",
            "coreml": "CoreMLExecutionProvider",
            "directml": "DmlExecutionProvider",
            "openvino": "OpenVINOExecutionProvider",
            "cpu": "CPUExecutionProvider",
        }
        desired = pref_map.get((device_pref or "").lower())
        if desired and desired in selected:
            selected.insert(0, selected.pop(selected.index(desired)))

        return selected or ["CPUExecutionProvider"]

    @staticmethod
    def _infer_device(providers: list[str]) -> str:
        provs = [p.lower() for p in providers]
        if any("cuda" in p for p in provs):
            return "cuda"
        if any("coreml" in p for p in provs):
            return "coreml"
        if any("dml" in p for p in provs):
            return "directml"
        if any("openvino" in p for p in provs):
            return "openvino"
        return "cpu"

    # ------------------------------------------------------------------ #
    # Initialization & runtime info
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        if self._initialized:
            return

        if not self.model_path.exists():
            raise ModelLoadingError(f"Model not found: {self.model_path}")

        start = time.time()
        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = (
            ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        try:
            self._session = ort.InferenceSession(
                str(self.model_path), sess_options, providers=self._providers
            )
        except Exception as exc:
            raise ModelLoadingError(
                f"Failed to load {self.model_path.name}: {exc}"
            ) from exc

        model_input = self._session.get_inputs()[0]
        self._input_name = model_input.name
        self._layout, self._input_size = self._infer_layout(
            list(model_input.shape), self._fallback_size
        )
        h, w = self._input_size
        shape = (1, h, w, 3) if self._layout == "nhwc" else (1, 3, h, w)
        self._buffer = np.zeros(shape, dtype=np.float32)

        self._load_time_seconds = time.time() - start
        self._initialized = True
        logger.info(
            "Loaded %s in %.2fs (input=%dx%d %s, providers=%s)",
            self.model_path.name,
            self._load_time_seconds,
            w,
            h,
            self._layout,
            ",".join(self._providers),
        )

    @staticmethod
    def _infer_layout(
        shape: list[int | str | None], fallback: tuple[int, int] | None
    ) -> tuple[str, tuple[int, int]]:
        """Return ``(layout, (h, w))`` from a 4D input shape."""

        def _dim(value: int | str | None) -> int | None:
            return value if isinstance(value, int) and value > 0 else None

        if len(shape) != 4:
            raise ModelLoadingError(f"Expected a 4D image input, got shape {shape}")
        if _dim(shape[1]) == 3 and _dim(shape[3]) != 3:
            layout, h, w = "nchw", _dim(shape[2]), _dim(shape[3])
        else:
            layout, h, w = "nhwc", _dim(shape[1]), _dim(shape[2])

        if h is None or w is None:
            if fallback is None:
                raise ModelLoadingError(
                    f"Input shape {shape} is dynamic and no fallback size was given"
                )
            h, w = fallback
        return layout, (h, w)

    @property
    def input_size(self) -> tuple[int, int]:
        self._ensure_initialized()
        assert self._input_size is not None
        return self._input_size

    @property
    def layout(self) -> str:
        return self._layout

    def get_runtime_info(self) -> RunnerInfo:
        self._ensure_initialized()
        assert self._session is not None
        return RunnerInfo(
            runtime="onnx",
            model_name=self.model_path.stem,
            device=self._infer_device(self._providers),
            input_size=self._input_size,
            layout=self._layout,
            outputs=[list(o.shape) for o in self._session.get_outputs()],
            extra={
                "providers": ",".join(self._providers),
                "onnxruntime": getattr(ort, "__version__", None),
                "load_time": (
                    f"{self._load_time_seconds:.3f}"
                    if self._load_time_seconds is not None
                    else None
                ),
            },
        )

    # ------------------------------------------------------------------ #
    # Inference
    # ------------------------------------------------------------------ #

    def run(self, tensor: npt.NDArray[np.float32]) -> list[npt.NDArray[np.float32]]:
        self._ensure_initialized()
        assert self._session is not None and self._buffer is not None

        h, w = self._input_size or (0, 0)
        if tensor.shape != (h, w, 3):
            raise InferenceError(
                f"{self.model_path.name} expects a ({h}, {w}, 3) tensor, got {tensor.shape}"
            )

        if self._layout == "nhwc":
            self._buffer[0] = tensor
        else:
            self._buffer[0] = np.transpose(tensor, (2, 0, 1))

        try:
            outputs = self._session.run(None, {self._input_name: self._buffer})
        except Exception as exc:
            raise InferenceError(f"{self.model_path.name} inference failed: {exc}") from exc

        return [np.asarray(o, dtype=np.float32) for o in outputs]

    def close(self) -> None:
        self._session = None
        self._buffer = None
        super().close()
