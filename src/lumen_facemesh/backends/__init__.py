"""Model runners for the face pipeline."""

from .base import ModelRunner, RunnerInfo
from .factory import RuntimeKind, create_runner, get_available_backends, register_backend

__all__ = [
    "ModelRunner",
    "RunnerInfo",
    "RuntimeKind",
    "create_runner",
    "get_available_backends",
    "register_backend",
]
