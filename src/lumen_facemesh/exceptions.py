"""
Face Mesh Pipeline Exception Definitions

Following Lumen's contract: each layer defines its own error types.
"""


class FaceMeshError(Exception):
    """Base exception for all face pipeline operations."""

    pass


class DecodeError(FaceMeshError):
    """
    Raised when an image cannot be decoded or a pixel buffer is malformed.

    @context: Image decoding and input validation
    """

    pass


class AlignmentError(FaceMeshError):
    """
    Raised when crop geometry is degenerate (e.g. a collapsed eye ROI).

    @context: Face and eye alignment
    """

    pass


class InferenceError(FaceMeshError):
    """
    Raised when a model call fails or returns an unexpected shape.

    @context: Model runners and stage post-processing
    """

    pass


class ModelLoadingError(FaceMeshError):
    """
    Raised when a model file is missing or cannot be opened.

    @context: Runner initialization
    """

    pass


class PoolNotInitializedError(FaceMeshError):
    """
    Raised when a pool or pipeline is used before initialize().

    @context: Model pool and pipeline lifecycle
    """

    pass


class WorkerTimeoutError(FaceMeshError):
    """
    Raised when the background worker does not finish its handshake in time.

    @context: Background worker startup
    """

    pass


class DisposedError(FaceMeshError):
    """
    Raised when an operation is attempted after teardown.

    @context: Model pool, pipeline and worker lifecycle
    """

    pass


class ConfigError(FaceMeshError):
    """
    Raised when configuration is invalid or malformed.

    @context: Configuration parsing and validation
    """

    pass


class WorkerError(FaceMeshError):
    """
    Raised when the background worker reports a failure for a request.

    @context: Background worker responses
    """

    def __init__(self, message: str, error_type: str | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type
