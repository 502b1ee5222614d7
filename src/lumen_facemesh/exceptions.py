"""
Face Mesh Exception Definitions

Following Lumen's contract: each layer defines its own error types. Every
error carries a stable ``kind`` tag so it can cross a transport boundary as a
plain string.
"""


class FaceMeshError(Exception):
    """Base class for all lumen-facemesh errors."""

    kind = "Internal"


class NotInitializedError(FaceMeshError):
    """
    Raised when a pipeline or model is used before initialization.

    @context: FaceDetector / SelfieSegmentation entry points
    """

    kind = "NotInitialized"


class InvalidInputError(FaceMeshError):
    """
    Raised when input data is invalid or malformed.

    @context: Image decode, argument validation, map deserialization
    """

    kind = "InvalidInput"


class ImageTooSmallError(InvalidInputError):
    """
    Raised when an image is below the minimum supported dimension.

    @context: Segmentation input validation
    """

    kind = "ImageTooSmall"


class ModelMismatchError(FaceMeshError):
    """
    Raised when a model's tensor layout does not match the declared variant.

    @context: Model validation at construction (only when enabled)
    """

    kind = "ModelMismatch"


class UseAfterDisposeError(FaceMeshError):
    """
    Raised when an entry point is called after dispose().

    @context: Any disposable engine or pipeline
    """

    kind = "UseAfterDispose"


class PoolDisposedError(UseAfterDisposeError):
    """
    Raised when acquiring from, or waiting on, a disposed interpreter pool.

    @context: InterpreterPool.acquire
    """

    kind = "PoolDisposed"


class InternalError(FaceMeshError):
    """Raised when an unexpected internal failure occurs."""

    kind = "Internal"


class InferenceError(InternalError):
    """Raised when a model inference call fails."""

    pass


class ModelLoadingError(FaceMeshError):
    """
    Raised when a model file cannot be found or loaded.

    @context: Model resource resolution and engine creation
    """

    kind = "ModelLoading"


class ConfigError(FaceMeshError):
    """
    Raised when configuration is invalid or malformed.

    @context: Configuration parsing and validation
    """

    kind = "Config"
