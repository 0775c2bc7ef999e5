"""
Error types raised by keypoint_kit.

None of these are retried by the library: a malformed image or model is a
data/programmer error, not a transient condition.
"""


class KeypointKitError(Exception):
    """Base class for all keypoint_kit errors."""

    pass


class InvalidImageError(KeypointKitError):
    """Raised when the source image has zero width or height."""

    pass


class InferenceShapeError(KeypointKitError):
    """Raised when the model input/output shape does not match the expected layout."""

    pass


class ModelLoadError(KeypointKitError):
    """Raised when the model cannot be loaded."""

    pass


class ModelNotReadyError(ModelLoadError):
    """Raised when detection is requested but no model is available."""

    pass
