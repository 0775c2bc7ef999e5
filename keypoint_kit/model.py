"""
Boundary to the opaque inference engine.

A model is anything exposing `input_shape` as (batch, width, height, channels)
and `execute(tensor) -> ndarray`. Backends in `keypoint_kit.backends` satisfy
this, and so does any test fake.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from .errors import InferenceShapeError

logger = logging.getLogger(__name__)


@runtime_checkable
class ModelHandle(Protocol):
    @property
    def input_shape(self) -> Sequence[int]:
        ...

    def execute(self, tensor: np.ndarray) -> np.ndarray:
        ...


def model_input_size(model: ModelHandle) -> Tuple[int, int]:
    """Return (model_width, model_height) from the model's declared input shape."""
    shape = tuple(model.input_shape)
    if len(shape) != 4:
        raise InferenceShapeError(f"Expected input shape (batch, width, height, channels), got {shape}")
    try:
        model_width, model_height = int(shape[1]), int(shape[2])
    except (TypeError, ValueError) as exc:
        raise InferenceShapeError(f"Model input size is not static: {shape}") from exc
    if model_width <= 0 or model_height <= 0:
        raise InferenceShapeError(f"Model input size must be positive, got {shape}")
    return model_width, model_height


def expected_channels(num_classes: int, num_keypoints: int, keypoint_dims: int = 3) -> int:
    return 4 + num_classes + num_keypoints * keypoint_dims


def run_inference(
    model: ModelHandle,
    tensor: np.ndarray,
    num_classes: int,
    num_keypoints: Optional[int] = None,
    keypoint_dims: int = 3,
    num_anchors: Optional[int] = None,
) -> np.ndarray:
    """
    Run the model once and check its output is laid out as (1, 4 + num_classes + K, A).
    """
    out = np.asarray(model.execute(tensor))

    if out.ndim != 3:
        raise InferenceShapeError(f"Expected output shape (1, C, A), got {out.shape}")
    if out.shape[0] != 1:
        raise InferenceShapeError(f"Batch > 1 is not supported (got shape {out.shape}).")

    channels, anchors = int(out.shape[1]), int(out.shape[2])
    k = channels - 4 - num_classes
    if k < 0:
        raise InferenceShapeError(
            f"Output has {channels} channels, fewer than 4 box + {num_classes} class channels."
        )
    if k % keypoint_dims != 0:
        raise InferenceShapeError(
            f"{k} keypoint channels is not a multiple of keypoint_dims={keypoint_dims} (shape {out.shape})."
        )
    if num_keypoints is not None and channels != expected_channels(num_classes, num_keypoints, keypoint_dims):
        raise InferenceShapeError(
            f"Expected {expected_channels(num_classes, num_keypoints, keypoint_dims)} channels "
            f"for {num_classes} classes and {num_keypoints} keypoints, got {channels}."
        )
    if num_anchors is not None and anchors != num_anchors:
        raise InferenceShapeError(f"Expected {num_anchors} anchors, got {anchors}.")

    logger.debug("inference output shape=%s keypoint_channels=%d", out.shape, k)
    return out.astype(np.float32, copy=False)
