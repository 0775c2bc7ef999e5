from typing import Optional, Tuple

import numpy as np

from .errors import InvalidImageError
from .scope import TensorScope
from .types import ScaleRatio


def _require_cv2():
    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for letterboxing. Install with `pip install opencv-python`.") from e
    return cv2


def pad_to_square(image: np.ndarray, pad_value: int = 0) -> np.ndarray:
    """
    Pad bottom/right only so the image becomes max(h, w) on both sides.

    Top/left are never padded, so pixel (0, 0) keeps its position.
    """
    cv2 = _require_cv2()

    h, w = image.shape[:2]
    side = max(h, w)
    if (h, w) == (side, side):
        return image
    value = (pad_value, pad_value, pad_value)
    return cv2.copyMakeBorder(image, 0, side - h, 0, side - w, cv2.BORDER_CONSTANT, value=value)


def letterbox_square(
    image: np.ndarray,
    model_width: int,
    model_height: int,
    pad_value: int = 0,
    scope: Optional[TensorScope] = None,
) -> Tuple[np.ndarray, ScaleRatio]:
    """
    Letterbox an RGB image into the model's input tensor.

    Returns:
        tensor: float32 (1, model_height, model_width, 3) in [0, 1]
        ratio: ScaleRatio(max_side / w, max_side / h, max_side)
    """
    cv2 = _require_cv2()

    if image is None or not hasattr(image, "shape"):
        raise TypeError("image must be a NumPy array (RGB).")
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image, 'shape', None)}")
    if model_width <= 0 or model_height <= 0:
        raise ValueError(f"Model input size must be positive, got {(model_width, model_height)}")

    h, w = image.shape[:2]
    if w == 0 or h == 0:
        raise InvalidImageError(f"Image has zero area (w={w}, h={h}).")

    max_side = max(w, h)
    ratio = ScaleRatio(x=max_side / w, y=max_side / h, padded_side=max_side)

    # OpenCV only pads/resizes a few dtypes
    if image.dtype not in (np.uint8, np.float32):
        image = image.astype(np.float32)
    padded = pad_to_square(image, pad_value=pad_value)
    if (max_side, max_side) != (model_width, model_height):
        padded = cv2.resize(padded, (model_width, model_height), interpolation=cv2.INTER_LINEAR)

    tensor = (padded.astype(np.float32) / 255.0)[None, ...]
    if scope is not None:
        scope.track(padded)
        scope.track(tensor)
    return tensor, ratio
