from __future__ import annotations

from typing import Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from .types import ScaleRatio

RatioLike = Union[ScaleRatio, Tuple[float, float]]

# COCO 17-keypoint limb pairs (0-based)
COCO_SKELETON: Tuple[Tuple[int, int], ...] = (
    (15, 13), (13, 11), (16, 14), (14, 12), (11, 12),
    (5, 11), (6, 12), (5, 6), (5, 7), (6, 8),
    (7, 9), (8, 10), (1, 2), (0, 1), (0, 2),
    (1, 3), (2, 4), (3, 5), (4, 6),
)


class Renderer(Protocol):
    """
    Drawing collaborator. Boxes are flat (y1, x1, y2, x2) groups and keypoints flat
    groups per detection, both already in source-image pixels and in the same order.
    `ratio` is the call's ScaleRatio (or a bare (x, y) pair).
    """

    def render_boxes(
        self,
        canvas: object,
        labels: Sequence[str],
        boxes_flat: Sequence[float],
        scores_flat: Sequence[float],
        class_ids_flat: Sequence[int],
        ratio: RatioLike,
    ) -> None:
        ...

    def render_points(self, canvas: object, keypoints_flat: Sequence[float], ratio: RatioLike) -> None:
        ...


def _color_for_class_id(class_id: Optional[int]) -> Tuple[int, int, int]:
    """
    Deterministic RGB color for a class id.
    """

    if class_id is None:
        return (255, 255, 0)

    palette = [
        (56, 56, 255),
        (151, 157, 255),
        (31, 112, 255),
        (29, 178, 255),
        (49, 210, 207),
        (10, 249, 72),
        (23, 204, 146),
        (134, 219, 61),
        (52, 147, 26),
        (187, 212, 0),
    ]
    if 0 <= class_id < len(palette):
        return palette[class_id]

    rng = np.random.default_rng(int(class_id))
    rgb = rng.integers(0, 256, size=3, dtype=np.uint8)
    return int(rgb[0]), int(rgb[1]), int(rgb[2])


def _canvas_scale(ratio: RatioLike, canvas_w: int, canvas_h: int) -> Tuple[float, float]:
    """
    Per-axis factor from source-image pixels to canvas pixels.

    A bare (x, y) pair does not carry the source size, so the canvas is taken to
    be the source image itself.
    """

    if not isinstance(ratio, ScaleRatio):
        return 1.0, 1.0
    src_w, src_h = ratio.source_size
    return canvas_w / src_w, canvas_h / src_h


class OpenCvRenderer:
    """
    Draws boxes, labels and keypoints in place on an RGB `np.ndarray` canvas.

    The canvas may be the source image or any resized view of it, e.g. a
    model-sized display canvas: coordinates are scaled by canvas size over
    source size, using the ScaleRatio passed by the pipeline.

    With `keypoints_per_detection=None`, keypoints are split evenly over the
    detections drawn by the preceding `render_boxes` call.
    """

    def __init__(
        self,
        *,
        keypoint_dims: int = 3,
        min_keypoint_conf: float = 0.5,
        keypoints_per_detection: Optional[int] = 17,
        skeleton: Optional[Sequence[Tuple[int, int]]] = COCO_SKELETON,
        show_score: bool = True,
        box_thickness: int = 2,
        point_radius: int = 3,
        font_scale: float = 0.5,
        font_thickness: int = 1,
    ):
        try:
            import cv2  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError("OpenCV is required for OpenCvRenderer. Install with `pip install opencv-python`.") from e

        self._cv2 = cv2
        self.keypoint_dims = keypoint_dims
        self.min_keypoint_conf = min_keypoint_conf
        self.keypoints_per_detection = keypoints_per_detection
        self.skeleton = skeleton
        self.show_score = show_score
        self.box_thickness = box_thickness
        self.point_radius = point_radius
        self.font_scale = font_scale
        self.font_thickness = font_thickness
        self._boxes_drawn: Optional[int] = None

    @staticmethod
    def _check_canvas(canvas: object) -> np.ndarray:
        if canvas is None or not hasattr(canvas, "shape"):
            raise TypeError("canvas must be a NumPy array (RGB).")
        if canvas.ndim != 3 or canvas.shape[2] != 3:
            raise ValueError(f"Expected canvas shape (H, W, 3), got {getattr(canvas, 'shape', None)}")
        return canvas

    def render_boxes(
        self,
        canvas: np.ndarray,
        labels: Sequence[str],
        boxes_flat: Sequence[float],
        scores_flat: Sequence[float],
        class_ids_flat: Sequence[int],
        ratio: RatioLike,
    ) -> None:
        cv2 = self._cv2
        out = self._check_canvas(canvas)
        h, w = out.shape[:2]
        sx, sy = _canvas_scale(ratio, w, h)
        boxes = np.asarray(boxes_flat, dtype=np.float32).reshape(-1, 4)
        self._boxes_drawn = len(scores_flat)

        for (y1, x1, y2, x2), score, class_id in zip(boxes, scores_flat, class_ids_flat):
            class_id = int(class_id)
            x1i = int(np.clip(round(float(x1) * sx), 0, w - 1))
            y1i = int(np.clip(round(float(y1) * sy), 0, h - 1))
            x2i = int(np.clip(round(float(x2) * sx), 0, w - 1))
            y2i = int(np.clip(round(float(y2) * sy), 0, h - 1))

            color = _color_for_class_id(class_id)
            cv2.rectangle(out, (x1i, y1i), (x2i, y2i), color, thickness=self.box_thickness)

            label = labels[class_id] if 0 <= class_id < len(labels) else str(class_id)
            if self.show_score:
                label = f"{label} {float(score):.2f}"

            (tw, th), baseline = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, self.font_scale, self.font_thickness)
            # Place label above the box if possible, else inside.
            y_text_top = y1i - th - baseline
            if y_text_top < 0:
                y_text_top = y1i

            x_text_right = min(x1i + tw, w - 1)
            y_text_bottom = min(y_text_top + th + baseline, h - 1)

            cv2.rectangle(out, (x1i, y_text_top), (x_text_right, y_text_bottom), color, thickness=-1)
            cv2.putText(
                out,
                label,
                (x1i, min(y_text_top + th, h - 1)),
                cv2.FONT_HERSHEY_SIMPLEX,
                self.font_scale,
                (255, 255, 255),
                thickness=self.font_thickness,
                lineType=cv2.LINE_AA,
            )

    def _group_size(self, n_points: int) -> int:
        if self.keypoints_per_detection:
            return self.keypoints_per_detection
        if self._boxes_drawn:
            if n_points % self._boxes_drawn != 0:
                raise ValueError(f"{n_points} keypoints do not split over {self._boxes_drawn} detections")
            return n_points // self._boxes_drawn
        return n_points

    def render_points(self, canvas: np.ndarray, keypoints_flat: Sequence[float], ratio: RatioLike) -> None:
        cv2 = self._cv2
        out = self._check_canvas(canvas)
        h, w = out.shape[:2]
        sx, sy = _canvas_scale(ratio, w, h)
        dims = self.keypoint_dims
        flat = np.asarray(keypoints_flat, dtype=np.float32).reshape(-1)
        if flat.size == 0:
            return
        if flat.size % dims != 0:
            raise ValueError(f"Keypoint buffer of size {flat.size} is not a multiple of {dims}")

        points = flat.reshape(-1, dims)
        n_per_det = self._group_size(len(points))
        if len(points) % n_per_det != 0:
            raise ValueError(f"{len(points)} keypoints do not split into groups of {n_per_det}")

        for start in range(0, len(points), n_per_det):
            group = points[start : start + n_per_det]
            visible = [dims < 3 or float(p[2]) >= self.min_keypoint_conf for p in group]
            pixels = [(int(round(float(p[0]) * sx)), int(round(float(p[1]) * sy))) for p in group]

            if self.skeleton is not None:
                for a, b in self.skeleton:
                    if a < n_per_det and b < n_per_det and visible[a] and visible[b]:
                        cv2.line(out, pixels[a], pixels[b], (255, 128, 0), thickness=2, lineType=cv2.LINE_AA)

            for (x, y), ok in zip(pixels, visible):
                if ok and 0 <= x < w and 0 <= y < h:
                    cv2.circle(out, (x, y), self.point_radius, (0, 255, 0), thickness=-1, lineType=cv2.LINE_AA)
