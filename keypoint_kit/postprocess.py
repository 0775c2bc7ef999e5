from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from .nms import NMSConfig, nms, nms_async
from .scope import TensorScope
from .types import Detection, Keypoint, RawDetectionSet, ScaleRatio


def decode_output(raw: np.ndarray, num_classes: int, scope: Optional[TensorScope] = None) -> RawDetectionSet:
    """
    Decode a (1, C, A) keypoint-model output into per-anchor arrays.

    Channel layout per anchor: [cx, cy, w, h, class_scores (num_classes)..., keypoints...].
    Boxes come out as (y1, x1, y2, x2).
    """

    p = np.asarray(raw)
    if p.ndim != 3 or p.shape[0] != 1:
        raise ValueError(f"Expected output shape (1, C, A), got {p.shape}")
    if p.shape[1] < 4 + num_classes:
        raise ValueError(f"Output has {p.shape[1]} channels, need at least {4 + num_classes}")

    # (1, C, A) -> (1, A, C): one row per anchor
    trans = np.ascontiguousarray(np.transpose(p, (0, 2, 1)))
    if scope is not None:
        scope.keep(trans)
    rows = trans[0]

    cx, cy, w_box, h_box = rows[:, 0], rows[:, 1], rows[:, 2], rows[:, 3]
    x1 = cx - w_box / 2
    y1 = cy - h_box / 2
    boxes = np.stack([y1, x1, y1 + h_box, x1 + w_box], axis=1).astype(np.float32)

    class_scores = rows[:, 4 : 4 + num_classes]
    if rows.shape[0] == 0:
        scores = np.empty((0,), dtype=np.float32)
        class_ids = np.empty((0,), dtype=np.int32)
    else:
        scores = class_scores.max(axis=1).astype(np.float32)
        class_ids = class_scores.argmax(axis=1).astype(np.int32)

    keypoints = np.array(rows[:, 4 + num_classes :], dtype=np.float32)

    if scope is not None:
        for arr in (boxes, scores, class_ids):
            scope.keep(arr)
        scope.track(keypoints)
        # everything needed from the transposed rows has been copied out
        scope.release(trans)

    return RawDetectionSet(boxes=boxes, scores=scores, class_ids=class_ids, keypoints=keypoints)


def _model_to_source(ratio: ScaleRatio, model_size: Tuple[int, int]) -> Tuple[float, float]:
    model_w, model_h = model_size
    return ratio.padded_side / model_w, ratio.padded_side / model_h


def scale_boxes(boxes: np.ndarray, ratio: ScaleRatio, model_size: Tuple[int, int]) -> np.ndarray:
    """
    Map (y1, x1, y2, x2) boxes from model-input pixels to source-image pixels.

    Padding was added on the bottom/right only, so undoing the resize is enough;
    results are clipped to the original (w, h).
    """

    sx, sy = _model_to_source(ratio, model_size)
    out = np.array(boxes, dtype=np.float32).reshape(-1, 4)
    out[:, [0, 2]] *= sy
    out[:, [1, 3]] *= sx

    orig_w, orig_h = ratio.source_size
    out[:, [0, 2]] = np.clip(out[:, [0, 2]], 0, orig_h)
    out[:, [1, 3]] = np.clip(out[:, [1, 3]], 0, orig_w)
    return out


def scale_keypoints(
    keypoints: np.ndarray,
    ratio: ScaleRatio,
    model_size: Tuple[int, int],
    keypoint_dims: int = 3,
) -> np.ndarray:
    """
    Map flat (x, y[, conf]) keypoint groups to source-image pixels.
    Confidence is passed through untouched.
    """

    sx, sy = _model_to_source(ratio, model_size)
    out = np.array(keypoints, dtype=np.float32)
    n = out.shape[0] if out.ndim == 2 else 1
    width = out.shape[-1]
    if width % keypoint_dims != 0:
        raise ValueError(f"Keypoint vector of size {width} is not a multiple of {keypoint_dims}")
    grouped = out.reshape(n, width // keypoint_dims, keypoint_dims)
    grouped[..., 0] *= sx
    grouped[..., 1] *= sy
    return grouped.reshape(out.shape)


@dataclass
class KeypointPostConfig:
    num_classes: int = 1
    keypoint_dims: int = 3
    nms: NMSConfig = field(default_factory=NMSConfig)


class KeypointPostprocessor:
    """
    Post-process for keypoint (pose) exports laid out as (1, 4 + C + K, A),
    e.g. 1 x 56 x 8400 for a single-class 17-keypoint model.

    decode -> NMS -> gather -> map back to source-image coordinates.
    """

    def __init__(self, cfg: KeypointPostConfig):
        self.cfg = cfg

    def process(
        self,
        raw: np.ndarray,
        ratio: ScaleRatio,
        model_size: Tuple[int, int],
        scope: Optional[TensorScope] = None,
    ) -> List[Detection]:
        decoded = decode_output(raw, self.cfg.num_classes, scope=scope)
        keep = nms(decoded.boxes, decoded.scores, self.cfg.nms)
        return self._finish(decoded, keep, ratio, model_size, scope)

    async def process_async(
        self,
        raw: np.ndarray,
        ratio: ScaleRatio,
        model_size: Tuple[int, int],
        scope: Optional[TensorScope] = None,
    ) -> List[Detection]:
        decoded = decode_output(raw, self.cfg.num_classes, scope=scope)
        keep = await nms_async(decoded.boxes, decoded.scores, self.cfg.nms)
        return self._finish(decoded, keep, ratio, model_size, scope)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _finish(
        self,
        decoded: RawDetectionSet,
        keep: np.ndarray,
        ratio: ScaleRatio,
        model_size: Tuple[int, int],
        scope: Optional[TensorScope],
    ) -> List[Detection]:
        if scope is not None:
            scope.keep(keep)

        # gather copies, so the decoded buffers can be let go right away
        selected = decoded.gather(keep)
        if scope is not None:
            scope.release(decoded.boxes, decoded.scores, decoded.class_ids, keep)

        boxes = scale_boxes(selected.boxes, ratio, model_size)
        keypoints = scale_keypoints(selected.keypoints, ratio, model_size, self.cfg.keypoint_dims)
        return self._to_detections(boxes, selected.scores, selected.class_ids, keypoints)

    def _to_detections(
        self,
        boxes: np.ndarray,
        scores: np.ndarray,
        class_ids: np.ndarray,
        keypoints: np.ndarray,
    ) -> List[Detection]:
        dims = self.cfg.keypoint_dims
        out = []
        for (y1, x1, y2, x2), score, cls_id, kps in zip(boxes, scores, class_ids, keypoints):
            groups = kps.reshape(-1, dims)
            out.append(
                Detection(
                    y1=float(y1),
                    x1=float(x1),
                    y2=float(y2),
                    x2=float(x2),
                    score=float(score),
                    class_id=int(cls_id),
                    keypoints=tuple(
                        Keypoint(
                            x=float(g[0]),
                            y=float(g[1]),
                            confidence=float(g[2]) if dims > 2 else None,
                        )
                        for g in groups
                    ),
                )
            )
        return out
