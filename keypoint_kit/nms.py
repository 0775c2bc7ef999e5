import asyncio
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class NMSConfig:
    # Only the single best non-overlapping detection is kept by default: the
    # pipeline targets one primary subject per image.
    max_outputs: int = 1
    iou_threshold: float = 0.45
    score_threshold: float = 0.3

    def __post_init__(self) -> None:
        if isinstance(self.max_outputs, bool) or not isinstance(self.max_outputs, int):
            raise ValueError("max_outputs must be an integer")
        if self.max_outputs < 0:
            raise ValueError("max_outputs must be >= 0")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ValueError("iou_threshold must be in [0, 1]")
        if not 0.0 <= self.score_threshold <= 1.0:
            raise ValueError("score_threshold must be in [0, 1]")


def box_iou(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    """
    IoU between one (y1, x1, y2, x2) box and an (N, 4) array of boxes.
    Zero-area boxes have IoU 0 with everything.
    """
    y1 = np.maximum(box[0], others[:, 0])
    x1 = np.maximum(box[1], others[:, 1])
    y2 = np.minimum(box[2], others[:, 2])
    x2 = np.minimum(box[3], others[:, 3])

    inter = np.maximum(0.0, y2 - y1) * np.maximum(0.0, x2 - x1)
    area = max(0.0, float(box[2] - box[0])) * max(0.0, float(box[3] - box[1]))
    areas = np.maximum(0.0, others[:, 2] - others[:, 0]) * np.maximum(0.0, others[:, 3] - others[:, 1])
    union = area + areas - inter
    return np.where(union > 0, inter / np.maximum(union, 1e-12), 0.0)


def nms(boxes: np.ndarray, scores: np.ndarray, cfg: NMSConfig = NMSConfig()) -> np.ndarray:
    """
    Greedy NumPy NMS. Expects boxes shape (N,4) as (y1, x1, y2, x2) and scores shape (N,).
    Returns indices into `boxes`, best first, at most `cfg.max_outputs` of them.
    """

    boxes = np.asarray(boxes, dtype=np.float32)
    scores = np.asarray(scores, dtype=np.float32).reshape(-1)
    if boxes.size == 0 or cfg.max_outputs <= 0:
        return np.empty((0,), dtype=np.int32)
    if boxes.shape != (scores.shape[0], 4):
        raise ValueError(f"Expected boxes shape ({scores.shape[0]}, 4), got {boxes.shape}")

    candidates = np.where(scores >= cfg.score_threshold)[0]
    order = candidates[np.argsort(-scores[candidates], kind="stable")]
    keep = []

    while order.size > 0 and len(keep) < cfg.max_outputs:
        i = order[0]
        keep.append(i)

        iou = box_iou(boxes[i], boxes[order[1:]])
        inds = np.where(iou <= cfg.iou_threshold)[0]
        order = order[inds + 1]

    return np.array(keep, dtype=np.int32)


async def nms_async(boxes: np.ndarray, scores: np.ndarray, cfg: NMSConfig = NMSConfig()) -> np.ndarray:
    """
    Same as `nms`, but yields to the event loop once before running.
    """
    await asyncio.sleep(0)
    return nms(boxes, scores, cfg)
