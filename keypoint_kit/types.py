from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class ScaleRatio:
    """
    Letterbox correction for one detection call.

    x = padded_side / w, y = padded_side / h, where padded_side = max(w, h).
    """

    x: float
    y: float
    padded_side: int

    @property
    def source_size(self) -> Tuple[float, float]:
        # (w, h) of the image the ratio was computed from
        return self.padded_side / self.x, self.padded_side / self.y

    def as_pair(self) -> Tuple[float, float]:
        return self.x, self.y


@dataclass
class RawDetectionSet:
    """
    Decoded, unfiltered per-anchor arrays. All arrays share the anchor axis.

    boxes:     (A, 4) float32 as (y1, x1, y2, x2) in model-input pixels
    scores:    (A,)   float32, best class score per anchor
    class_ids: (A,)   int32, argmax class per anchor
    keypoints: (A, K) float32, flat keypoint channels per anchor
    """

    boxes: np.ndarray
    scores: np.ndarray
    class_ids: np.ndarray
    keypoints: np.ndarray

    @property
    def num_anchors(self) -> int:
        return int(self.scores.shape[0])

    def gather(self, indices: np.ndarray) -> "RawDetectionSet":
        idx = np.asarray(indices, dtype=np.int64)
        return RawDetectionSet(
            boxes=self.boxes[idx],
            scores=self.scores[idx],
            class_ids=self.class_ids[idx],
            keypoints=self.keypoints[idx],
        )


@dataclass(frozen=True)
class Keypoint:
    x: float
    y: float
    confidence: Optional[float] = None


@dataclass
class Detection:
    """
    One retained detection in source-image pixel coordinates.
    """

    y1: float
    x1: float
    y2: float
    x2: float
    score: float
    class_id: int
    keypoints: Tuple[Keypoint, ...] = field(default_factory=tuple)

    def as_yxyx(self) -> Tuple[float, float, float, float]:
        return self.y1, self.x1, self.y2, self.x2

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x1, self.y1, self.x2, self.y2

    def keypoints_flat(self) -> List[float]:
        out: List[float] = []
        for kp in self.keypoints:
            out.extend((kp.x, kp.y))
            if kp.confidence is not None:
                out.append(kp.confidence)
        return out

    def to_dict(self) -> Dict[str, object]:
        return {
            "box": [round(v, 2) for v in self.as_yxyx()],
            "score": round(self.score, 4),
            "class_id": self.class_id,
            "keypoints": [
                [round(kp.x, 2), round(kp.y, 2)] + ([] if kp.confidence is None else [round(kp.confidence, 4)])
                for kp in self.keypoints
            ],
        }
