from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .nms import NMSConfig


@dataclass(frozen=True)
class DetectorConfig:
    num_classes: int = 1
    # None lets the keypoint count follow the model output width.
    num_keypoints: Optional[int] = None
    keypoint_dims: int = 3
    num_anchors: Optional[int] = None
    pad_value: int = 0
    nms: NMSConfig = field(default_factory=NMSConfig)

    def __post_init__(self) -> None:
        if self.num_classes < 1:
            raise ValueError("num_classes must be >= 1")
        if self.num_keypoints is not None and self.num_keypoints < 0:
            raise ValueError("num_keypoints must be >= 0")
        if self.keypoint_dims not in (2, 3):
            raise ValueError("keypoint_dims must be 2 or 3")
        if self.num_anchors is not None and self.num_anchors < 1:
            raise ValueError("num_anchors must be >= 1")
        if not 0 <= self.pad_value <= 255:
            raise ValueError("pad_value must be in [0, 255]")


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    if payload.get(key) is None:
        return None
    return _require_int(payload, key)


def _parse_nms(payload: Any) -> NMSConfig:
    if not isinstance(payload, dict):
        raise ValueError("nms must be a JSON object")
    allowed = {"max_outputs", "iou_threshold", "score_threshold"}
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown nms keys: {unknown}")

    defaults = NMSConfig()
    return NMSConfig(
        max_outputs=_require_int(payload, "max_outputs") if "max_outputs" in payload else defaults.max_outputs,
        iou_threshold=_require_number(payload, "iou_threshold") if "iou_threshold" in payload else defaults.iou_threshold,
        score_threshold=(
            _require_number(payload, "score_threshold") if "score_threshold" in payload else defaults.score_threshold
        ),
    )


def detector_config_from_dict(payload: Dict[str, Any]) -> DetectorConfig:
    allowed = {"num_classes", "num_keypoints", "keypoint_dims", "num_anchors", "pad_value", "nms"}
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown detector config keys: {unknown}")

    defaults = DetectorConfig()
    return DetectorConfig(
        num_classes=_require_int(payload, "num_classes") if "num_classes" in payload else defaults.num_classes,
        num_keypoints=_optional_int(payload, "num_keypoints"),
        keypoint_dims=_require_int(payload, "keypoint_dims") if "keypoint_dims" in payload else defaults.keypoint_dims,
        num_anchors=_optional_int(payload, "num_anchors"),
        pad_value=_require_int(payload, "pad_value") if "pad_value" in payload else defaults.pad_value,
        nms=_parse_nms(payload["nms"]) if "nms" in payload else defaults.nms,
    )


def load_detector_config(path: Path) -> DetectorConfig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Detector config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid detector config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Detector config must be a JSON object")
    return detector_config_from_dict(payload)
