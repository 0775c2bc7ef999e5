"""
Single-image keypoint (pose) detection post-processing for YOLO-style exports.

Turns one raw (1, 4 + classes + keypoints, anchors) model output into a few
scored, labeled detections with keypoints in source-image coordinates. Works
on NumPy arrays; OpenCV is used for letterboxing and drawing, and inference
runtimes live behind `keypoint_kit.backends`.
"""

from .config import DetectorConfig, load_detector_config
from .errors import InferenceShapeError, InvalidImageError, KeypointKitError, ModelLoadError, ModelNotReadyError
from .letterbox import letterbox_square, pad_to_square
from .metadata import labels_as_list, load_class_names
from .model import ModelHandle, expected_channels, model_input_size, run_inference
from .nms import NMSConfig, nms, nms_async
from .postprocess import KeypointPostConfig, KeypointPostprocessor, decode_output, scale_boxes, scale_keypoints
from .runtime import (
    KeypointPipeline,
    emit_results,
    find_project_root,
    load_model,
    load_model_async,
    load_pipeline,
    resolve_path,
)
from .scope import BufferRegistry, TensorScope
from .types import Detection, Keypoint, RawDetectionSet, ScaleRatio
from .visualize import OpenCvRenderer, Renderer

__all__ = [
    "DetectorConfig",
    "load_detector_config",
    "InferenceShapeError",
    "InvalidImageError",
    "KeypointKitError",
    "ModelLoadError",
    "ModelNotReadyError",
    "letterbox_square",
    "pad_to_square",
    "labels_as_list",
    "load_class_names",
    "ModelHandle",
    "expected_channels",
    "model_input_size",
    "run_inference",
    "NMSConfig",
    "nms",
    "nms_async",
    "KeypointPostConfig",
    "KeypointPostprocessor",
    "decode_output",
    "scale_boxes",
    "scale_keypoints",
    "KeypointPipeline",
    "emit_results",
    "find_project_root",
    "load_model",
    "load_model_async",
    "load_pipeline",
    "resolve_path",
    "BufferRegistry",
    "TensorScope",
    "Detection",
    "Keypoint",
    "RawDetectionSet",
    "ScaleRatio",
    "OpenCvRenderer",
    "Renderer",
]
