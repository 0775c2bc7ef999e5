from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import DetectorConfig
from .errors import ModelLoadError, ModelNotReadyError
from .letterbox import letterbox_square
from .model import ModelHandle, model_input_size, run_inference
from .postprocess import KeypointPostConfig, KeypointPostprocessor
from .scope import BufferRegistry, TensorScope
from .types import Detection, ScaleRatio
from .visualize import Renderer


PathLike = Union[str, Path]
ProgressFn = Callable[[float], None]

logger = logging.getLogger(__name__)


def find_project_root(
    start: Optional[PathLike] = None,
    markers: Sequence[str] = ("pyproject.toml", "setup.py", ".git", "requirements.txt"),
) -> Path:
    """
    Best-effort project root discovery.

    Useful when `keypoint_kit` is vendored as `A/keypoint_kit` and models live in `A/models`.
    """

    p = Path(start) if start is not None else Path.cwd()
    p = p.resolve()

    # If a file is provided, start from its directory.
    if p.is_file():
        p = p.parent

    for parent in (p, *p.parents):
        for m in markers:
            if (parent / m).exists():
                return parent
    return p


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Resolve `path` to an absolute Path.

    - Absolute paths are returned as-is.
    - Relative paths are resolved against `root` if provided, else the project root.
    """

    p = Path(path)
    if p.is_absolute():
        return p

    if root == "auto" or root is None:
        base = find_project_root()
    else:
        base = Path(root).resolve()

    return (base / p).resolve()


def infer_backend(model_path: Path) -> str:
    suffix = model_path.suffix.lower()
    if suffix == ".onnx":
        return "onnxruntime"
    if suffix in {".torchscript", ".ts", ".pt"}:
        return "torchscript"
    raise ValueError(f"Could not infer backend from extension '{suffix}'. Pass backend=... explicitly.")


def load_model(
    model_path: PathLike,
    *,
    backend: Optional[str] = None,
    root: Optional[PathLike] = "auto",
    on_progress: Optional[ProgressFn] = None,
    input_size: Tuple[int, int] = (640, 640),
    onnx_providers: Optional[Sequence[str]] = None,
    onnx_input_name: Optional[str] = None,
    onnx_output_name: Optional[str] = None,
    torch_device: str = "cpu",
    torch_half: bool = False,
    torch_output_index: int = 0,
) -> ModelHandle:
    """
    Load a model handle from disk.

    Progress is reported through `on_progress` as a fraction in [0, 1] and always
    ends at 1.0 on success. Any failure while loading is raised as ModelLoadError.
    """

    resolved = resolve_path(model_path, root=root)

    reported: List[float] = []

    def _report(fraction: float) -> None:
        reported.append(fraction)
        on_progress(fraction)

    backend_progress = _report if on_progress is not None else None

    try:
        chosen = (backend or infer_backend(resolved)).lower()
        if chosen == "onnxruntime":
            from .backends.onnxruntime_backend import OnnxRuntimeBackend, OnnxRuntimeBackendConfig

            model: ModelHandle = OnnxRuntimeBackend(
                resolved,
                OnnxRuntimeBackendConfig(
                    providers=onnx_providers,
                    input_name=onnx_input_name,
                    output_name=onnx_output_name,
                    input_size=input_size,
                ),
                on_progress=backend_progress,
            )
        elif chosen == "torchscript":
            from .backends.torchscript_backend import TorchScriptBackend, TorchScriptBackendConfig

            model = TorchScriptBackend(
                resolved,
                TorchScriptBackendConfig(
                    device=torch_device,
                    half=torch_half,
                    output_index=torch_output_index,
                    input_size=input_size,
                ),
                on_progress=backend_progress,
            )
        else:
            raise ValueError(f"Unsupported backend: {backend!r}")
    except Exception as exc:
        raise ModelLoadError(f"Failed to load model {resolved} (backend={backend!r}): {exc}") from exc

    # no second 1.0 when the backend already finished on it
    if on_progress is not None and (not reported or reported[-1] < 1.0):
        on_progress(1.0)
    return model


async def load_model_async(model_path: PathLike, **kwargs) -> ModelHandle:
    """`load_model` run in a worker thread so the event loop keeps running."""
    return await asyncio.to_thread(load_model, model_path, **kwargs)


def emit_results(
    renderer: Renderer,
    canvas: object,
    labels: Sequence[str],
    detections: Sequence[Detection],
    ratio: ScaleRatio,
    on_complete: Optional[Callable[[], None]] = None,
) -> None:
    """
    Flatten detections for the renderer and invoke it: boxes first, then keypoints,
    then the completion callback.

    The renderer gets the call's ScaleRatio, so it can map source coordinates
    onto a canvas that is not source-sized.
    """

    boxes_flat: List[float] = []
    scores_flat: List[float] = []
    class_ids_flat: List[int] = []
    keypoints_flat: List[float] = []
    for det in detections:
        boxes_flat.extend(det.as_yxyx())
        scores_flat.append(det.score)
        class_ids_flat.append(det.class_id)
        keypoints_flat.extend(det.keypoints_flat())

    renderer.render_boxes(canvas, labels, boxes_flat, scores_flat, class_ids_flat, ratio)
    renderer.render_points(canvas, keypoints_flat, ratio)
    if on_complete is not None:
        on_complete()


class KeypointPipeline:
    """
    Single-image keypoint detection: letterbox -> inference -> decode -> NMS ->
    rescale -> render.

    Takes RGB images as `np.ndarray` and returns a list of `Detection` in source
    image coordinates. All per-call arrays live in a call-local TensorScope.

    `detect` calls are serialized by a threading.Lock and `detect_async` calls by
    an asyncio.Lock. The two locks are independent, so a sync call may run while
    an async call is suspended in NMS; that is safe because no state is shared
    between calls besides the read-only model.
    """

    def __init__(
        self,
        model: Optional[ModelHandle] = None,
        *,
        config: DetectorConfig = DetectorConfig(),
        labels: Optional[Sequence[str]] = None,
        renderer: Optional[Renderer] = None,
    ):
        self.model = model
        self.config = config
        self.labels = list(labels) if labels is not None else []
        self.renderer = renderer
        self.post = KeypointPostprocessor(
            KeypointPostConfig(num_classes=config.num_classes, keypoint_dims=config.keypoint_dims, nms=config.nms)
        )
        self.buffers = BufferRegistry()
        self.progress = 1.0 if model is not None else 0.0
        self.load_error: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._async_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self.model is not None

    # ------------------------------------------------------------------ #
    # Model lifecycle
    # ------------------------------------------------------------------ #
    def _set_progress(self, fraction: float, on_progress: Optional[ProgressFn]) -> None:
        self.progress = float(fraction)
        if on_progress is not None:
            on_progress(self.progress)

    def load(self, model_path: PathLike, *, on_progress: Optional[ProgressFn] = None, **kwargs) -> ModelHandle:
        try:
            model = load_model(model_path, on_progress=lambda f: self._set_progress(f, on_progress), **kwargs)
        except ModelLoadError as exc:
            self.model = None
            self.load_error = exc
            raise
        self._install(model)
        return model

    async def load_async(
        self,
        model_path: PathLike,
        *,
        on_progress: Optional[ProgressFn] = None,
        **kwargs,
    ) -> ModelHandle:
        try:
            model = await load_model_async(
                model_path, on_progress=lambda f: self._set_progress(f, on_progress), **kwargs
            )
        except ModelLoadError as exc:
            self.model = None
            self.load_error = exc
            raise
        self._install(model)
        return model

    def _install(self, model: ModelHandle) -> None:
        self.model = model
        self.load_error = None
        self.progress = 1.0
        logger.info("Model ready, input shape %s", tuple(model.input_shape))

    def _require_model(self) -> ModelHandle:
        if self.model is None:
            raise ModelNotReadyError("No model is loaded; detection is unavailable.") from self.load_error
        return self.model

    # ------------------------------------------------------------------ #
    # Detection
    # ------------------------------------------------------------------ #
    def _infer(self, image: np.ndarray, scope: TensorScope) -> Tuple[np.ndarray, ScaleRatio, Tuple[int, int]]:
        model = self._require_model()
        model_size = model_input_size(model)
        tensor, ratio = letterbox_square(
            image, model_size[0], model_size[1], pad_value=self.config.pad_value, scope=scope
        )
        raw = run_inference(
            model,
            tensor,
            num_classes=self.config.num_classes,
            num_keypoints=self.config.num_keypoints,
            keypoint_dims=self.config.keypoint_dims,
            num_anchors=self.config.num_anchors,
        )
        scope.keep(raw)
        return raw, ratio, model_size

    def _emit(
        self,
        detections: List[Detection],
        ratio: ScaleRatio,
        canvas: Optional[object],
        on_complete: Optional[Callable[[], None]],
    ) -> List[Detection]:
        logger.debug("kept %d detection(s)", len(detections))
        if self.renderer is not None and canvas is not None:
            emit_results(self.renderer, canvas, self.labels, detections, ratio, on_complete)
        elif on_complete is not None:
            on_complete()
        return detections

    def detect(
        self,
        image: np.ndarray,
        canvas: Optional[object] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> List[Detection]:
        with self._lock, self.buffers.scope() as scope:
            raw, ratio, model_size = self._infer(image, scope)
            detections = self.post.process(raw, ratio, model_size, scope=scope)
            scope.release(raw)
            return self._emit(detections, ratio, canvas, on_complete)

    async def detect_async(
        self,
        image: np.ndarray,
        canvas: Optional[object] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> List[Detection]:
        async with self._async_lock:
            with self.buffers.scope() as scope:
                raw, ratio, model_size = self._infer(image, scope)
                detections = await self.post.process_async(raw, ratio, model_size, scope=scope)
                scope.release(raw)
                return self._emit(detections, ratio, canvas, on_complete)

    def __call__(self, image: np.ndarray) -> List[Detection]:
        return self.detect(image)


def load_pipeline(
    model_path: PathLike,
    *,
    config: DetectorConfig = DetectorConfig(),
    labels: Optional[Sequence[str]] = None,
    renderer: Optional[Renderer] = None,
    on_progress: Optional[ProgressFn] = None,
    **load_kwargs,
) -> KeypointPipeline:
    """
    Create a ready pipeline for a model on disk.

    Typical usage:
        pipe = load_pipeline("models/yolov8n-pose.onnx")  # resolves from project root by default
    """

    pipeline = KeypointPipeline(config=config, labels=labels, renderer=renderer)
    pipeline.load(model_path, on_progress=on_progress, **load_kwargs)
    return pipeline
