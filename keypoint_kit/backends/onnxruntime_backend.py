from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np


PathLike = Union[str, Path]
ProgressFn = Callable[[float], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - providers: ORT execution providers (e.g., ["CUDAExecutionProvider", "CPUExecutionProvider"])
    - input_name/output_name: override auto-selected I/O names if needed
    - input_size: (width, height) used when the model declares dynamic spatial dims
    - chunk_size: bytes read per progress step while loading the model file
    """

    providers: Optional[Sequence[str]] = None
    input_name: Optional[str] = None
    output_name: Optional[str] = None
    input_size: Tuple[int, int] = (640, 640)
    chunk_size: int = 1 << 20


def read_model_bytes(path: Path, on_progress: Optional[ProgressFn] = None, chunk_size: int = 1 << 20) -> bytes:
    """Read a model file, reporting the loaded fraction in [0, 1]."""
    total = path.stat().st_size
    if on_progress is not None:
        on_progress(0.0)
    chunks = []
    read = 0
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            chunks.append(chunk)
            read += len(chunk)
            if on_progress is not None and total:
                on_progress(min(read / total, 1.0))
    return b"".join(chunks)


def _static_dim(value: object, fallback: int) -> int:
    return value if isinstance(value, int) and value > 0 else fallback


def nhwc_input_shape(onnx_shape: Sequence[object], input_size: Tuple[int, int]) -> Tuple[Tuple[int, int, int, int], bool]:
    """
    Convert a session input shape to (batch, width, height, channels).

    Returns the shape and whether the model expects channels-first (NCHW) input.
    Dynamic (symbolic) dims fall back to `input_size`.
    """
    if len(onnx_shape) != 4:
        raise ValueError(f"Expected a 4-D image input, got {list(onnx_shape)}")
    fallback_w, fallback_h = input_size
    # NCHW unless the last axis is the 3-channel one
    channels_first = onnx_shape[1] == 3 or onnx_shape[3] != 3
    if channels_first:
        _, c, h, w = onnx_shape
    else:
        _, h, w, c = onnx_shape
    shape = (1, _static_dim(w, fallback_w), _static_dim(h, fallback_h), _static_dim(c, 3))
    return shape, channels_first


class OnnxRuntimeBackend:
    """
    ONNX Runtime model handle.

    `execute` takes the NHWC float32 tensor produced by the letterbox step and
    transposes it to NCHW when the exported model is channels-first (the usual
    case for YOLO pose exports). Returns the primary output as a NumPy array.
    """

    def __init__(
        self,
        model_path: PathLike,
        cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig(),
        on_progress: Optional[ProgressFn] = None,
    ):
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "onnxruntime is required for the ONNX backend. Install it with `pip install onnxruntime` "
                "(or `onnxruntime-gpu`)."
            ) from e

        self._ort = ort
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(str(self.model_path))

        model_bytes = read_model_bytes(self.model_path, on_progress=on_progress, chunk_size=cfg.chunk_size)

        sess_opts = ort.SessionOptions()
        providers = list(cfg.providers) if cfg.providers is not None else None
        self.session = ort.InferenceSession(model_bytes, sess_options=sess_opts, providers=providers)

        first_input = self.session.get_inputs()[0]
        self.input_name = cfg.input_name or first_input.name
        # If output_name not provided, pick first output.
        self.output_name = cfg.output_name or self.session.get_outputs()[0].name
        self._input_shape, self.channels_first = nhwc_input_shape(first_input.shape, cfg.input_size)

        logger.info(
            "Loaded ONNX model %s input=%s channels_first=%s providers=%s",
            self.model_path,
            self._input_shape,
            self.channels_first,
            self.providers_in_use,
        )

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return self._input_shape

    @property
    def providers_in_use(self) -> Sequence[str]:
        # ORT returns providers in priority order for this session.
        return tuple(self.session.get_providers())

    @property
    def available_providers(self) -> Sequence[str]:
        return tuple(self._ort.get_available_providers())

    def execute(self, tensor: np.ndarray) -> np.ndarray:
        blob = np.asarray(tensor, dtype=np.float32)
        if self.channels_first:
            blob = np.ascontiguousarray(np.transpose(blob, (0, 3, 1, 2)))
        outputs = self.session.run([self.output_name], {self.input_name: blob})
        return outputs[0]
