from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import numpy as np


PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TorchScriptBackendConfig:
    """
    Configuration for TorchScript inference.

    - device: "cpu" or "cuda" (if available)
    - half: cast input to float16 (only if the model expects it)
    - output_index: if the model returns multiple outputs, select this index
    - input_size: (width, height); TorchScript modules do not declare it
    """

    device: str = "cpu"
    half: bool = False
    output_index: int = 0
    input_size: Tuple[int, int] = (640, 640)


class TorchScriptBackend:
    """
    TorchScript model handle using `torch.jit.load`.

    Takes the NHWC tensor from the letterbox step and feeds NCHW to the module.
    """

    def __init__(
        self,
        model_path: PathLike,
        cfg: TorchScriptBackendConfig = TorchScriptBackendConfig(),
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        try:
            import torch  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError("torch is required for the TorchScript backend. Install with `pip install torch`.") from e

        self._torch = torch
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(str(self.model_path))

        self.device = torch.device(cfg.device)
        self.half = cfg.half
        self.output_index = cfg.output_index
        width, height = cfg.input_size
        self._input_shape = (1, int(width), int(height), 3)

        if on_progress is not None:
            on_progress(0.0)
        model = torch.jit.load(str(self.model_path), map_location=self.device)
        model.eval()
        self.model = model
        if on_progress is not None:
            on_progress(1.0)

        logger.info("Loaded TorchScript model %s on %s", self.model_path, self.device)

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return self._input_shape

    def execute(self, tensor: np.ndarray) -> np.ndarray:
        torch = self._torch
        x = torch.as_tensor(np.ascontiguousarray(np.transpose(tensor, (0, 3, 1, 2))), device=self.device)
        if self.half:
            x = x.half()
        else:
            x = x.float()

        with torch.no_grad():
            y = self.model(x)

        if isinstance(y, (tuple, list)):
            y = y[self.output_index]

        if hasattr(y, "detach"):
            y = y.detach()
        return y.float().to("cpu").numpy()
