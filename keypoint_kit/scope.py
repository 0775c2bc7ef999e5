"""
Call-scoped bookkeeping for intermediate arrays.

Every detection call opens one `TensorScope`. Arrays registered with `track()`
are released when the scope exits. Arrays registered with `keep()` are the few
buffers that must survive the asynchronous suppression step; the caller releases
them explicitly once their data has been copied out. Whatever is still held when
the scope exits (including on error) is released then.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

import numpy as np


class BufferRegistry:
    """
    Counts live call-scoped buffers across all scopes opened from it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live = 0

    @property
    def live_count(self) -> int:
        with self._lock:
            return self._live

    def _acquire(self, n: int = 1) -> None:
        with self._lock:
            self._live += n

    def _free(self, n: int = 1) -> None:
        with self._lock:
            self._live -= n

    @contextmanager
    def scope(self) -> Iterator["TensorScope"]:
        s = TensorScope(self)
        try:
            yield s
        finally:
            s.close()


class TensorScope:
    def __init__(self, registry: BufferRegistry):
        self._registry = registry
        self._implicit: Dict[int, np.ndarray] = {}
        self._explicit: Dict[int, np.ndarray] = {}
        self._closed = False

    @property
    def held(self) -> int:
        return len(self._implicit) + len(self._explicit)

    def track(self, arr: np.ndarray) -> np.ndarray:
        """Register an array that is released when the scope exits."""
        self._register(self._implicit, arr)
        return arr

    def keep(self, arr: np.ndarray) -> np.ndarray:
        """Register an array that the caller releases with `release()`."""
        self._register(self._explicit, arr)
        return arr

    def release(self, *arrays: np.ndarray) -> None:
        for arr in arrays:
            if self._explicit.pop(id(arr), None) is not None:
                self._registry._free()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        n = self.held
        self._implicit.clear()
        self._explicit.clear()
        if n:
            self._registry._free(n)

    def _register(self, bucket: Dict[int, np.ndarray], arr: np.ndarray) -> None:
        if self._closed:
            raise RuntimeError("TensorScope is already closed.")
        key = id(arr)
        if key in self._implicit or key in self._explicit:
            return
        bucket[key] = arr
        self._registry._acquire()
