"""
Optional inference backends for keypoint_kit.

Backends are kept in a separate module so core functionality (pre/post-processing)
stays lightweight and can be used without installing inference runtimes. Each
backend is a model handle: it exposes `input_shape` and `execute()`.
"""

from __future__ import annotations

__all__ = []
