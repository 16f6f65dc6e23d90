from __future__ import annotations

from typing import Any

import numpy as np

from .interfaces import RasterFrame


def to_rgb_array(frame: Any) -> np.ndarray:
    """Convert common camera frame containers to an H x W x 3 uint8 array.

    Supports:
    - numpy arrays (2D grayscale, 3D with 3 or 4 channels)
    - array-like objects exposing `.tolist()`
    - Python nested lists/tuples
    """

    if not isinstance(frame, np.ndarray):
        if hasattr(frame, "tolist") and callable(frame.tolist):
            frame = frame.tolist()
        if not isinstance(frame, (list, tuple)):
            raise TypeError("Frame must be an array, a nested list/tuple or expose tolist()")
        if len(frame) == 0:
            raise ValueError("Frame is empty")
        widths = {len(row) if isinstance(row, (list, tuple)) else -1 for row in frame}
        if -1 in widths:
            raise TypeError("Frame must be at least 2D")
        if len(widths) != 1:
            raise ValueError("Frame rows must have equal length")
        frame = np.asarray(frame)

    if frame.ndim not in (2, 3):
        raise ValueError(f"Frame must be 2D or 3D, got {frame.ndim} dimensions")
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise ValueError("Frame is empty")

    if frame.dtype != np.uint8:
        # Scientific cameras deliver 12/16-bit counts; rescale to 8 bit.
        arr = frame.astype(np.float64)
        peak = float(arr.max()) if arr.size else 0.0
        if peak > 255.0:
            arr = arr * (255.0 / peak)
        frame = np.clip(arr, 0.0, 255.0).astype(np.uint8)

    if frame.ndim == 2:
        return np.repeat(frame[:, :, np.newaxis], 3, axis=2)
    channels = frame.shape[2]
    if channels == 1:
        return np.repeat(frame, 3, axis=2)
    if channels in (3, 4):
        return np.ascontiguousarray(frame[:, :, :3])
    raise ValueError(f"Unsupported channel count: {channels}")


def to_gray(pixels: np.ndarray) -> np.ndarray:
    if pixels.ndim == 2:
        return pixels.astype(np.uint8, copy=False)
    rgb = pixels[:, :, :3].astype(np.float32)
    gray = rgb[:, :, 0] * 0.299 + rgb[:, :, 1] * 0.587 + rgb[:, :, 2] * 0.114
    return np.clip(gray + 0.5, 0, 255).astype(np.uint8)


class FrameBuffer:
    """Reusable raster buffer owned by the frame sampler.

    Each `load` overwrites the previous contents. The backing array is only
    reallocated when the incoming frame's resolution differs, so the buffer
    dimensions always match the most recent capture.
    """

    def __init__(self) -> None:
        self._pixels: np.ndarray | None = None
        self.timestamp_s: float = 0.0

    @property
    def width(self) -> int:
        return 0 if self._pixels is None else int(self._pixels.shape[1])

    @property
    def height(self) -> int:
        return 0 if self._pixels is None else int(self._pixels.shape[0])

    @property
    def pixels(self) -> np.ndarray:
        if self._pixels is None:
            raise ValueError("Frame buffer is empty")
        return self._pixels

    @property
    def is_empty(self) -> bool:
        return self._pixels is None

    def load(self, frame: RasterFrame) -> None:
        src = frame.pixels
        if self._pixels is None or self._pixels.shape != src.shape:
            self._pixels = np.array(src, dtype=np.uint8, copy=True)
        else:
            np.copyto(self._pixels, src)
        self.timestamp_s = frame.timestamp_s

    def clear(self) -> None:
        self._pixels = None
        self.timestamp_s = 0.0
