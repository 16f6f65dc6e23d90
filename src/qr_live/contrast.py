from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(slots=True)
class Roi:
    """Axis-aligned region of interest in image coordinates."""

    x: int
    y: int
    width: int
    height: int

    def clamp(self, image_shape: tuple[int, int]) -> "Roi":
        h, w = image_shape
        x0 = max(0, self.x)
        y0 = max(0, self.y)
        x1 = min(w, self.x + self.width)
        y1 = min(h, self.y + self.height)
        if x1 <= x0 or y1 <= y0:
            raise ValueError("ROI does not intersect image")
        return Roi(x=x0, y=y0, width=x1 - x0, height=y1 - y0)


@dataclass(slots=True)
class HeuristicConfig:
    max_window_px: int = 200
    stride_px: int = 2
    # Mean of the three colour channels.
    dark_below: float = 80.0
    light_above: float = 180.0
    min_contrast_ratio: float = 0.2
    min_dark: int = 100
    min_light: int = 100
    # Detection requires attempts strictly greater than this.
    min_attempts: int = 15

    def __post_init__(self) -> None:
        if self.max_window_px <= 0:
            raise ValueError("max_window_px must be > 0")
        if self.stride_px <= 0:
            raise ValueError("stride_px must be > 0")
        if not 0.0 <= self.dark_below <= self.light_above <= 255.0:
            raise ValueError("thresholds must satisfy 0 <= dark_below <= light_above <= 255")
        if not 0.0 <= self.min_contrast_ratio <= 1.0:
            raise ValueError("min_contrast_ratio must be in [0.0, 1.0]")
        if self.min_dark < 0 or self.min_light < 0 or self.min_attempts < 0:
            raise ValueError("min_dark, min_light and min_attempts must be >= 0")


@dataclass(frozen=True, slots=True)
class ContrastStats:
    dark: int
    light: int
    contrast_ratio: float
    window: Roi


def center_window(width: int, height: int, max_side: int = 200) -> Roi:
    """Square sampling window centred on the frame.

    Side is min(max_side, min(width, height) // 2).
    """
    if width <= 0 or height <= 0:
        raise ValueError("Frame dimensions must be positive")
    side = min(max_side, min(width, height) // 2)
    cx = width // 2
    cy = height // 2
    half = side // 2
    return Roi(x=cx - half, y=cy - half, width=side, height=side)


def contrast_ratio(dark: int, light: int) -> float:
    high = max(dark, light)
    if high == 0:
        return 0.0
    return min(dark, light) / high


def contrast_stats(pixels: np.ndarray, config: HeuristicConfig | None = None) -> ContrastStats:
    """Count dark and light pixels in the centred window.

    Sampling uses `config.stride_px` in both axes. Pixels between the two
    thresholds are counted as neither.
    """

    cfg = config or HeuristicConfig()
    h, w = int(pixels.shape[0]), int(pixels.shape[1])
    window = center_window(w, h, cfg.max_window_px)
    if window.width == 0:
        return ContrastStats(dark=0, light=0, contrast_ratio=0.0, window=window)

    safe = window.clamp((h, w))
    patch = pixels[
        safe.y : safe.y + safe.height : cfg.stride_px,
        safe.x : safe.x + safe.width : cfg.stride_px,
    ]
    if patch.ndim == 3:
        brightness = patch[:, :, :3].astype(np.float32).sum(axis=2) / 3.0
    else:
        brightness = patch.astype(np.float32)

    dark = int(np.count_nonzero(brightness < cfg.dark_below))
    light = int(np.count_nonzero(brightness > cfg.light_above))
    return ContrastStats(dark=dark, light=light, contrast_ratio=contrast_ratio(dark, light), window=window)


def is_pattern_candidate(stats: ContrastStats, config: HeuristicConfig | None = None) -> bool:
    cfg = config or HeuristicConfig()
    return (
        stats.contrast_ratio > cfg.min_contrast_ratio
        and stats.dark > cfg.min_dark
        and stats.light > cfg.min_light
    )
