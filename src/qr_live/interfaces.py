from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Union

import numpy as np


class AcquisitionError(RuntimeError):
    """Imaging device could not be opened (denied, missing or busy)."""

    def __init__(self, cause: str) -> None:
        super().__init__(cause)
        self.cause = cause


class DeviceError(RuntimeError):
    pass


class _NotReady:
    _instance: "_NotReady | None" = None

    def __new__(cls) -> "_NotReady":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_READY"


NOT_READY = _NotReady()


@dataclass(slots=True)
class RasterFrame:
    """Single captured image (H x W x 3 RGB uint8) and capture time."""

    pixels: np.ndarray
    timestamp_s: float

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(slots=True)
class CaptureHandle:
    """Open connection to an imaging device.

    `width`/`height` hold the resolution the device reports, which may differ
    from what was requested at acquisition time.
    """

    device_id: str
    facing: str
    width: int
    height: int
    native: Any = None
    released: bool = False


@dataclass(frozen=True, slots=True)
class NotFound:
    @property
    def found(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Decoded:
    """Positive decode result.

    `synthetic` is True when the payload is a placeholder produced by the
    contrast heuristic rather than text recovered from a symbol.
    """

    payload: str
    synthetic: bool = False

    @property
    def found(self) -> bool:
        return True


NOT_FOUND = NotFound()

DecodeOutcome = Union[NotFound, Decoded]


class FrameSourceInterface(Protocol):
    """Interface for a live imaging source."""

    def acquire(self, preferred_facing: str, ideal_resolution: tuple[int, int]) -> CaptureHandle:
        """Open the device; raise AcquisitionError on denial/missing/busy."""

    def capture_frame(self, handle: CaptureHandle) -> RasterFrame | _NotReady:
        """Return the current frame without blocking, or NOT_READY."""

    def release(self, handle: CaptureHandle | None) -> None:
        """Stop the device. Safe on released or never-acquired handles."""
