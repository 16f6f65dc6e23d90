from __future__ import annotations

import logging
import os
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

import cv2
import numpy as np

from .interfaces import NOT_READY, AcquisitionError, CaptureHandle, DeviceError, RasterFrame
from .raster import to_rgb_array

logger = logging.getLogger(__name__)

DEFAULT_FACING_INDICES = {"environment": 0, "user": 1}


def _track_resolution(handle: CaptureHandle, frame: RasterFrame) -> None:
    if frame.width != handle.width or frame.height != handle.height:
        logger.debug(
            "Device %s resolution changed %dx%d -> %dx%d",
            handle.device_id,
            handle.width,
            handle.height,
            frame.width,
            frame.height,
        )
        handle.width = frame.width
        handle.height = frame.height


@dataclass(slots=True)
class _OpenCvState:
    capture: Any
    index: int
    frames_delivered: int = 0
    read_failures: int = 0


class OpenCvFrameSource:
    """Webcam source backed by `cv2.VideoCapture`.

    Facing has no meaning to OpenCV, so it is mapped to a device index through
    `facing_indices` unless an explicit `device_index` is given.
    """

    def __init__(
        self,
        device_index: int | None = None,
        *,
        facing_indices: dict[str, int] | None = None,
        api_preference: int | None = None,
        max_read_failures: int = 30,
        device_root: str | Path = "/dev",
    ) -> None:
        if max_read_failures <= 0:
            raise ValueError("max_read_failures must be > 0")
        self._device_index = device_index
        self._facing_indices = dict(facing_indices or DEFAULT_FACING_INDICES)
        self._api_preference = api_preference
        self._max_read_failures = max_read_failures
        self._device_root = Path(device_root)
        self._held: set[int] = set()
        self._lock = threading.Lock()

    def _resolve_index(self, preferred_facing: str) -> int:
        if self._device_index is not None:
            return self._device_index
        return self._facing_indices.get(preferred_facing, 0)

    def _check_permission(self, index: int) -> None:
        if not sys.platform.startswith("linux"):
            return
        node = self._device_root / f"video{index}"
        if node.exists() and not os.access(node, os.R_OK | os.W_OK):
            raise AcquisitionError("permission denied")

    def acquire(self, preferred_facing: str, ideal_resolution: tuple[int, int]) -> CaptureHandle:
        index = self._resolve_index(preferred_facing)
        with self._lock:
            if index in self._held:
                raise AcquisitionError("device busy")
            self._check_permission(index)
            if self._api_preference is None:
                capture = cv2.VideoCapture(index)
            else:
                capture = cv2.VideoCapture(index, self._api_preference)
            if not capture.isOpened():
                capture.release()
                raise AcquisitionError(f"no camera device available at index {index}")
            self._held.add(index)

        width, height = ideal_resolution
        try:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            actual_w = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)) or width
            actual_h = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)) or height
        except Exception:
            capture.release()
            with self._lock:
                self._held.discard(index)
            raise
        logger.info("Opened camera %d at %dx%d (requested %dx%d)", index, actual_w, actual_h, width, height)
        return CaptureHandle(
            device_id=f"opencv:{index}",
            facing=preferred_facing,
            width=actual_w,
            height=actual_h,
            native=_OpenCvState(capture=capture, index=index),
        )

    def capture_frame(self, handle: CaptureHandle) -> RasterFrame | object:
        if handle.released:
            raise DeviceError("capture handle already released")
        state: _OpenCvState = handle.native
        ok, frame = state.capture.read()
        if not ok or frame is None:
            if state.frames_delivered == 0:
                return NOT_READY
            state.read_failures += 1
            if state.read_failures >= self._max_read_failures:
                raise DeviceError(f"camera {state.index} stopped delivering frames")
            return NOT_READY

        state.read_failures = 0
        state.frames_delivered += 1
        if frame.ndim == 3 and frame.shape[2] == 3:
            frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        raster = RasterFrame(pixels=to_rgb_array(frame), timestamp_s=time.time())
        _track_resolution(handle, raster)
        return raster

    def release(self, handle: CaptureHandle | None) -> None:
        if handle is None or handle.released:
            return
        state: _OpenCvState = handle.native
        try:
            state.capture.release()
        finally:
            handle.released = True
            with self._lock:
                self._held.discard(state.index)
        logger.info("Released camera %d", state.index)


class CallableFrameSource:
    """Frame source that can wrap any frame callback.

    Pass a callable returning an image or `(image, timestamp_s)`; returning
    None means no frame is buffered yet. This makes it straightforward to
    connect SDK bindings that are not covered by the bundled backends.
    """

    def __init__(
        self,
        frame_source: Callable[[], Any],
        control_source_lifecycle: bool = False,
        device_id: str = "callable",
    ) -> None:
        self._frame_source = frame_source
        self._control_source_lifecycle = control_source_lifecycle
        self._device_id = device_id
        self._active: CaptureHandle | None = None

    def acquire(self, preferred_facing: str, ideal_resolution: tuple[int, int]) -> CaptureHandle:
        if self._active is not None:
            raise AcquisitionError("device busy")
        if self._control_source_lifecycle:
            start = getattr(self._frame_source, "start", None)
            if callable(start):
                try:
                    start()
                except Exception as exc:
                    raise AcquisitionError(str(exc) or "camera failed to start") from exc
        width, height = ideal_resolution
        handle = CaptureHandle(device_id=self._device_id, facing=preferred_facing, width=width, height=height)
        self._active = handle
        return handle

    def capture_frame(self, handle: CaptureHandle) -> RasterFrame | object:
        if handle.released:
            raise DeviceError("capture handle already released")
        value = self._frame_source()
        if value is None:
            return NOT_READY
        if isinstance(value, tuple) and len(value) == 2 and isinstance(value[1], (int, float)):
            image, ts = value
        else:
            image, ts = value, time.time()
        raster = RasterFrame(pixels=to_rgb_array(image), timestamp_s=float(ts))
        _track_resolution(handle, raster)
        return raster

    def release(self, handle: CaptureHandle | None) -> None:
        if handle is None or handle.released:
            return
        if self._control_source_lifecycle:
            stop = getattr(self._frame_source, "stop", None)
            if callable(stop):
                stop()
        handle.released = True
        if self._active is handle:
            self._active = None


@dataclass(slots=True)
class SimulatedScene:
    width: int = 640
    height: int = 480
    background: int = 128

    def blank(self) -> np.ndarray:
        return np.full((self.height, self.width, 3), self.background, dtype=np.uint8)

    def checkerboard(self, module_px: int = 8, side_px: int | None = None) -> np.ndarray:
        """High-contrast module grid centred on a mid-grey frame."""

        image = self.blank()
        side = side_px or min(self.width, self.height) // 2
        side -= side % module_px
        n = side // module_px
        if n == 0:
            return image
        yy, xx = np.indices((n, n))
        modules = ((yy + xx) % 2 == 0).astype(np.uint8) * 255
        tile = np.kron(modules, np.ones((module_px, module_px), dtype=np.uint8))
        y0 = (self.height - side) // 2
        x0 = (self.width - side) // 2
        image[y0 : y0 + side, x0 : x0 + side, :] = tile[:, :, np.newaxis]
        return image

    def qr_code(self, payload: str, module_px: int = 6) -> np.ndarray:
        """Render a real QR symbol (via OpenCV's encoder) centred on the frame."""

        encoder = cv2.QRCodeEncoder.create()
        symbol = encoder.encode(payload)
        if symbol.ndim == 3:
            symbol = symbol[:, :, 0]
        symbol = np.pad(symbol, 4, constant_values=255)
        scaled = np.kron(symbol, np.ones((module_px, module_px), dtype=np.uint8))
        image = np.full((self.height, self.width, 3), 255, dtype=np.uint8)
        sh, sw = scaled.shape
        if sh > self.height or sw > self.width:
            raise ValueError("QR symbol does not fit in the simulated frame; lower module_px")
        y0 = (self.height - sh) // 2
        x0 = (self.width - sw) // 2
        image[y0 : y0 + sh, x0 : x0 + sw, :] = scaled[:, :, np.newaxis]
        return image


class SimulatedFrameSource:
    """Scripted frame source for demos and tests.

    `frames` is replayed in order (the last entry repeats once the script is
    exhausted). Entries may be arrays, RasterFrames, None (= not ready) or an
    Exception instance, which is raised from `capture_frame` as a device fault.
    """

    def __init__(
        self,
        frames: Sequence[Any] | None = None,
        *,
        warmup_ticks: int = 0,
        fail_with: str | None = None,
        device_id: str = "simulated",
    ) -> None:
        self._frames = list(frames) if frames is not None else [SimulatedScene().blank()]
        self._warmup_ticks = warmup_ticks
        self._fail_with = fail_with
        self._device_id = device_id
        self._active: CaptureHandle | None = None
        self._cursor = 0
        self._warmup_left = 0
        self.acquire_count = 0
        self.release_count = 0
        self.capture_count = 0

    @property
    def active(self) -> bool:
        return self._active is not None

    def acquire(self, preferred_facing: str, ideal_resolution: tuple[int, int]) -> CaptureHandle:
        if self._fail_with is not None:
            raise AcquisitionError(self._fail_with)
        if self._active is not None:
            raise AcquisitionError("device busy")
        width, height = ideal_resolution
        first = self._first_raster()
        if first is not None:
            width, height = first.width, first.height
        self.acquire_count += 1
        self._cursor = 0
        self._warmup_left = self._warmup_ticks
        self._active = CaptureHandle(device_id=self._device_id, facing=preferred_facing, width=width, height=height)
        return self._active

    def capture_frame(self, handle: CaptureHandle) -> RasterFrame | object:
        if handle.released or handle is not self._active:
            raise DeviceError("capture handle is not active")
        self.capture_count += 1
        if self._warmup_left > 0:
            self._warmup_left -= 1
            return NOT_READY
        entry = self._frames[min(self._cursor, len(self._frames) - 1)]
        self._cursor += 1
        if entry is None:
            return NOT_READY
        if isinstance(entry, Exception):
            raise entry
        raster = entry if isinstance(entry, RasterFrame) else RasterFrame(pixels=to_rgb_array(entry), timestamp_s=time.time())
        _track_resolution(handle, raster)
        return raster

    def release(self, handle: CaptureHandle | None) -> None:
        if handle is None or handle.released:
            return
        handle.released = True
        if self._active is handle:
            self._active = None
            self.release_count += 1

    def _first_raster(self) -> RasterFrame | None:
        for entry in self._frames:
            if isinstance(entry, RasterFrame):
                return entry
            if isinstance(entry, np.ndarray):
                return RasterFrame(pixels=to_rgb_array(entry), timestamp_s=0.0)
        return None
