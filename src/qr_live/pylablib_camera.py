from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .interfaces import NOT_READY, AcquisitionError, CaptureHandle, DeviceError, RasterFrame
from .raster import to_rgb_array

logger = logging.getLogger(__name__)


def _default_read_frame(camera: Any) -> Any:
    candidates = [
        "read_newest_image",
        "read_oldest_image",
        "get_latest_frame",
        "read_multiple_images",
        "snap",
    ]
    for name in candidates:
        fn = getattr(camera, name, None)
        if callable(fn):
            value = fn()
            if name == "read_multiple_images" and isinstance(value, list):
                return value[-1] if value else None
            return value
    raise AttributeError("Could not find a compatible pylablib frame-read method")


def _detector_size(camera: Any, fallback: tuple[int, int]) -> tuple[int, int]:
    get_size = getattr(camera, "get_detector_size", None)
    if callable(get_size):
        try:
            width, height = get_size()
            return int(width), int(height)
        except Exception:
            logger.debug("get_detector_size failed; using requested resolution", exc_info=True)
    return fallback


class PylablibFrameSource:
    """Frame source for scientific cameras driven through pylablib.

    `camera_factory` opens the device and is called on every `acquire`, so the
    camera connection lives exactly as long as the capture handle.
    """

    def __init__(
        self,
        camera_factory: Callable[[], Any],
        read_frame: Callable[[Any], Any] = _default_read_frame,
        device_id: str = "pylablib",
    ) -> None:
        self._camera_factory = camera_factory
        self._read_frame = read_frame
        self._device_id = device_id
        self._active: CaptureHandle | None = None

    def acquire(self, preferred_facing: str, ideal_resolution: tuple[int, int]) -> CaptureHandle:
        if self._active is not None:
            raise AcquisitionError("device busy")
        try:
            camera = self._camera_factory()
        except AcquisitionError:
            raise
        except Exception as exc:
            raise AcquisitionError(
                f"failed to open pylablib camera: {exc}. Ensure pylablib and vendor drivers are installed."
            ) from exc

        start = getattr(camera, "start_acquisition", None)
        if callable(start):
            try:
                start()
            except Exception as exc:
                close = getattr(camera, "close", None)
                if callable(close):
                    close()
                raise AcquisitionError(f"failed to start pylablib acquisition: {exc}") from exc

        width, height = _detector_size(camera, ideal_resolution)
        handle = CaptureHandle(
            device_id=self._device_id,
            facing=preferred_facing,
            width=width,
            height=height,
            native=camera,
        )
        self._active = handle
        return handle

    def capture_frame(self, handle: CaptureHandle) -> RasterFrame | object:
        if handle.released:
            raise DeviceError("capture handle already released")
        try:
            frame = self._read_frame(handle.native)
        except Exception as exc:
            raise DeviceError(f"pylablib camera read failed: {exc}") from exc
        if frame is None:
            return NOT_READY
        raster = RasterFrame(pixels=to_rgb_array(frame), timestamp_s=time.time())
        if raster.width != handle.width or raster.height != handle.height:
            handle.width, handle.height = raster.width, raster.height
        return raster

    def release(self, handle: CaptureHandle | None) -> None:
        if handle is None or handle.released:
            return
        camera = handle.native
        try:
            stop = getattr(camera, "stop_acquisition", None)
            if callable(stop):
                stop()
        finally:
            close = getattr(camera, "close", None)
            if callable(close):
                close()
            handle.released = True
            if self._active is handle:
                self._active = None


def create_pylablib_frame_source(camera_kind: str, **camera_kwargs: Any) -> PylablibFrameSource:
    """Create a frame source for a Hamamatsu ORCA or a Thorlabs/IDS uc480 camera.

    camera_kind: "orca" | "uc480"
    """

    kind = camera_kind.strip().lower()
    if kind not in ("orca", "uc480"):
        raise ValueError("camera_kind must be either 'orca' or 'uc480'")

    def _open() -> Any:
        if kind == "orca":
            from pylablib.devices.DCAM import DCAMCamera

            return DCAMCamera(**camera_kwargs)
        from pylablib.devices.uc480 import UC480Camera

        return UC480Camera(**camera_kwargs)

    return PylablibFrameSource(camera_factory=_open, device_id=f"pylablib:{kind}")
