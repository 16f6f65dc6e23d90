"""Live camera QR scanning core: frame sources, decode strategies and the session state machine."""

from .contrast import ContrastStats, HeuristicConfig, Roi, center_window, contrast_stats
from .decoders import Availability, FallbackHeuristic, PrimaryDecoder, select_strategy
from .hardware import CallableFrameSource, OpenCvFrameSource, SimulatedFrameSource, SimulatedScene
from .interfaces import (
    NOT_FOUND,
    NOT_READY,
    AcquisitionError,
    CaptureHandle,
    Decoded,
    DeviceError,
    FrameSourceInterface,
    NotFound,
    RasterFrame,
)
from .pylablib_camera import PylablibFrameSource, create_pylablib_frame_source
from .raster import FrameBuffer, to_rgb_array
from .sampler import FrameSampler
from .session import ScanSession, SessionConfig, SessionState

__all__ = [
    "ContrastStats",
    "HeuristicConfig",
    "Roi",
    "center_window",
    "contrast_stats",
    "Availability",
    "FallbackHeuristic",
    "PrimaryDecoder",
    "select_strategy",
    "CallableFrameSource",
    "OpenCvFrameSource",
    "SimulatedFrameSource",
    "SimulatedScene",
    "NOT_FOUND",
    "NOT_READY",
    "AcquisitionError",
    "CaptureHandle",
    "Decoded",
    "DeviceError",
    "FrameSourceInterface",
    "NotFound",
    "RasterFrame",
    "PylablibFrameSource",
    "create_pylablib_frame_source",
    "FrameBuffer",
    "to_rgb_array",
    "FrameSampler",
    "ScanSession",
    "SessionConfig",
    "SessionState",
]
