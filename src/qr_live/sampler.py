from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .interfaces import NOT_READY, CaptureHandle, DecodeOutcome, Decoded, DeviceError, FrameSourceInterface
from .raster import FrameBuffer

logger = logging.getLogger(__name__)


class FrameSampler:
    """Fixed-cadence capture-and-decode loop for one session.

    Ticks never overlap: a tick lock serialises `tick()` and, when threaded,
    a single loop thread drives it. A positive decode stops the sampler
    before `on_decoded` is called, so no later tick can fire.
    """

    def __init__(
        self,
        source: FrameSourceInterface,
        *,
        on_decoded: Callable[[Decoded], None],
        on_fault: Callable[[Exception], None] | None = None,
        threaded: bool = True,
    ) -> None:
        self._source = source
        self._on_decoded = on_decoded
        self._on_fault = on_fault
        self._threaded = threaded
        self._buffer = FrameBuffer()
        self._tick_lock = threading.RLock()
        self._stop_evt = threading.Event()
        self._thread: threading.Thread | None = None
        self._handle: CaptureHandle | None = None
        self._on_tick: Callable[[FrameBuffer], DecodeOutcome] | None = None
        self._interval_s = 0.0
        self._active = False
        self._last_error: Exception | None = None
        self.tick_count = 0
        self.skipped_count = 0

    @property
    def running(self) -> bool:
        return self._active

    @property
    def buffer(self) -> FrameBuffer:
        return self._buffer

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    def start(
        self,
        handle: CaptureHandle,
        on_tick: Callable[[FrameBuffer], DecodeOutcome],
        interval_s: float,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        with self._tick_lock:
            if self._active:
                return
            self._handle = handle
            self._on_tick = on_tick
            self._interval_s = interval_s
            self._last_error = None
            self.tick_count = 0
            self.skipped_count = 0
            self._buffer.clear()
            self._stop_evt.clear()
            self._active = True
            if self._threaded:
                self._thread = threading.Thread(target=self._run_loop, name="qr-live-sampler", daemon=True)
                self._thread.start()

    def stop(self, *, wait: bool = True) -> None:
        self._active = False
        self._stop_evt.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        if thread is not None and not thread.is_alive():
            self._thread = None
        # Waits for an in-flight tick on another thread; re-entrant from inside a tick.
        with self._tick_lock:
            self._handle = None
            self._on_tick = None

    def tick(self) -> DecodeOutcome | None:
        """Run one capture-and-decode attempt.

        Returns None when the sampler is stopped or the device had no frame
        ready yet.
        """

        with self._tick_lock:
            if not self._active or self._handle is None or self._on_tick is None:
                return None
            try:
                frame = self._source.capture_frame(self._handle)
                if frame is NOT_READY:
                    self.skipped_count += 1
                    return None
                self._buffer.load(frame)
                outcome = self._on_tick(self._buffer)
            except Exception as exc:
                self._fail(exc)
                return None

            self.tick_count += 1
            if outcome.found and self._active:
                self._active = False
                self._stop_evt.set()
                logger.debug("Decoded on tick %d", self.tick_count)
                self._on_decoded(outcome)
            return outcome

    def _fail(self, exc: Exception) -> None:
        self._active = False
        self._stop_evt.set()
        self._last_error = exc
        if isinstance(exc, DeviceError):
            logger.warning("Device fault while sampling: %s", exc)
        else:
            logger.exception("Unexpected error while sampling")
        if self._on_fault is not None:
            self._on_fault(exc)

    def _run_loop(self) -> None:
        # Repeating-timer cadence: the first tick lands one interval after start.
        delay = self._interval_s
        while not self._stop_evt.wait(delay):
            t0 = time.monotonic()
            self.tick()
            delay = max(0.0, self._interval_s - (time.monotonic() - t0))
