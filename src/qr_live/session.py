from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from .contrast import HeuristicConfig
from .decoders import (
    DEFAULT_PLACEHOLDER_TEMPLATE,
    FALLBACK_INTERVAL_S,
    PRIMARY_BACKENDS,
    PRIMARY_INTERVAL_S,
    DecodeStrategy,
    select_strategy,
    validate_placeholder_template,
)
from .interfaces import AcquisitionError, CaptureHandle, Decoded, DeviceError, FrameSourceInterface
from .sampler import FrameSampler

logger = logging.getLogger(__name__)

FACINGS = ("environment", "user")


class SessionState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    SCANNING = "scanning"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.SUCCEEDED, SessionState.FAILED)


@dataclass(slots=True)
class SessionConfig:
    preferred_facing: str = "environment"
    ideal_resolution: tuple[int, int] = (640, 480)
    primary_interval_s: float = PRIMARY_INTERVAL_S
    # Heuristic samples less often; it needs corroboration across ticks anyway.
    fallback_interval_s: float = FALLBACK_INTERVAL_S
    decoder: str = "auto"
    try_inverted: bool = True
    heuristic: HeuristicConfig = field(default_factory=HeuristicConfig)
    placeholder_template: str = DEFAULT_PLACEHOLDER_TEMPLATE
    # False: no sampler thread; the owner drives ticks with ScanSession.poll().
    threaded: bool = True

    def __post_init__(self) -> None:
        if self.preferred_facing not in FACINGS:
            raise ValueError(f"preferred_facing must be one of {FACINGS}")
        width, height = self.ideal_resolution
        if width <= 0 or height <= 0:
            raise ValueError("ideal_resolution must be positive")
        if self.primary_interval_s <= 0 or self.fallback_interval_s <= 0:
            raise ValueError("sampling intervals must be > 0")
        if self.decoder not in ("auto", "heuristic", *PRIMARY_BACKENDS):
            raise ValueError(f"decoder must be 'auto', 'heuristic' or one of {PRIMARY_BACKENDS}")
        validate_placeholder_template(self.placeholder_template)


def _strategy_for(config: SessionConfig) -> DecodeStrategy:
    return select_strategy(
        config.decoder,
        try_inverted=config.try_inverted,
        heuristic=config.heuristic,
        placeholder_template=config.placeholder_template,
        primary_interval_s=config.primary_interval_s,
        fallback_interval_s=config.fallback_interval_s,
    )


class ScanSession:
    """Scanning state machine: IDLE -> ACQUIRING -> SCANNING -> SUCCEEDED | FAILED.

    Owns the capture handle slot and the sampler. Each session emits at most
    one of `on_decoded(payload)` / `on_error(message)`; callbacks run after
    the device has been released and never under the internal lock.

    `start`, `stop` and `retry` return False instead of raising when the
    current state does not allow them.
    """

    def __init__(
        self,
        source: FrameSourceInterface,
        config: SessionConfig | None = None,
        *,
        on_decoded: Callable[[str], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        strategy_factory: Callable[[SessionConfig], DecodeStrategy] = _strategy_for,
    ) -> None:
        self._source = source
        self._config = config or SessionConfig()
        self._on_decoded = on_decoded
        self._on_error = on_error
        self._strategy_factory = strategy_factory
        self._lock = threading.Lock()
        self._terminal_evt = threading.Event()
        self._state = SessionState.IDLE
        self._failure_reason: str | None = None
        self._handle: CaptureHandle | None = None
        self._sampler: FrameSampler | None = None
        self._strategy: DecodeStrategy | None = None
        self._result: Decoded | None = None
        self._generation = 0
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure_reason(self) -> str | None:
        return self._failure_reason

    @property
    def handle(self) -> CaptureHandle | None:
        return self._handle

    @property
    def strategy(self) -> DecodeStrategy | None:
        return self._strategy

    @property
    def sampler(self) -> FrameSampler | None:
        return self._sampler

    @property
    def result(self) -> Decoded | None:
        return self._result

    @property
    def config(self) -> SessionConfig:
        return self._config

    def start(self) -> bool:
        with self._lock:
            if self._closed:
                logger.debug("start() ignored: session closed")
                return False
            if self._state in (SessionState.ACQUIRING, SessionState.SCANNING):
                logger.debug("start() ignored: session already %s", self._state.value)
                return False
            self._generation += 1
            generation = self._generation
            self._state = SessionState.ACQUIRING
            self._failure_reason = None
            self._result = None
            self._strategy = None
            self._terminal_evt.clear()

        logger.info("Acquiring camera (facing=%s)", self._config.preferred_facing)
        try:
            handle = self._source.acquire(self._config.preferred_facing, self._config.ideal_resolution)
        except AcquisitionError as exc:
            self._fail_acquisition(generation, exc.cause)
            return False
        except Exception as exc:
            logger.exception("Unexpected error while acquiring camera")
            self._fail_acquisition(generation, str(exc) or type(exc).__name__)
            return False

        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACQUIRING:
                cancelled = True
            else:
                cancelled = False
                self._handle = handle
        if cancelled:
            logger.info("Acquisition completed after cancel; releasing device")
            self._source.release(handle)
            return False

        # Strategy probing may import decoder modules; keep it outside the lock.
        try:
            strategy = self._strategy_factory(self._config)
            strategy.reset()
            if strategy.interval_s <= 0:
                raise ValueError(f"strategy interval must be > 0, got {strategy.interval_s}")
            sampler = FrameSampler(
                self._source,
                on_decoded=lambda outcome: self._handle_decoded(generation, outcome),
                on_fault=lambda exc: self._handle_fault(generation, exc),
                threaded=self._config.threaded,
            )
        except Exception as exc:
            logger.exception("Failed to set up decode strategy")
            self._fail_setup(generation, f"scanner setup failed: {str(exc) or type(exc).__name__}")
            return False

        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACQUIRING:
                return False
            self._strategy = strategy
            self._sampler = sampler
            self._state = SessionState.SCANNING
            sampler.start(handle, strategy.decode, strategy.interval_s)
        logger.info(
            "Scanning with %s strategy every %.0f ms (%dx%d)",
            strategy.name,
            strategy.interval_s * 1000,
            handle.width,
            handle.height,
        )
        return True

    def stop(self) -> bool:
        """Silently cancel an acquiring or scanning session (no outcome emitted)."""

        with self._lock:
            if self._state not in (SessionState.ACQUIRING, SessionState.SCANNING):
                return False
            self._generation += 1
            self._state = SessionState.IDLE
            handle, sampler = self._detach()
        self._teardown(handle, sampler)
        logger.info("Session stopped")
        return True

    def retry(self) -> bool:
        with self._lock:
            if self._state is not SessionState.FAILED:
                return False
        self.stop()
        return self.start()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._generation += 1
            if self._state in (SessionState.ACQUIRING, SessionState.SCANNING):
                self._state = SessionState.IDLE
            handle, sampler = self._detach()
        self._teardown(handle, sampler)
        self._terminal_evt.set()

    def poll(self) -> bool:
        """Run one sampler tick when the session is not threaded."""

        sampler = self._sampler
        if sampler is None or self._config.threaded or self._state is not SessionState.SCANNING:
            return False
        sampler.tick()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the session reaches SUCCEEDED or FAILED (or is closed)."""

        return self._terminal_evt.wait(timeout)

    def __enter__(self) -> "ScanSession":
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.close()

    def _detach(self) -> tuple[CaptureHandle | None, FrameSampler | None]:
        handle, sampler = self._handle, self._sampler
        self._handle = None
        self._sampler = None
        return handle, sampler

    def _teardown(self, handle: CaptureHandle | None, sampler: FrameSampler | None) -> None:
        if sampler is not None:
            sampler.stop()
        if handle is not None:
            self._source.release(handle)

    def _fail_acquisition(self, generation: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACQUIRING:
                return
            self._state = SessionState.FAILED
            self._failure_reason = reason
        logger.warning("Camera acquisition failed: %s", reason)
        self._emit_error(reason)

    def _fail_setup(self, generation: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACQUIRING:
                return
            self._state = SessionState.FAILED
            self._failure_reason = reason
            handle, sampler = self._detach()
        self._teardown(handle, sampler)
        self._emit_error(reason)

    def _handle_decoded(self, generation: int, outcome: Decoded) -> None:
        with self._lock:
            if generation != self._generation or self._state is not SessionState.SCANNING:
                return
            self._state = SessionState.SUCCEEDED
            self._result = outcome
            handle, sampler = self._detach()
        self._teardown(handle, sampler)
        logger.info("Decoded payload (%d chars%s)", len(outcome.payload), ", synthetic" if outcome.synthetic else "")
        try:
            if self._on_decoded is not None:
                self._on_decoded(outcome.payload)
        finally:
            self._terminal_evt.set()

    def _handle_fault(self, generation: int, exc: Exception) -> None:
        reason = str(exc) or type(exc).__name__
        if not isinstance(exc, DeviceError):
            reason = f"scanner fault: {reason}"
        with self._lock:
            if generation != self._generation or self._state is not SessionState.SCANNING:
                return
            self._state = SessionState.FAILED
            self._failure_reason = reason
            handle, sampler = self._detach()
        self._teardown(handle, sampler)
        self._emit_error(reason)

    def _emit_error(self, reason: str) -> None:
        try:
            if self._on_error is not None:
                self._on_error(reason)
        finally:
            self._terminal_evt.set()
