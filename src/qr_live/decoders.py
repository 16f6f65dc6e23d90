"""Decode strategies: exact QR decoding and the contrast-heuristic fallback."""

from __future__ import annotations

import importlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import numpy as np

from .contrast import ContrastStats, HeuristicConfig, contrast_stats, is_pattern_candidate
from .interfaces import NOT_FOUND, DecodeOutcome, Decoded
from .raster import FrameBuffer, to_gray

logger = logging.getLogger(__name__)

PRIMARY_INTERVAL_S = 0.100
FALLBACK_INTERVAL_S = 0.150
DEFAULT_PLACEHOLDER_TEMPLATE = "https://example.com/qr-detected-{timestamp_ms}"

PRIMARY_BACKENDS = ("pyzbar", "opencv")


class DecodeStrategy(Protocol):
    name: str
    interval_s: float

    def decode(self, buffer: FrameBuffer) -> DecodeOutcome:
        """Run one decode attempt on the current buffer contents."""

    def reset(self) -> None:
        """Clear per-session state."""


@dataclass(frozen=True, slots=True)
class Availability:
    available: bool
    backend: str | None = None
    reason: str = ""


def _load_pyzbar() -> Callable[[np.ndarray], list[str]]:
    # Importing pyzbar loads the zbar shared library and raises ImportError when it is missing.
    pyzbar = importlib.import_module("pyzbar.pyzbar")
    symbols = [pyzbar.ZBarSymbol.QRCODE]

    def _decode(gray: np.ndarray) -> list[str]:
        results = pyzbar.decode(gray, symbols=symbols)
        return [r.data.decode("utf-8", errors="replace") for r in results if r.data]

    return _decode


def _load_opencv() -> Callable[[np.ndarray], list[str]]:
    cv2 = importlib.import_module("cv2")
    detector = cv2.QRCodeDetector()

    def _decode(gray: np.ndarray) -> list[str]:
        data, _points, _straight = detector.detectAndDecode(gray)
        return [data] if data else []

    return _decode


_BACKEND_LOADERS: dict[str, Callable[[], Callable[[np.ndarray], list[str]]]] = {
    "pyzbar": _load_pyzbar,
    "opencv": _load_opencv,
}


class PrimaryDecoder:
    """Exact QR symbol decoder backed by pyzbar or OpenCV.

    The backend is loaded lazily by `try_initialize`; a missing module and a
    backend that throws during setup are both reported as unavailable.
    """

    name = "primary"

    def __init__(
        self,
        backend: str = "auto",
        *,
        try_inverted: bool = True,
        interval_s: float = PRIMARY_INTERVAL_S,
        loaders: dict[str, Callable[[], Callable[[np.ndarray], list[str]]]] | None = None,
    ) -> None:
        if backend != "auto" and backend not in PRIMARY_BACKENDS:
            raise ValueError(f"backend must be 'auto' or one of {PRIMARY_BACKENDS}")
        self._backend = backend
        self._try_inverted = try_inverted
        self.interval_s = interval_s
        self._loaders = loaders if loaders is not None else _BACKEND_LOADERS
        self._decode_fn: Callable[[np.ndarray], list[str]] | None = None
        self._active_backend: str | None = None

    @property
    def backend(self) -> str | None:
        return self._active_backend

    def try_initialize(self) -> Availability:
        candidates = PRIMARY_BACKENDS if self._backend == "auto" else (self._backend,)
        reasons: list[str] = []
        for candidate in candidates:
            loader = self._loaders.get(candidate)
            if loader is None:
                reasons.append(f"{candidate}: no loader registered")
                continue
            try:
                self._decode_fn = loader()
            except Exception as exc:
                reasons.append(f"{candidate}: {exc}")
                logger.debug("Decoder backend %s unavailable: %s", candidate, exc)
                continue
            self._active_backend = candidate
            return Availability(available=True, backend=candidate)
        self._decode_fn = None
        self._active_backend = None
        return Availability(available=False, reason="; ".join(reasons))

    def decode(self, buffer: FrameBuffer) -> DecodeOutcome:
        if self._decode_fn is None or buffer.is_empty:
            return NOT_FOUND
        gray = to_gray(buffer.pixels)
        images = [gray, 255 - gray] if self._try_inverted else [gray]
        for image in images:
            try:
                payloads = self._decode_fn(image)
            except Exception as exc:
                logger.debug("Decode attempt failed: %s", exc)
                continue
            for payload in payloads:
                if payload:
                    return Decoded(payload=payload)
        return NOT_FOUND

    def reset(self) -> None:
        pass


def validate_placeholder_template(template: str) -> str:
    try:
        template.format(timestamp_ms=0)
    except (KeyError, IndexError, ValueError) as exc:
        raise ValueError(f"placeholder_template may only reference {{timestamp_ms}}: {exc!r}") from exc
    return template


class FallbackHeuristic:
    """Best-effort "is a QR-like pattern in view" detector.

    Counts dark and light pixels in a centred window and only commits after
    more than `min_attempts` attempts. It cannot recover content, so a hit is
    reported as a synthetic placeholder payload.
    """

    name = "heuristic"

    def __init__(
        self,
        config: HeuristicConfig | None = None,
        *,
        placeholder_template: str = DEFAULT_PLACEHOLDER_TEMPLATE,
        interval_s: float = FALLBACK_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or HeuristicConfig()
        self._placeholder_template = validate_placeholder_template(placeholder_template)
        self._clock = clock
        self.interval_s = interval_s
        self.attempts = 0
        self.last_contrast_ratio = 0.0
        self.last_stats: ContrastStats | None = None

    def decode(self, buffer: FrameBuffer) -> DecodeOutcome:
        if buffer.is_empty:
            return NOT_FOUND
        stats = contrast_stats(buffer.pixels, self._config)
        self.attempts += 1
        self.last_contrast_ratio = stats.contrast_ratio
        self.last_stats = stats

        if is_pattern_candidate(stats, self._config) and self.attempts > self._config.min_attempts:
            payload = self._placeholder_template.format(timestamp_ms=int(self._clock() * 1000))
            logger.warning(
                "Heuristic pattern detection after %d attempts (ratio=%.3f); payload is synthetic",
                self.attempts,
                stats.contrast_ratio,
            )
            return Decoded(payload=payload, synthetic=True)
        return NOT_FOUND

    def reset(self) -> None:
        self.attempts = 0
        self.last_contrast_ratio = 0.0
        self.last_stats = None


def select_strategy(
    decoder: str = "auto",
    *,
    try_inverted: bool = True,
    heuristic: HeuristicConfig | None = None,
    placeholder_template: str = DEFAULT_PLACEHOLDER_TEMPLATE,
    primary_interval_s: float = PRIMARY_INTERVAL_S,
    fallback_interval_s: float = FALLBACK_INTERVAL_S,
    loaders: dict[str, Any] | None = None,
) -> DecodeStrategy:
    """Pick the decode strategy for one session.

    `decoder` is "auto", a primary backend name, or "heuristic" to force the
    fallback. Every call returns a fresh strategy so per-session counters
    start at zero.
    """

    fallback = FallbackHeuristic(
        heuristic,
        placeholder_template=placeholder_template,
        interval_s=fallback_interval_s,
    )
    if decoder == "heuristic":
        return fallback

    primary = PrimaryDecoder(
        decoder,
        try_inverted=try_inverted,
        interval_s=primary_interval_s,
        loaders=loaders,
    )
    availability = primary.try_initialize()
    if availability.available:
        logger.info("Using primary decoder (%s)", availability.backend)
        return primary
    logger.info("Primary decoder unavailable (%s); using contrast heuristic", availability.reason)
    return fallback
